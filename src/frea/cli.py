import asyncio
import functools
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console

from frea.api.services import run_dispatcher, run_follower, run_mirror, run_replicator
from frea.constants import DEFAULT_CHANGES_URL, DEFAULT_REGISTRY_URL
from frea.core.config import (
    DispatcherConfig,
    FollowerConfig,
    MirrorConfig,
    ReplicatorConfig,
    source_id_for,
)
from frea.core.errors import CheckpointMissingError, CheckpointReadError, ConfigError
from frea.logs import configure_logging
from frea.storage.checkpoint import FileCheckpointStore

console = Console(stderr=True)

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T | None:
    """Run a role to completion, mapping startup failures to a non-zero exit."""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("[yellow]interrupted[/]")
        return None
    except CheckpointMissingError as e:
        raise click.ClickException(
            f"{e}; seed it with `frea checkpoint set SEQ` or pass --since"
        ) from e
    except (CheckpointReadError, ConfigError) as e:
        raise click.ClickException(str(e)) from e


def _mirror_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every process role; each also reads a FREA_* variable."""
    options = [
        click.option("--store-root", type=click.Path(path_type=Path), default=Path("./mirror"), envvar="FREA_STORE_ROOT", show_default=True, help="Object store directory (--store fs)"),
        click.option("--checkpoint-root", type=click.Path(path_type=Path), default=Path("./checkpoints"), envvar="FREA_CHECKPOINT_ROOT", show_default=True),
        click.option("--spool-root", type=click.Path(path_type=Path), default=Path("./spool"), envvar="FREA_SPOOL_ROOT", show_default=True, help="Message spool shared by roles"),
        click.option("--bus", type=click.Choice(["spool", "local"]), default="spool", envvar="FREA_BUS", show_default=True),
        click.option("--store", type=click.Choice(["fs", "s3"]), default="fs", envvar="FREA_STORE", show_default=True, help="Object store backend"),
        click.option("--s3-bucket", default=None, envvar="FREA_S3_BUCKET", help="Bucket for --store s3"),
        click.option("--s3-prefix", default="", envvar="FREA_S3_PREFIX", help="Key prefix inside the bucket"),
        click.option("--s3-endpoint-url", default=None, envvar="FREA_S3_ENDPOINT_URL", help="S3-compatible endpoint"),
        click.option("--s3-region", default=None, envvar="FREA_S3_REGION"),
        click.option("--timeout", "timeout_s", type=int, default=20, envvar="FREA_TIMEOUT", show_default=True, help="HTTP timeout (s)"),
        click.option("--max-connections", type=int, default=64, envvar="FREA_MAX_CONNECTIONS", show_default=True),
        click.option("--concurrency", "bus_concurrency", type=int, default=8, envvar="FREA_CONCURRENCY", show_default=True, help="Messages handled in parallel per role"),
        click.option("--visibility-timeout", "visibility_timeout_s", type=float, default=240.0, envvar="FREA_VISIBILITY_TIMEOUT", show_default=True),
        click.option("--max-delivery-attempts", type=int, default=5, envvar="FREA_MAX_DELIVERY_ATTEMPTS", show_default=True),
        click.option("--changes-url", default=DEFAULT_CHANGES_URL, envvar="FREA_CHANGES_URL", show_default=True),
        click.option("--source-id", default=None, envvar="FREA_SOURCE_ID", help="Checkpoint id (default: derived from --changes-url)"),
        click.option("--since", type=int, default=None, envvar="FREA_SINCE", help="Start sequence, overriding the checkpoint"),
        click.option("--inactivity-timeout", "inactivity_timeout_s", type=float, default=3600.0, envvar="FREA_INACTIVITY_TIMEOUT", show_default=True),
        click.option("--checkpoint-interval", "checkpoint_interval_s", type=float, default=5.0, envvar="FREA_CHECKPOINT_INTERVAL", show_default=True),
        click.option("--publish-limit", type=int, default=1, envvar="FREA_PUBLISH_LIMIT", show_default=True, help="Changes published per window"),
        click.option("--publish-window", "publish_window_s", type=float, default=2.0, envvar="FREA_PUBLISH_WINDOW", show_default=True),
        click.option("--registry-url", default=DEFAULT_REGISTRY_URL, envvar="FREA_REGISTRY_URL", show_default=True),
        click.option("--fanout-concurrency", type=int, default=16, envvar="FREA_FANOUT_CONCURRENCY", show_default=True),
        click.option("--tarball-base-url", default=None, envvar="FREA_TARBALL_BASE_URL", help="Rewrite dist.tarball to this mirror base"),
        click.option("--digest-algorithm", default="sha1", envvar="FREA_DIGEST_ALGORITHM", show_default=True),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _build_config(**kw: Any) -> MirrorConfig:
    try:
        return MirrorConfig(
            store_root=kw["store_root"],
            checkpoint_root=kw["checkpoint_root"],
            spool_root=kw["spool_root"],
            bus=kw["bus"],
            store=kw["store"],
            s3_bucket=kw["s3_bucket"],
            s3_prefix=kw["s3_prefix"],
            s3_endpoint_url=kw["s3_endpoint_url"],
            s3_region=kw["s3_region"],
            timeout_s=kw["timeout_s"],
            max_connections=kw["max_connections"],
            bus_concurrency=kw["bus_concurrency"],
            visibility_timeout_s=kw["visibility_timeout_s"],
            max_delivery_attempts=kw["max_delivery_attempts"],
            follower=FollowerConfig(
                changes_url=kw["changes_url"],
                source_id=kw["source_id"],
                since=kw["since"],
                inactivity_timeout_s=kw["inactivity_timeout_s"],
                checkpoint_interval_s=kw["checkpoint_interval_s"],
                publish_limit=kw["publish_limit"],
                publish_window_s=kw["publish_window_s"],
            ),
            dispatcher=DispatcherConfig(
                registry_url=kw["registry_url"],
                fanout_concurrency=kw["fanout_concurrency"],
                tarball_base_url=kw["tarball_base_url"],
            ),
            replicator=ReplicatorConfig(digest_algorithm=kw["digest_algorithm"]),
        )
    except ConfigError as e:
        raise click.BadParameter(str(e)) from e


def _role(f: Callable[..., Any]) -> Callable[..., Any]:
    @_mirror_options
    @functools.wraps(f)
    def wrapper(**kw: Any) -> None:
        f(_build_config(**kw))

    return wrapper


@click.group()
@click.option("--log-level", default="info", envvar="FREA_LOG_LEVEL", show_default=True)
@click.option("--log-json/--no-log-json", default=False, envvar="FREA_LOG_JSON", show_default=True)
def cli(log_level: str, log_json: bool) -> None:
    """frea: mirror a package registry change feed into verified storage."""
    configure_logging(log_level, json=log_json)


@cli.command("follow")
@_role
def follow_cmd(config: MirrorConfig) -> None:
    """Follow the change feed and publish package ids to `change-ids`."""
    stats = _run(run_follower(config))
    if stats is not None:
        console.print(
            f"[bold]follower stopped[/]: "
            f"[green]published[/]={stats.published}  "
            f"[red]publish_failed[/]={stats.publish_failed}  "
            f"[yellow]dropped[/]={stats.dropped}  "
            f"checkpoints={stats.checkpoints_written}"
        )


@cli.command("packages")
@_role
def packages_cmd(config: MirrorConfig) -> None:
    """Consume `change-ids`: resolve manifests and fan out tarball tasks."""
    _run(run_dispatcher(config))


@cli.command("tarballs")
@_role
def tarballs_cmd(config: MirrorConfig) -> None:
    """Consume `artifact-tasks`: download, verify and store tarballs."""
    _run(run_replicator(config))


@cli.command("mirror")
@_role
def mirror_cmd(config: MirrorConfig) -> None:
    """Run follower, packages and tarballs roles in one process."""
    _run(run_mirror(config))


# ---------------------------------------------------------------------------
# Checkpoint administration
# ---------------------------------------------------------------------------


@cli.group("checkpoint")
def checkpoint_group() -> None:
    """Inspect or seed the follower cursor."""


def _checkpoint_options(f: Callable[..., Any]) -> Callable[..., Any]:
    f = click.option("--source-id", default=None, envvar="FREA_SOURCE_ID")(f)
    f = click.option("--changes-url", default=DEFAULT_CHANGES_URL, envvar="FREA_CHANGES_URL", show_default=True)(f)
    f = click.option("--checkpoint-root", type=click.Path(path_type=Path), default=Path("./checkpoints"), envvar="FREA_CHECKPOINT_ROOT", show_default=True)(f)
    return f


@checkpoint_group.command("show")
@_checkpoint_options
def checkpoint_show_cmd(checkpoint_root: Path, changes_url: str, source_id: str | None) -> None:
    """Print the stored cursor."""
    sid = source_id or source_id_for(changes_url)
    try:
        value = asyncio.run(FileCheckpointStore(checkpoint_root).get(sid))
    except CheckpointReadError as e:
        raise click.ClickException(str(e)) from e
    if value is None:
        raise click.ClickException(f"no checkpoint stored for source {sid!r}")
    click.echo(f"{sid}\t{value}")


@checkpoint_group.command("set")
@click.argument("seq", type=click.IntRange(min=0))
@_checkpoint_options
def checkpoint_set_cmd(seq: int, checkpoint_root: Path, changes_url: str, source_id: str | None) -> None:
    """Store SEQ as the cursor the follower resumes from."""
    sid = source_id or source_id_for(changes_url)
    asyncio.run(FileCheckpointStore(checkpoint_root).set(sid, seq))
    console.print(f"[green]checkpoint[/] {sid} = {seq}")


if __name__ == "__main__":
    cli()
