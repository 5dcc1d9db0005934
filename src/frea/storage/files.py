from __future__ import annotations

import os
from pathlib import Path
from uuid import uuid4


def temp_path_for(target: Path) -> Path:
    """Hidden sibling of `target` used while its content is being written."""
    return target.with_name(f".{target.name}.{uuid4().hex}.part")


def tombstone_path_for(target: Path) -> Path:
    """Hidden sibling `target` is renamed to while a delete decides its fate."""
    return target.with_name(f".{target.name}.{uuid4().hex}.del")


def fsync_dir(path: Path) -> None:
    """Flush a directory entry change (rename/unlink) where the OS supports it."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_bytes(target: Path, data: bytes) -> None:
    """Write `data` to `target` so readers see either the old or the new content."""
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = temp_path_for(target)
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    fsync_dir(target.parent)
