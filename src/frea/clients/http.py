from __future__ import annotations

import httpx


def make_client(
    *,
    timeout_s: float = 20,
    read_timeout_s: float | None = None,
    max_connections: int = 64,
) -> httpx.AsyncClient:
    """Shared async HTTP client with sane timeouts and connection limits.

    Parameters
    ----------
    timeout_s : float
        Connect/write timeout in seconds, also the read timeout unless
        `read_timeout_s` is given.
    read_timeout_s : float | None
        Read timeout override; long-lived feeds pass their inactivity bound.
    max_connections : int
        Maximum concurrent connections to keep in the pool.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=timeout_s,
            read=read_timeout_s if read_timeout_s is not None else timeout_s,
            write=timeout_s,
            pool=max(30, timeout_s * 3),
        ),
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max(1, max_connections // 2),
        ),
        follow_redirects=True,
        http2=True,
        headers={"user-agent": "frea-mirror"},
    )
