"""HTTP session for the auction REST API.

The snapshot is fetched on every (re)connect, usually right after the server
came back, so connection resets and 502/503 answers are expected and retried
here. A reset is a POST but restarting an auction twice lands in the same
state, so POST is retried as well.

Sessions are cached per (retries, backoff) pair; every AuctionAPI built from
the same config shares one connection pool.
"""
from __future__ import annotations

import logging
import threading

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from gavel import __version__
from gavel.config import GavelConfig

log = logging.getLogger(__name__)

RETRY_STATUSES = (429, 502, 503, 504)
USER_AGENT = f"gavel/{__version__}"

_sessions: dict[tuple[int, float], requests.Session] = {}
_sessions_lock = threading.Lock()


def snapshot_retry(retries: int, backoff_s: float) -> Retry:
    return Retry(
        total=retries,
        backoff_factor=backoff_s,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=["GET", "POST"],
        raise_on_status=False,        # AuctionAPI reads the error body itself
    )


def build_session(retries: int, backoff_s: float) -> requests.Session:
    s = requests.Session()
    adapter = HTTPAdapter(max_retries=snapshot_retry(retries, backoff_s))
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    s.headers.update({
        "Accept": "application/json",
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    })
    return s


def get_session(cfg: GavelConfig) -> requests.Session:
    """Shared session for ``cfg``'s retry policy.

    AuctionAPI calls arrive from executor threads, so creation is locked.
    """
    key = (cfg.http_retries, cfg.http_backoff_s)
    session = _sessions.get(key)
    if session is not None:
        return session
    with _sessions_lock:
        session = _sessions.get(key)
        if session is None:
            session = build_session(*key)
            log.info("[API] Session ready: %d retries, %.1fs backoff", *key)
            _sessions[key] = session
    return session
