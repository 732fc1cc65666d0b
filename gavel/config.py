"""GavelConfig — frozen dataclass, all settings from env vars with safe defaults."""
from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _bool(val: str) -> bool:
    return val.strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class GavelConfig:
    # ── Endpoints ──
    socket_url: str = _env("GAVEL_SOCKET_URL", "ws://localhost:5000/ws")
    api_url: str = _env("GAVEL_API_URL", "http://localhost:5000")

    # ── Channel policy ──
    auto_reconnect: bool = _bool(_env("GAVEL_AUTO_RECONNECT", "true"))
    reconnect_attempts: int = int(_env("GAVEL_RECONNECT_ATTEMPTS", "10"))
    reconnect_delay_s: float = float(_env("GAVEL_RECONNECT_DELAY_S", "1.0"))  # fixed, no backoff
    connect_timeout_s: float = float(_env("GAVEL_CONNECT_TIMEOUT_S", "20.0"))

    # ── Clock ──
    resync_interval_s: float = float(_env("GAVEL_RESYNC_INTERVAL_S", "30.0"))
    countdown_tick_s: float = float(_env("GAVEL_COUNTDOWN_TICK_S", "0.1"))

    # ── Bidding ──
    bid_increment: int = int(_env("GAVEL_BID_INCREMENT", "10"))
    bid_cooldown_s: float = float(_env("GAVEL_BID_COOLDOWN_S", "1.0"))

    # ── Snapshot service ──
    http_timeout_s: float = float(_env("GAVEL_HTTP_TIMEOUT_S", "10"))
    http_retries: int = int(_env("GAVEL_HTTP_RETRIES", "3"))
    http_backoff_s: float = float(_env("GAVEL_HTTP_BACKOFF_S", "0.5"))  # 0.5s -> 1s -> 2s

    # ── Presentation ──
    notification_ttl_s: float = float(_env("GAVEL_NOTIFICATION_TTL_S", "3.0"))
    status_interval_s: float = float(_env("GAVEL_STATUS_INTERVAL_S", "5"))
    log_level: str = _env("GAVEL_LOG_LEVEL", "INFO")
