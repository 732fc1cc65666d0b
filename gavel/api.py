"""Snapshot/query client for the auction REST API.

Only used for the initial listing snapshot, clock seeding and health checks.
Every failure comes out as SnapshotLoadError; retrying is the session's job
(see http_session) or the channel's, never this module's.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import requests

from gavel.config import GavelConfig
from gavel.errors import ProtocolError, SnapshotLoadError
from gavel.http_session import get_session
from gavel.models import AuctionListing, ListingId

log = logging.getLogger(__name__)


class AuctionAPI:
    """Thin client for ``<api_url>/api``."""

    def __init__(self, cfg: GavelConfig, session: Optional[requests.Session] = None):
        self._cfg = cfg
        self._base = cfg.api_url.rstrip("/") + "/api"
        self._timeout = cfg.http_timeout_s
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = get_session(self._cfg)
        return self._session

    def _request(self, method: str, path: str, fallback: str) -> Any:
        url = f"{self._base}{path}"
        log.debug("API Request: %s %s", method, path)
        try:
            resp = self.session.request(method, url, timeout=self._timeout)
        except requests.RequestException as e:
            log.error("API Error: %s %s: %s", method, path, str(e)[:200])
            raise SnapshotLoadError(fallback, path) from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 400:
            message = fallback
            if isinstance(body, dict) and body.get("error"):
                message = str(body["error"])
            log.error("API Error: %s %s -> %d %s", method, path, resp.status_code, message)
            raise SnapshotLoadError(message, path, resp.status_code)
        if body is None:
            raise SnapshotLoadError(fallback, path, resp.status_code)
        return body

    # ── Endpoints ──

    def get_items(self) -> tuple[list[AuctionListing], Optional[float]]:
        """All listings plus the server time they were read at."""
        body = self._request("GET", "/items", "Failed to fetch items")
        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise SnapshotLoadError("Failed to fetch items", "/items")
        try:
            listings = [AuctionListing.from_dict(item, "GET /items") for item in body["data"]]
        except ProtocolError as e:
            raise SnapshotLoadError(f"Failed to fetch items: {e}", "/items") from e
        server_time = body.get("serverTime")
        if isinstance(server_time, bool) or not isinstance(server_time, (int, float)):
            server_time = None
        return listings, server_time

    def get_item(self, item_id: ListingId) -> AuctionListing:
        body = self._request("GET", f"/items/{item_id}", "Failed to fetch item")
        item = body.get("data", body) if isinstance(body, dict) else body
        try:
            return AuctionListing.from_dict(item, "GET /items/{id}")
        except ProtocolError as e:
            raise SnapshotLoadError(f"Failed to fetch item: {e}", f"/items/{item_id}") from e

    def get_server_time(self) -> float:
        body = self._request("GET", "/time", "Failed to get server time")
        server_time = body.get("serverTime") if isinstance(body, dict) else None
        if isinstance(server_time, bool) or not isinstance(server_time, (int, float)):
            raise SnapshotLoadError("Failed to get server time", "/time")
        return server_time

    def reset_item(self, item_id: ListingId) -> Any:
        """Demo utility: restart an auction server-side."""
        return self._request("POST", f"/items/{item_id}/reset", "Failed to reset auction")

    def health(self) -> Any:
        return self._request("GET", "/health", "Health check failed")

    # ── Async bridge ──

    async def fetch_snapshot(self) -> tuple[list[AuctionListing], Optional[float]]:
        """``get_items`` off the event loop; used as the engine's snapshot loader."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.get_items)
