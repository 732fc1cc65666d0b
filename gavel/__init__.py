"""Gavel — real-time sync client for live auctions."""
from __future__ import annotations

__version__ = "0.1.0"
