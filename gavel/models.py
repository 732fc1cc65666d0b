"""Data models for auction listings and channel state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from gavel.errors import ProtocolError

log = logging.getLogger(__name__)

ListingId = Union[int, str]
Number = Union[int, float]


class ConnectionState(Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"


# ── Payload field helpers ──

def require_id(data: dict, event: str = "", key: str = "itemId") -> ListingId:
    """Pull a listing id out of a payload; accepts ``itemId`` or ``id``."""
    value = data.get(key, data.get("id"))
    if isinstance(value, bool) or not isinstance(value, (int, str)) or value == "":
        raise ProtocolError(f"missing or invalid {key!r}: {value!r}", event)
    return value


def require_number(data: dict, key: str, event: str = "") -> Number:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"missing or non-numeric {key!r}: {value!r}", event)
    return value


def optional_version(data: dict, event: str = "") -> Optional[int]:
    value = data.get("version")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"non-integer version: {value!r}", event)
    return value


def optional_bidder(data: dict, key: str, event: str = "") -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ProtocolError(f"invalid {key!r}: {value!r}", event)
    return value


@dataclass
class AuctionListing:
    """One auction item as known locally.

    ``end_time`` is in milliseconds in the server's clock domain.
    ``current_bid`` only moves up and ``is_active`` only goes true -> false;
    both are enforced by the engine, not here.
    """

    id: ListingId
    title: str
    starting_price: Number
    current_bid: Number
    end_time: Number
    description: str = ""
    image_ref: str = ""
    highest_bidder_id: Optional[str] = None
    bid_count: int = 0
    is_active: bool = True
    version: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any, event: str = "INITIAL_DATA") -> AuctionListing:
        """Build a listing from a snapshot item (camelCase wire keys)."""
        if not isinstance(data, dict):
            raise ProtocolError(f"listing is not an object: {data!r}", event)

        listing_id = require_id(data, event, key="id")
        starting = require_number(data, "startingPrice", event)
        current = data.get("currentBid", starting)
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            raise ProtocolError(f"non-numeric 'currentBid': {current!r}", event)
        end_time = require_number(data, "endTime", event)

        bid_count = data.get("bidCount", 0) or 0
        if isinstance(bid_count, bool) or not isinstance(bid_count, int) or bid_count < 0:
            raise ProtocolError(f"invalid 'bidCount': {bid_count!r}", event)

        listing = cls(
            id=listing_id,
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            image_ref=str(data.get("imageUrl", data.get("image", "")) or ""),
            starting_price=starting,
            current_bid=current,
            end_time=end_time,
            highest_bidder_id=optional_bidder(data, "highestBidder", event),
            bid_count=bid_count,
            is_active=bool(data.get("isActive", True)),
            version=optional_version(data, event),
        )
        listing.normalize()
        return listing

    def normalize(self) -> None:
        """Restore the listing invariants on data coming from outside."""
        if self.current_bid < self.starting_price:
            log.warning("Listing %s: currentBid %s below startingPrice %s, raising",
                        self.id, self.current_bid, self.starting_price)
            self.current_bid = self.starting_price
        if self.bid_count == 0 and self.highest_bidder_id is not None:
            log.warning("Listing %s: bidder %s with zero bids, clearing",
                        self.id, self.highest_bidder_id)
            self.highest_bidder_id = None

    def next_bid(self, increment: Number) -> Number:
        return self.current_bid + increment

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "imageUrl": self.image_ref,
            "startingPrice": self.starting_price,
            "currentBid": self.current_bid,
            "highestBidder": self.highest_bidder_id,
            "bidCount": self.bid_count,
            "endTime": self.end_time,
            "isActive": self.is_active,
        }
