import pytest

from conftest import snapshot_item
from gavel.errors import ProtocolError
from gavel.models import AuctionListing


def test_from_dict_reads_wire_keys():
    listing = AuctionListing.from_dict(snapshot_item(4, current_bid=130, bid_count=3, bidder="p1", version=7))
    assert listing.id == 4
    assert listing.current_bid == 130
    assert listing.bid_count == 3
    assert listing.highest_bidder_id == "p1"
    assert listing.version == 7
    assert listing.is_active


def test_missing_current_bid_defaults_to_starting_price():
    item = snapshot_item(1)
    del item["currentBid"]
    assert AuctionListing.from_dict(item).current_bid == 100


def test_invariants_are_restored():
    listing = AuctionListing.from_dict(snapshot_item(1, current_bid=50, bid_count=0, bidder="ghost"))
    assert listing.current_bid == listing.starting_price
    assert listing.highest_bidder_id is None


@pytest.mark.parametrize("patch", [
    {"id": None},
    {"id": True},
    {"startingPrice": "100"},
    {"endTime": None},
    {"bidCount": -1},
    {"highestBidder": 12},
    {"version": "2"},
])
def test_bad_items_raise_protocol_error(patch):
    item = snapshot_item(1)
    item.update(patch)
    with pytest.raises(ProtocolError):
        AuctionListing.from_dict(item)


def test_next_bid():
    listing = AuctionListing.from_dict(snapshot_item(1, current_bid=250, bid_count=2, bidder="a"))
    assert listing.next_bid(10) == 260
