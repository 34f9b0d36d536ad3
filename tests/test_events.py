import struct

import pytest

from bazaar_index.events import (
    BID_LENGTH,
    COLLECTION_BID_LENGTH,
    LISTING_LENGTH_V1,
    LISTING_LENGTH_V2,
    STATUS_LENGTH,
    U16_MAX,
    U32_MAX,
    U64_MAX,
    BidEvent,
    CollectionBidEvent,
    CollectionBidStatusEvent,
    DecodeError,
    EventValidationError,
    ListingEvent,
    StatusEvent,
    decode_any,
    decode_event,
    decode_hex,
    encode_hex,
)

SELLER = "11" * 20
CREATOR = "22" * 20
CATEGORY = "ab" * 32
TRACKING = "cd" * 32
LISTING_TXID = "ef" * 32


def _listing(**overrides) -> ListingEvent:
    fields = dict(
        listing_type="auction",
        royalty_basis_points=250,
        price=0,
        min_bid=1_000,
        end_time=1_700_000_000,
        min_bid_increment=100,
        seller_pkh=SELLER,
        creator_pkh=CREATOR,
        token_category=CATEGORY,
        tracking_category=TRACKING,
    )
    fields.update(overrides)
    return ListingEvent(**fields)


def test_listing_v2_layout() -> None:
    payload = _listing().encode()

    assert len(payload) == LISTING_LENGTH_V2
    assert payload[:4] == b"BZAR"
    assert payload[4] == 2
    assert payload[5] == 1
    assert struct.unpack_from(">H", payload, 6)[0] == 250
    assert struct.unpack_from(">Q", payload, 16)[0] == 1_000
    assert payload[32:52].hex() == SELLER
    assert payload[104:136].hex() == TRACKING


def test_listing_without_tracking_encodes_v1() -> None:
    event = _listing(listing_type="fixed", price=50_000, tracking_category=None)
    payload = event.encode()

    assert len(payload) == LISTING_LENGTH_V1
    assert payload[4] == 1
    assert payload[5] == 0
    assert ListingEvent.decode(payload) == event


def test_v1_listing_decodes_with_trailing_bytes() -> None:
    payload = _listing(tracking_category=None).encode() + b"\x00" * 7

    decoded = decode_event(payload)

    assert isinstance(decoded, ListingEvent)
    assert decoded.tracking_category is None
    assert decoded.token_category == CATEGORY


def test_listing_type_other_than_zero_is_auction() -> None:
    payload = bytearray(_listing(listing_type="fixed").encode())
    payload[5] = 7

    assert ListingEvent.decode(bytes(payload)).listing_type == "auction"


def test_listing_round_trip_at_field_limits() -> None:
    event = _listing(
        royalty_basis_points=U16_MAX,
        price=U64_MAX,
        min_bid=U64_MAX,
        end_time=U32_MAX,
        min_bid_increment=U32_MAX,
    )

    assert decode_event(event.encode()) == event

    zero = _listing(royalty_basis_points=0, price=0, min_bid=0, end_time=0, min_bid_increment=0)
    assert decode_event(zero.encode()) == zero


@pytest.mark.parametrize(
    "event, length",
    [
        (BidEvent(listing_txid=LISTING_TXID, bidder_pkh=SELLER, bid_amount=U64_MAX), BID_LENGTH),
        (StatusEvent(status="claimed", listing_txid=LISTING_TXID, actor_pkh=CREATOR), STATUS_LENGTH),
        (
            CollectionBidEvent(
                royalty_basis_points=500,
                price=123_456,
                bidder_pkh=SELLER,
                creator_pkh=CREATOR,
                token_category=CATEGORY,
                bid_salt="01" * 32,
            ),
            COLLECTION_BID_LENGTH,
        ),
        (
            CollectionBidStatusEvent(status="filled", bid_txid=LISTING_TXID, actor_pkh=SELLER),
            STATUS_LENGTH,
        ),
    ],
)
def test_event_kinds_round_trip(event, length) -> None:
    payload = event.encode()

    assert len(payload) == length
    assert decode_event(payload) == event
    assert decode_hex(encode_hex(event)) == event


def test_status_codes_on_the_wire() -> None:
    payload = StatusEvent(status="cancelled", listing_txid=LISTING_TXID, actor_pkh=SELLER).encode()
    assert payload[:6] == b"BZST\x02\x02"

    payload = CollectionBidStatusEvent(status="filled", bid_txid=LISTING_TXID, actor_pkh=SELLER).encode()
    assert payload[:6] == b"BZCS\x02\x01"


@pytest.mark.parametrize(
    "payload",
    [
        b"",
        b"BZ",
        b"BZAR",
        b"BZAR\x02" + b"\x00" * 40,
        b"BZBD\x02" + b"\x00" * 10,
        b"XXXX\x02" + b"\x00" * 200,
        b"BZBD\x01" + b"\x00" * 60,
        b"BZST\x02\x09" + b"\x00" * 52,
        b"BZCS\x02\x00" + b"\x00" * 52,
    ],
)
def test_decode_any_returns_none_for_garbage(payload: bytes) -> None:
    assert decode_any(payload) is None
    with pytest.raises(DecodeError):
        decode_event(payload)


def test_truncated_v2_listing_is_rejected() -> None:
    payload = _listing().encode()[:120]

    assert decode_any(payload) is None


def test_decode_hex_rejects_non_hex() -> None:
    with pytest.raises(DecodeError):
        decode_hex("not hex")


@pytest.mark.parametrize(
    "event",
    [
        _listing(royalty_basis_points=U16_MAX + 1),
        _listing(price=-1),
        _listing(end_time=U32_MAX + 1),
        _listing(seller_pkh="11" * 19),
        _listing(token_category="zz" * 32),
        _listing(listing_type="barter"),
        BidEvent(listing_txid=LISTING_TXID, bidder_pkh=SELLER, bid_amount=U64_MAX + 1),
        StatusEvent(status="expired", listing_txid=LISTING_TXID, actor_pkh=SELLER),
        CollectionBidStatusEvent(status="sold", bid_txid=LISTING_TXID, actor_pkh=SELLER),
    ],
)
def test_encode_rejects_unrepresentable_fields(event) -> None:
    with pytest.raises(EventValidationError):
        event.encode()


def _events_with_fill(fill: str) -> list:
    pkh = fill * 20
    hash32 = fill * 32
    return [
        _listing(seller_pkh=pkh, creator_pkh=pkh, token_category=hash32, tracking_category=hash32),
        _listing(seller_pkh=pkh, creator_pkh=pkh, token_category=hash32, tracking_category=None),
        BidEvent(listing_txid=hash32, bidder_pkh=pkh, bid_amount=1),
        StatusEvent(status="sold", listing_txid=hash32, actor_pkh=pkh),
        CollectionBidEvent(
            royalty_basis_points=0,
            price=1,
            bidder_pkh=pkh,
            creator_pkh=pkh,
            token_category=hash32,
            bid_salt=hash32,
        ),
        CollectionBidStatusEvent(status="cancelled", bid_txid=hash32, actor_pkh=pkh),
    ]


@pytest.mark.parametrize("fill", ["00", "ff"])
def test_uniform_hash_fields_round_trip(fill: str) -> None:
    for event in _events_with_fill(fill):
        payload = event.encode()

        assert decode_event(payload) == event
        assert decode_any(payload) == event
