"""Binary marketplace events carried in null-data outputs.

Every event kind has a fixed four byte magic, a version byte and a fixed
length layout of big-endian integers and raw hash bytes. Hash-like fields are
exposed as lowercase hex strings in wire order.

:func:`decode_any` is the entry point used by the indexer: it never raises and
returns ``None`` for anything that is not a well-formed event, so one bad
payload cannot stop a scan. The per-kind ``decode`` classmethods raise
:class:`DecodeError` instead, which is more useful from the CLI.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Type, Union

logger = logging.getLogger(__name__)

LISTING_MAGIC = b"BZAR"
BID_MAGIC = b"BZBD"
STATUS_MAGIC = b"BZST"
COLLECTION_BID_MAGIC = b"BZCB"
COLLECTION_BID_STATUS_MAGIC = b"BZCS"

EVENT_VERSION = 2
LISTING_VERSION_V1 = 1
LISTING_VERSION_V2 = 2

LISTING_LENGTH_V1 = 104
LISTING_LENGTH_V2 = 136
BID_LENGTH = 65
STATUS_LENGTH = 58
COLLECTION_BID_LENGTH = 119
COLLECTION_BID_STATUS_LENGTH = 58

LISTING_TYPE_FIXED = 0
LISTING_TYPE_AUCTION = 1

LISTING_STATUS_CODES = {"sold": 1, "cancelled": 2, "claimed": 3}
LISTING_STATUS_BY_CODE = {code: name for name, code in LISTING_STATUS_CODES.items()}
COLLECTION_BID_STATUS_CODES = {"filled": 1, "cancelled": 2}
COLLECTION_BID_STATUS_BY_CODE = {code: name for name, code in COLLECTION_BID_STATUS_CODES.items()}

PKH_SIZE = 20
HASH_SIZE = 32

U16_MAX = 2**16 - 1
U32_MAX = 2**32 - 1
U64_MAX = 2**64 - 1


class DecodeError(ValueError):
    """Raised when a payload is not a well-formed marketplace event."""


class EventValidationError(ValueError):
    """Raised when an event's fields cannot be encoded faithfully."""


def _check_header(payload: bytes, magic: bytes, versions: Tuple[int, ...]) -> int:
    if payload[:4] != magic:
        raise DecodeError(f"magic mismatch: expected {magic!r}")
    if len(payload) < 5:
        raise DecodeError("payload too short for version byte")
    version = payload[4]
    if version not in versions:
        raise DecodeError(f"unsupported {magic.decode()} version {version}")
    return version


def _check_length(payload: bytes, required: int, magic: bytes) -> None:
    if len(payload) < required:
        raise DecodeError(
            f"{magic.decode()} payload is {len(payload)} bytes, expected at least {required}"
        )


def _hex(payload: bytes, offset: int, size: int) -> str:
    return payload[offset : offset + size].hex()


def _require_hex(name: str, value: str, size: int) -> None:
    try:
        raw = bytes.fromhex(value)
    except (TypeError, ValueError) as exc:
        raise EventValidationError(f"{name} is not valid hex") from exc
    if len(raw) != size:
        raise EventValidationError(f"{name} must be {size} bytes, got {len(raw)}")


def _require_uint(name: str, value: int, maximum: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise EventValidationError(f"{name} must be an integer")
    if value < 0 or value > maximum:
        raise EventValidationError(f"{name} must be between 0 and {maximum}")


@dataclass(frozen=True)
class ListingEvent:
    """Creates a fixed-price or auction listing; keyed by its transaction id."""

    listing_type: str
    royalty_basis_points: int
    price: int
    min_bid: int
    end_time: int
    min_bid_increment: int
    seller_pkh: str
    creator_pkh: str
    token_category: str
    tracking_category: Optional[str] = None

    kind = "listing"
    magic = LISTING_MAGIC

    @property
    def version(self) -> int:
        return LISTING_VERSION_V1 if self.tracking_category is None else LISTING_VERSION_V2

    @property
    def is_auction(self) -> bool:
        return self.listing_type == "auction"

    def validate(self) -> None:
        if self.listing_type not in {"fixed", "auction"}:
            raise EventValidationError(f"unknown listing type {self.listing_type!r}")
        _require_uint("royalty_basis_points", self.royalty_basis_points, U16_MAX)
        _require_uint("price", self.price, U64_MAX)
        _require_uint("min_bid", self.min_bid, U64_MAX)
        _require_uint("end_time", self.end_time, U32_MAX)
        _require_uint("min_bid_increment", self.min_bid_increment, U32_MAX)
        _require_hex("seller_pkh", self.seller_pkh, PKH_SIZE)
        _require_hex("creator_pkh", self.creator_pkh, PKH_SIZE)
        _require_hex("token_category", self.token_category, HASH_SIZE)
        if self.tracking_category is not None:
            _require_hex("tracking_category", self.tracking_category, HASH_SIZE)

    def encode(self) -> bytes:
        self.validate()
        type_code = LISTING_TYPE_FIXED if self.listing_type == "fixed" else LISTING_TYPE_AUCTION
        payload = (
            LISTING_MAGIC
            + struct.pack(
                ">BBHQQII",
                self.version,
                type_code,
                self.royalty_basis_points,
                self.price,
                self.min_bid,
                self.end_time,
                self.min_bid_increment,
            )
            + bytes.fromhex(self.seller_pkh)
            + bytes.fromhex(self.creator_pkh)
            + bytes.fromhex(self.token_category)
        )
        if self.tracking_category is not None:
            payload += bytes.fromhex(self.tracking_category)
        return payload

    @classmethod
    def decode(cls, payload: bytes) -> "ListingEvent":
        version = _check_header(payload, LISTING_MAGIC, (LISTING_VERSION_V1, LISTING_VERSION_V2))
        required = LISTING_LENGTH_V2 if version == LISTING_VERSION_V2 else LISTING_LENGTH_V1
        _check_length(payload, required, LISTING_MAGIC)
        type_code, royalty, price, min_bid, end_time, increment = struct.unpack_from(
            ">BHQQII", payload, 5
        )
        tracking = _hex(payload, 104, HASH_SIZE) if version == LISTING_VERSION_V2 else None
        return cls(
            listing_type="fixed" if type_code == LISTING_TYPE_FIXED else "auction",
            royalty_basis_points=royalty,
            price=price,
            min_bid=min_bid,
            end_time=end_time,
            min_bid_increment=increment,
            seller_pkh=_hex(payload, 32, PKH_SIZE),
            creator_pkh=_hex(payload, 52, PKH_SIZE),
            token_category=_hex(payload, 72, HASH_SIZE),
            tracking_category=tracking,
        )

    def apply_to(self, state: Any, origin: Any) -> None:
        state.create_listing(self, origin)


@dataclass(frozen=True)
class BidEvent:
    """Records a bid against an auction listing."""

    listing_txid: str
    bidder_pkh: str
    bid_amount: int

    kind = "bid"
    magic = BID_MAGIC
    version = EVENT_VERSION

    def validate(self) -> None:
        _require_hex("listing_txid", self.listing_txid, HASH_SIZE)
        _require_hex("bidder_pkh", self.bidder_pkh, PKH_SIZE)
        _require_uint("bid_amount", self.bid_amount, U64_MAX)

    def encode(self) -> bytes:
        self.validate()
        return (
            BID_MAGIC
            + bytes([EVENT_VERSION])
            + bytes.fromhex(self.listing_txid)
            + bytes.fromhex(self.bidder_pkh)
            + struct.pack(">Q", self.bid_amount)
        )

    @classmethod
    def decode(cls, payload: bytes) -> "BidEvent":
        _check_header(payload, BID_MAGIC, (EVENT_VERSION,))
        _check_length(payload, BID_LENGTH, BID_MAGIC)
        (amount,) = struct.unpack_from(">Q", payload, 57)
        return cls(
            listing_txid=_hex(payload, 5, HASH_SIZE),
            bidder_pkh=_hex(payload, 37, PKH_SIZE),
            bid_amount=amount,
        )

    def apply_to(self, state: Any, origin: Any) -> None:
        state.record_bid(self, origin)


@dataclass(frozen=True)
class StatusEvent:
    """Moves a listing to sold, cancelled or claimed."""

    status: str
    listing_txid: str
    actor_pkh: str

    kind = "status"
    magic = STATUS_MAGIC
    version = EVENT_VERSION

    def validate(self) -> None:
        if self.status not in LISTING_STATUS_CODES:
            raise EventValidationError(f"unknown listing status {self.status!r}")
        _require_hex("listing_txid", self.listing_txid, HASH_SIZE)
        _require_hex("actor_pkh", self.actor_pkh, PKH_SIZE)

    def encode(self) -> bytes:
        self.validate()
        return (
            STATUS_MAGIC
            + bytes([EVENT_VERSION, LISTING_STATUS_CODES[self.status]])
            + bytes.fromhex(self.listing_txid)
            + bytes.fromhex(self.actor_pkh)
        )

    @classmethod
    def decode(cls, payload: bytes) -> "StatusEvent":
        _check_header(payload, STATUS_MAGIC, (EVENT_VERSION,))
        _check_length(payload, STATUS_LENGTH, STATUS_MAGIC)
        status = LISTING_STATUS_BY_CODE.get(payload[5])
        if status is None:
            raise DecodeError(f"unknown listing status code {payload[5]}")
        return cls(
            status=status,
            listing_txid=_hex(payload, 6, HASH_SIZE),
            actor_pkh=_hex(payload, 38, PKH_SIZE),
        )

    def apply_to(self, state: Any, origin: Any) -> None:
        state.set_listing_status(self, origin)


@dataclass(frozen=True)
class CollectionBidEvent:
    """Opens a standing bid for any token of a category."""

    royalty_basis_points: int
    price: int
    bidder_pkh: str
    creator_pkh: str
    token_category: str
    bid_salt: str

    kind = "collection_bid"
    magic = COLLECTION_BID_MAGIC
    version = EVENT_VERSION

    def validate(self) -> None:
        _require_uint("royalty_basis_points", self.royalty_basis_points, U16_MAX)
        _require_uint("price", self.price, U64_MAX)
        _require_hex("bidder_pkh", self.bidder_pkh, PKH_SIZE)
        _require_hex("creator_pkh", self.creator_pkh, PKH_SIZE)
        _require_hex("token_category", self.token_category, HASH_SIZE)
        _require_hex("bid_salt", self.bid_salt, HASH_SIZE)

    def encode(self) -> bytes:
        self.validate()
        return (
            COLLECTION_BID_MAGIC
            + struct.pack(">BHQ", EVENT_VERSION, self.royalty_basis_points, self.price)
            + bytes.fromhex(self.bidder_pkh)
            + bytes.fromhex(self.creator_pkh)
            + bytes.fromhex(self.token_category)
            + bytes.fromhex(self.bid_salt)
        )

    @classmethod
    def decode(cls, payload: bytes) -> "CollectionBidEvent":
        _check_header(payload, COLLECTION_BID_MAGIC, (EVENT_VERSION,))
        _check_length(payload, COLLECTION_BID_LENGTH, COLLECTION_BID_MAGIC)
        royalty, price = struct.unpack_from(">HQ", payload, 5)
        return cls(
            royalty_basis_points=royalty,
            price=price,
            bidder_pkh=_hex(payload, 15, PKH_SIZE),
            creator_pkh=_hex(payload, 35, PKH_SIZE),
            token_category=_hex(payload, 55, HASH_SIZE),
            bid_salt=_hex(payload, 87, HASH_SIZE),
        )

    def apply_to(self, state: Any, origin: Any) -> None:
        state.create_collection_bid(self, origin)


@dataclass(frozen=True)
class CollectionBidStatusEvent:
    """Marks a collection bid as filled or cancelled."""

    status: str
    bid_txid: str
    actor_pkh: str

    kind = "collection_bid_status"
    magic = COLLECTION_BID_STATUS_MAGIC
    version = EVENT_VERSION

    def validate(self) -> None:
        if self.status not in COLLECTION_BID_STATUS_CODES:
            raise EventValidationError(f"unknown collection bid status {self.status!r}")
        _require_hex("bid_txid", self.bid_txid, HASH_SIZE)
        _require_hex("actor_pkh", self.actor_pkh, PKH_SIZE)

    def encode(self) -> bytes:
        self.validate()
        return (
            COLLECTION_BID_STATUS_MAGIC
            + bytes([EVENT_VERSION, COLLECTION_BID_STATUS_CODES[self.status]])
            + bytes.fromhex(self.bid_txid)
            + bytes.fromhex(self.actor_pkh)
        )

    @classmethod
    def decode(cls, payload: bytes) -> "CollectionBidStatusEvent":
        _check_header(payload, COLLECTION_BID_STATUS_MAGIC, (EVENT_VERSION,))
        _check_length(payload, COLLECTION_BID_STATUS_LENGTH, COLLECTION_BID_STATUS_MAGIC)
        status = COLLECTION_BID_STATUS_BY_CODE.get(payload[5])
        if status is None:
            raise DecodeError(f"unknown collection bid status code {payload[5]}")
        return cls(
            status=status,
            bid_txid=_hex(payload, 6, HASH_SIZE),
            actor_pkh=_hex(payload, 38, PKH_SIZE),
        )

    def apply_to(self, state: Any, origin: Any) -> None:
        state.set_collection_bid_status(self, origin)


MarketEvent = Union[
    ListingEvent, BidEvent, StatusEvent, CollectionBidEvent, CollectionBidStatusEvent
]

EVENT_TYPES: Tuple[Type[Any], ...] = (
    ListingEvent,
    BidEvent,
    StatusEvent,
    CollectionBidEvent,
    CollectionBidStatusEvent,
)

_BY_MAGIC = {event_type.magic: event_type for event_type in EVENT_TYPES}


def decode_event(payload: bytes) -> MarketEvent:
    """Decode ``payload`` into its event, raising :class:`DecodeError` otherwise."""

    if not isinstance(payload, (bytes, bytearray)):
        raise DecodeError("payload must be bytes")
    event_type = _BY_MAGIC.get(bytes(payload[:4]))
    if event_type is None:
        raise DecodeError(f"unknown event magic {bytes(payload[:4])!r}")
    return event_type.decode(bytes(payload))


def decode_any(payload: bytes) -> Optional[MarketEvent]:
    """Return the event encoded in ``payload`` or ``None`` when it is not one."""

    try:
        return decode_event(payload)
    except DecodeError as exc:
        logger.debug("Skipping undecodable payload: %s", exc)
        return None
    except Exception:  # pragma: no cover - decoders only raise DecodeError
        logger.debug("Unexpected failure decoding payload", exc_info=True)
        return None


def decode_hex(payload_hex: str) -> MarketEvent:
    try:
        payload = bytes.fromhex(payload_hex.strip())
    except ValueError as exc:
        raise DecodeError("payload is not valid hex") from exc
    return decode_event(payload)


def encode_hex(event: MarketEvent) -> str:
    return event.encode().hex()
