"""BCH marketplace event codec and indexer."""

from .events import (
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
from .chain import ChainScanner, RPCChainScanner, StaticChainScanner, UpstreamUnavailable
from .state import CollectionBidRecord, ListingRecord, MarketState, fold_transactions
from .indexer import CollectionBidIndexer, IndexSnapshot, MarketplaceIndexer
from .pools import PoolReconstructor, PoolRecord, PoolRegistry
from .service import MarketplaceService

__all__ = [
    "BidEvent",
    "ChainScanner",
    "CollectionBidEvent",
    "CollectionBidIndexer",
    "CollectionBidRecord",
    "CollectionBidStatusEvent",
    "DecodeError",
    "EventValidationError",
    "IndexSnapshot",
    "ListingEvent",
    "ListingRecord",
    "MarketState",
    "MarketplaceIndexer",
    "MarketplaceService",
    "PoolReconstructor",
    "PoolRecord",
    "PoolRegistry",
    "RPCChainScanner",
    "StaticChainScanner",
    "StatusEvent",
    "UpstreamUnavailable",
    "decode_any",
    "decode_event",
    "decode_hex",
    "encode_hex",
    "fold_transactions",
]
