"""Listing and collection-bid state rebuilt from decoded marketplace events.

:class:`MarketState` is the fold target. Events call back into it through
``event.apply_to(state, origin)``; the state never deletes a record, only
creates it on its create event and mutates it on events that name its key.

Ordering rules:

* a listing or collection bid is created by the first create event seen in
  chain order; later duplicates are logged and ignored;
* every bid is appended to the listing's history, but only a bid strictly
  greater than the current one becomes ``current_bid``;
* status events overwrite the status (last writer in chain order wins); a
  terminal status replaced by a different terminal status is kept as a
  :class:`ConflictingTerminalState` on the record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .chain import ChainTransaction, UnspentOutput, sort_history
from .events import (
    BidEvent,
    CollectionBidEvent,
    CollectionBidStatusEvent,
    ListingEvent,
    MarketEvent,
    StatusEvent,
    decode_any,
)

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
LISTING_TERMINAL_STATUSES = frozenset({"sold", "cancelled", "claimed"})
COLLECTION_BID_TERMINAL_STATUSES = frozenset({"filled", "cancelled"})

SOURCE_EVENT = "event"
SOURCE_INFERRED = "inferred"


class UnknownReferenceError(LookupError):
    """Raised when an event names a listing or bid the fold has not created."""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} references unknown key {key}")
        self.kind = kind
        self.key = key


@dataclass(frozen=True)
class EventOrigin:
    """Where in the chain an event was found."""

    txid: str
    vout: int
    height: Optional[int]
    position: Optional[int]
    timestamp: int
    transaction: Optional[ChainTransaction] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_transaction(cls, tx: ChainTransaction, vout: int) -> "EventOrigin":
        return cls(
            txid=tx.txid,
            vout=vout,
            height=tx.height,
            position=tx.position,
            timestamp=tx.timestamp,
            transaction=tx,
        )


@dataclass(frozen=True)
class ConflictingTerminalState:
    previous: str
    current: str
    txid: str


@dataclass(frozen=True)
class FoldAnomaly:
    """Something the fold tolerated but that is worth surfacing."""

    kind: str
    key: str
    txid: str
    detail: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "key": self.key, "txid": self.txid, "detail": self.detail}


@dataclass
class BidRecord:
    bidder_pkh: str
    amount: int
    txid: str
    timestamp: int
    height: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bidderPkh": self.bidder_pkh,
            "amount": str(self.amount),
            "txid": self.txid,
            "timestamp": self.timestamp,
            "height": self.height,
        }


@dataclass
class ListingRecord:
    txid: str
    listing_type: str
    seller_pkh: str
    creator_pkh: str
    royalty_basis_points: int
    token_category: str
    price: int
    min_bid: int
    end_time: int
    min_bid_increment: int
    created_at: int
    updated_at: int
    tracking_category: Optional[str] = None
    current_bid: int = 0
    current_bidder: str = ""
    bid_history: List[BidRecord] = field(default_factory=list)
    status: str = STATUS_ACTIVE
    status_source: Optional[str] = None
    created_height: Optional[int] = None
    contract_address: Optional[str] = None
    commitment: str = ""
    conflicts: List[ConflictingTerminalState] = field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None

    @property
    def is_auction(self) -> bool:
        return self.listing_type == "auction"

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def has_ended(self, now: float) -> bool:
        return self.is_auction and self.end_time > 0 and self.end_time <= now

    def holds_escrow(self, unspent: Iterable[UnspentOutput]) -> bool:
        """Return True when ``unspent`` still contains this listing's covenant UTXO."""

        categories = {self.token_category}
        if self.tracking_category:
            categories.add(self.tracking_category)
        for utxo in unspent:
            if utxo.token is None or utxo.token.category not in categories:
                continue
            # Auction covenants re-issue their UTXO on every bid, so only fixed
            # listings can be pinned to the original NFT commitment.
            if self.is_auction or not self.commitment or utxo.token.commitment == self.commitment:
                return True
        return False

    def inferred_terminal_status(self, now: float) -> str:
        if self.is_auction and self.has_ended(now):
            return "claimed"
        return "sold"

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "txid": self.txid,
            "listingType": self.listing_type,
            "tokenCategory": self.token_category,
            "trackingCategory": self.tracking_category,
            "commitment": self.commitment,
            "contractAddress": self.contract_address,
            "sellerPkh": self.seller_pkh,
            "creatorPkh": self.creator_pkh,
            "royaltyBasisPoints": self.royalty_basis_points,
            "status": self.status,
            "statusSource": self.status_source,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "createdHeight": self.created_height,
            "metadata": self.metadata,
        }
        if self.is_auction:
            payload.update(
                {
                    "minBid": str(self.min_bid),
                    "minBidIncrement": str(self.min_bid_increment),
                    "currentBid": str(self.current_bid),
                    "currentBidder": self.current_bidder,
                    "endTime": self.end_time,
                    "bidHistory": [bid.to_dict() for bid in self.bid_history],
                    "ended": self.is_active and now is not None and self.has_ended(now),
                }
            )
        else:
            payload["price"] = str(self.price)
        if self.conflicts:
            payload["conflicts"] = [
                {"previous": c.previous, "current": c.current, "txid": c.txid}
                for c in self.conflicts
            ]
        return payload


@dataclass
class CollectionBidRecord:
    txid: str
    token_category: str
    bid_salt: str
    price: int
    bidder_pkh: str
    creator_pkh: str
    royalty_basis_points: int
    created_at: int
    updated_at: int
    status: str = STATUS_ACTIVE
    status_source: Optional[str] = None
    created_height: Optional[int] = None
    contract_address: Optional[str] = None
    vout: Optional[int] = None
    conflicts: List[ConflictingTerminalState] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.token_category, self.bid_salt)

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def holds_escrow(self, unspent: Iterable[UnspentOutput]) -> bool:
        if self.vout is None:
            return True
        return any(utxo.txid == self.txid and utxo.vout == self.vout for utxo in unspent)

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "txid": self.txid,
            "tokenCategory": self.token_category,
            "bidSalt": self.bid_salt,
            "price": str(self.price),
            "bidderPkh": self.bidder_pkh,
            "creatorPkh": self.creator_pkh,
            "royaltyBasisPoints": self.royalty_basis_points,
            "contractAddress": self.contract_address,
            "status": self.status,
            "statusSource": self.status_source,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "createdHeight": self.created_height,
        }
        if self.conflicts:
            payload["conflicts"] = [
                {"previous": c.previous, "current": c.current, "txid": c.txid}
                for c in self.conflicts
            ]
        return payload


class MarketState:
    """Listing and collection-bid tables folded from chain-ordered events."""

    def __init__(self) -> None:
        self.listings: Dict[str, ListingRecord] = {}
        self.collection_bids: Dict[str, CollectionBidRecord] = {}
        self.anomalies: List[FoldAnomaly] = []
        self._collection_bid_keys: Dict[Tuple[str, str], str] = {}
        self._applied: Set[Tuple[str, int, bytes]] = set()

    def _note(self, kind: str, key: str, txid: str, detail: str = "") -> None:
        self.anomalies.append(FoldAnomaly(kind=kind, key=key, txid=txid, detail=detail))

    # Fold entry points -----------------------------------------------------

    def apply(self, event: MarketEvent, origin: EventOrigin) -> None:
        """Apply one event, absorbing every failure into an anomaly."""

        try:
            event.apply_to(self, origin)
        except UnknownReferenceError as exc:
            logger.warning("Skipping %s in %s: %s", event.kind, origin.txid, exc)
            self._note("unknown_reference", exc.key, origin.txid, event.kind)
        except Exception as exc:
            logger.exception("Failed to apply %s from %s", event.kind, origin.txid)
            self._note("apply_failed", origin.txid, origin.txid, f"{event.kind}: {exc}")

    def apply_transaction(self, tx: ChainTransaction) -> int:
        """Decode and apply every event carried by ``tx``; return how many applied."""

        applied = 0
        for vout, payload in tx.payloads():
            marker = (tx.txid, vout, payload)
            if marker in self._applied:
                continue
            event = decode_any(payload)
            if event is None:
                continue
            self._applied.add(marker)
            self.apply(event, EventOrigin.from_transaction(tx, vout))
            applied += 1
        return applied

    # Listing events --------------------------------------------------------

    def create_listing(self, event: ListingEvent, origin: EventOrigin) -> None:
        if origin.txid in self.listings:
            logger.warning("Duplicate listing event for %s ignored", origin.txid)
            self._note("duplicate", origin.txid, origin.txid, "listing")
            return

        contract_address = None
        commitment = ""
        if origin.transaction is not None:
            escrow = origin.transaction.output_for_token(event.token_category)
            if escrow is not None:
                contract_address = escrow.address
                commitment = escrow.token.commitment if escrow.token else ""

        self.listings[origin.txid] = ListingRecord(
            txid=origin.txid,
            listing_type=event.listing_type,
            seller_pkh=event.seller_pkh,
            creator_pkh=event.creator_pkh,
            royalty_basis_points=event.royalty_basis_points,
            token_category=event.token_category,
            tracking_category=event.tracking_category,
            price=event.price,
            min_bid=event.min_bid,
            end_time=event.end_time,
            min_bid_increment=event.min_bid_increment,
            created_at=origin.timestamp,
            updated_at=origin.timestamp,
            created_height=origin.height,
            contract_address=contract_address,
            commitment=commitment,
        )

    def record_bid(self, event: BidEvent, origin: EventOrigin) -> None:
        listing = self.listings.get(event.listing_txid)
        if listing is None:
            raise UnknownReferenceError("bid", event.listing_txid)

        listing.bid_history.append(
            BidRecord(
                bidder_pkh=event.bidder_pkh,
                amount=event.bid_amount,
                txid=origin.txid,
                timestamp=origin.timestamp,
                height=origin.height,
            )
        )
        listing.updated_at = max(listing.updated_at, origin.timestamp)
        if not listing.is_active:
            logger.info("Bid %s on closed listing %s recorded only", origin.txid, listing.txid)
            return
        if event.bid_amount > listing.current_bid:
            listing.current_bid = event.bid_amount
            listing.current_bidder = event.bidder_pkh

    def set_listing_status(self, event: StatusEvent, origin: EventOrigin) -> None:
        listing = self.listings.get(event.listing_txid)
        if listing is None:
            raise UnknownReferenceError("status", event.listing_txid)

        if listing.status in LISTING_TERMINAL_STATUSES and listing.status != event.status:
            logger.warning(
                "Listing %s moves from terminal %s to %s in %s",
                listing.txid,
                listing.status,
                event.status,
                origin.txid,
            )
            listing.conflicts.append(
                ConflictingTerminalState(listing.status, event.status, origin.txid)
            )
            self._note(
                "conflicting_terminal_state",
                listing.txid,
                origin.txid,
                f"{listing.status} -> {event.status}",
            )
        listing.status = event.status
        listing.status_source = SOURCE_EVENT
        listing.updated_at = max(listing.updated_at, origin.timestamp)

    # Collection bid events -------------------------------------------------

    def create_collection_bid(self, event: CollectionBidEvent, origin: EventOrigin) -> None:
        key = (event.token_category, event.bid_salt)
        if origin.txid in self.collection_bids or key in self._collection_bid_keys:
            logger.warning("Duplicate collection bid %s ignored", origin.txid)
            self._note("duplicate", origin.txid, origin.txid, "collection_bid")
            return

        contract_address = None
        vout = None
        if origin.transaction is not None:
            escrow = origin.transaction.first_script_hash_output()
            if escrow is not None:
                contract_address = escrow.address
                vout = escrow.n

        self._collection_bid_keys[key] = origin.txid
        self.collection_bids[origin.txid] = CollectionBidRecord(
            txid=origin.txid,
            token_category=event.token_category,
            bid_salt=event.bid_salt,
            price=event.price,
            bidder_pkh=event.bidder_pkh,
            creator_pkh=event.creator_pkh,
            royalty_basis_points=event.royalty_basis_points,
            created_at=origin.timestamp,
            updated_at=origin.timestamp,
            created_height=origin.height,
            contract_address=contract_address,
            vout=vout,
        )

    def set_collection_bid_status(
        self, event: CollectionBidStatusEvent, origin: EventOrigin
    ) -> None:
        bid = self.collection_bids.get(event.bid_txid)
        if bid is None:
            raise UnknownReferenceError("collection_bid_status", event.bid_txid)

        if bid.status in COLLECTION_BID_TERMINAL_STATUSES and bid.status != event.status:
            logger.warning(
                "Collection bid %s moves from terminal %s to %s in %s",
                bid.txid,
                bid.status,
                event.status,
                origin.txid,
            )
            bid.conflicts.append(ConflictingTerminalState(bid.status, event.status, origin.txid))
            self._note(
                "conflicting_terminal_state", bid.txid, origin.txid, f"{bid.status} -> {event.status}"
            )
        bid.status = event.status
        bid.status_source = SOURCE_EVENT
        bid.updated_at = max(bid.updated_at, origin.timestamp)

    def find_collection_bid(self, token_category: str, bid_salt: str) -> Optional[CollectionBidRecord]:
        txid = self._collection_bid_keys.get((token_category, bid_salt))
        return self.collection_bids.get(txid) if txid else None


def fold_transactions(
    transactions: Iterable[ChainTransaction], state: Optional[MarketState] = None
) -> MarketState:
    """Fold ``transactions`` into ``state`` (a new one by default) in chain order."""

    state = state if state is not None else MarketState()
    for tx in sort_history(transactions):
        state.apply_transaction(tx)
    return state
