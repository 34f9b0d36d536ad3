"""Marketplace indexers: replay index-address history into cached state tables.

Each indexer owns one family of records (listings, collection bids) and
rebuilds it from the full history of its index addresses on every refresh:

1. fetch and canonically order the history of every configured address;
2. decode null-data payloads and fold them into a fresh :class:`MarketState`;
3. reconcile records still active against the live unspent outputs of their
   covenant address, inferring a terminal status when the escrow is gone;
4. decorate with metadata (listings only);
5. publish the snapshot through a :class:`SnapshotCache`.

A failure to read history never yields an empty answer: the last published
snapshot is returned flagged ``degraded``, or, before the first success, an
explicit ``available=False`` snapshot.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .cache import SnapshotCache
from .chain import ChainScanner, ChainTransaction, UnspentOutput, UpstreamUnavailable, sort_history
from .config import DEFAULT_CACHE_TTL_SECONDS
from .metadata import MetadataResolver, commitment_to_cid
from .state import SOURCE_INFERRED, FoldAnomaly, MarketState

logger = logging.getLogger(__name__)


@dataclass
class IndexSnapshot:
    """One published state table plus how trustworthy it is."""

    family: str
    records: Dict[str, Any] = field(default_factory=dict)
    anomalies: List[FoldAnomaly] = field(default_factory=list)
    built_at: float = 0.0
    version: int = 0
    transactions_scanned: int = 0
    available: bool = True
    degraded: bool = False
    errors: List[str] = field(default_factory=list)

    @classmethod
    def unavailable(cls, family: str, error: str, built_at: float) -> "IndexSnapshot":
        return cls(family=family, built_at=built_at, available=False, degraded=True, errors=[error])

    def get(self, key: str) -> Optional[Any]:
        return self.records.get(key)

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        return {
            "family": self.family,
            "version": self.version,
            "available": self.available,
            "degraded": self.degraded,
            "errors": list(self.errors),
            "builtAt": self.built_at,
            "transactionsScanned": self.transactions_scanned,
            "total": len(self.records),
            "records": [record.to_dict(now) for record in self.records.values()],
            "anomalies": [anomaly.to_dict() for anomaly in self.anomalies],
        }


class FamilyIndexer:
    """Cache-fronted rebuild loop shared by every index family."""

    family = "base"

    def __init__(
        self,
        scanner: ChainScanner,
        *,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        cache: SnapshotCache[IndexSnapshot] | None = None,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.scanner = scanner
        self.cache: SnapshotCache[IndexSnapshot] = (
            cache if cache is not None else SnapshotCache(cache_ttl_seconds)
        )
        self.wall_clock = wall_clock

    def snapshot(self, *, force: bool = False) -> IndexSnapshot:
        """Return the cached snapshot while fresh, refreshing otherwise."""

        if not force:
            cached = self.cache.get()
            if cached is not None:
                return cached
        return self.refresh()

    def refresh(self) -> IndexSnapshot:
        """Rebuild from the chain and publish if no newer refresh got there first."""

        ticket = self.cache.begin()
        started = self.wall_clock()
        try:
            built = self.build()
        except UpstreamUnavailable as exc:
            logger.warning("%s refresh failed: %s", self.family, exc)
            last = self.cache.last()
            if last is not None:
                return replace(last, degraded=True, errors=list(last.errors) + [str(exc)])
            return IndexSnapshot.unavailable(self.family, str(exc), started)

        built.version = ticket
        if not self.cache.publish(ticket, built):
            logger.info(
                "%s refresh %d finished after a newer one; keeping version %d",
                self.family,
                ticket,
                self.cache.version,
            )
            return self.cache.last() or built
        logger.info(
            "%s refresh %d: %d records from %d transactions%s",
            self.family,
            ticket,
            len(built.records),
            built.transactions_scanned,
            " (degraded)" if built.degraded else "",
        )
        return built

    def invalidate(self) -> None:
        self.cache.invalidate()

    def build(self) -> IndexSnapshot:
        raise NotImplementedError


class _EventFamilyIndexer(FamilyIndexer):
    """Indexer whose records are folded from events sent to index addresses."""

    def __init__(self, scanner: ChainScanner, addresses: Sequence[str], **kwargs: Any) -> None:
        if not addresses:
            raise ValueError(f"{type(self).__name__} requires at least one index address")
        super().__init__(scanner, **kwargs)
        self.addresses: List[str] = list(addresses)

    def collect_history(self) -> List[ChainTransaction]:
        transactions: List[ChainTransaction] = []
        for address in self.addresses:
            transactions.extend(self.scanner.get_history(address))
        # Scanners are not trusted to deliver canonical order.
        return sort_history(transactions)

    def fold(self) -> tuple[MarketState, int]:
        history = self.collect_history()
        state = MarketState()
        for tx in history:
            state.apply_transaction(tx)
        return state, len(history)

    def reconcile(
        self, records: Iterable[Any], now: float, state: MarketState
    ) -> List[str]:
        """Infer terminal statuses for active records whose escrow UTXO is gone.

        Returns the upstream errors met along the way; a record whose address
        could not be checked keeps its folded status.
        """

        errors: List[str] = []
        unspent_by_address: Dict[str, Optional[List[UnspentOutput]]] = {}
        for record in records:
            if not record.is_active or not record.contract_address:
                continue
            address = record.contract_address
            if address not in unspent_by_address:
                try:
                    unspent_by_address[address] = self.scanner.get_unspent_outputs(address)
                except UpstreamUnavailable as exc:
                    logger.warning("Could not reconcile %s at %s: %s", record.txid, address, exc)
                    errors.append(str(exc))
                    unspent_by_address[address] = None
            unspent = unspent_by_address[address]
            if unspent is None or record.holds_escrow(unspent):
                continue
            inferred = self.inferred_status(record, now)
            logger.info("Escrow for %s is spent; inferring %s", record.txid, inferred)
            record.status = inferred
            record.status_source = SOURCE_INFERRED
            state.anomalies.append(
                FoldAnomaly(
                    kind="inferred_terminal_state",
                    key=record.txid,
                    txid=record.txid,
                    detail=inferred,
                )
            )
        return errors

    def inferred_status(self, record: Any, now: float) -> str:
        raise NotImplementedError


class MarketplaceIndexer(_EventFamilyIndexer):
    """Listings and auctions folded from the listing index addresses."""

    family = "listings"

    def __init__(
        self,
        scanner: ChainScanner,
        addresses: Sequence[str],
        *,
        resolver: MetadataResolver | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(scanner, addresses, **kwargs)
        self.resolver = resolver

    def build(self) -> IndexSnapshot:
        state, scanned = self.fold()
        now = self.wall_clock()
        errors = self.reconcile(state.listings.values(), now, state)
        self.decorate(state)
        return IndexSnapshot(
            family=self.family,
            records=state.listings,
            anomalies=state.anomalies,
            built_at=now,
            transactions_scanned=scanned,
            degraded=bool(errors),
            errors=errors,
        )

    def inferred_status(self, record: Any, now: float) -> str:
        return record.inferred_terminal_status(now)

    def decorate(self, state: MarketState) -> None:
        if self.resolver is None:
            return
        for listing in state.listings.values():
            cid = commitment_to_cid(listing.commitment)
            if not cid:
                continue
            try:
                listing.metadata = self.resolver.resolve(cid)
            except UpstreamUnavailable as exc:
                logger.warning("Metadata for %s unavailable: %s", listing.txid, exc)
            except Exception:
                logger.exception("Metadata resolver failed for %s", listing.txid)

    # Queries -----------------------------------------------------------------

    def get_listing(self, txid: str) -> Optional[Any]:
        return self.snapshot().get(txid)

    def listings_for_category(self, token_category: str, *, active_only: bool = True) -> List[Any]:
        category = token_category.lower()
        return [
            listing
            for listing in self.snapshot().records.values()
            if listing.token_category == category and (listing.is_active or not active_only)
        ]


class CollectionBidIndexer(_EventFamilyIndexer):
    """Collection-wide bids folded from the collection-bid index addresses."""

    family = "collection_bids"

    def build(self) -> IndexSnapshot:
        state, scanned = self.fold()
        now = self.wall_clock()
        errors = self.reconcile(state.collection_bids.values(), now, state)
        return IndexSnapshot(
            family=self.family,
            records=state.collection_bids,
            anomalies=state.anomalies,
            built_at=now,
            transactions_scanned=scanned,
            degraded=bool(errors),
            errors=errors,
        )

    def inferred_status(self, record: Any, now: float) -> str:
        return "filled"

    def bids_for_category(self, token_category: str, *, active_only: bool = True) -> List[Any]:
        category = token_category.lower()
        bids = [
            bid
            for bid in self.snapshot().records.values()
            if bid.token_category == category and (bid.is_active or not active_only)
        ]
        return sorted(bids, key=lambda bid: bid.price, reverse=True)
