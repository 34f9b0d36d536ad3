"""Facade over the listing, collection-bid and pool indexers."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from .chain import ChainScanner
from .config import IndexerConfig
from .indexer import CollectionBidIndexer, FamilyIndexer, IndexSnapshot, MarketplaceIndexer
from .metadata import MetadataResolver
from .pools import PoolReconstructor, PoolRegistry

logger = logging.getLogger(__name__)


class MarketplaceService:
    """Owns one indexer per record family and answers cross-family queries.

    Families are independent: each keeps its own cache, and a failure in one
    family degrades only that family's snapshot.
    """

    def __init__(
        self,
        listings: MarketplaceIndexer,
        collection_bids: CollectionBidIndexer | None = None,
        pools: PoolReconstructor | None = None,
    ) -> None:
        self.listings = listings
        self.collection_bids = collection_bids
        self.pools = pools

    @classmethod
    def from_config(
        cls,
        config: IndexerConfig,
        scanner: ChainScanner,
        resolver: MetadataResolver | None = None,
    ) -> "MarketplaceService":
        ttl = config.cache_ttl_seconds
        listings = MarketplaceIndexer(
            scanner, config.listing_index_addresses, resolver=resolver, cache_ttl_seconds=ttl
        )
        collection_bids = None
        if config.collection_bid_index_addresses:
            collection_bids = CollectionBidIndexer(
                scanner, config.collection_bid_index_addresses, cache_ttl_seconds=ttl
            )
        pools = None
        if config.pool_registry_path is not None:
            pools = PoolReconstructor(
                scanner, PoolRegistry(config.pool_registry_path), cache_ttl_seconds=ttl
            )
        return cls(listings, collection_bids, pools)

    def indexers(self) -> List[FamilyIndexer]:
        return [
            indexer
            for indexer in (self.listings, self.collection_bids, self.pools)
            if indexer is not None
        ]

    def refresh_all(self, *, max_workers: Optional[int] = None) -> Dict[str, IndexSnapshot]:
        """Refresh every family concurrently and return the resulting snapshots."""

        indexers = self.indexers()
        with ThreadPoolExecutor(max_workers=max_workers or len(indexers)) as pool:
            futures = {indexer.family: pool.submit(indexer.refresh) for indexer in indexers}
            return {family: future.result() for family, future in futures.items()}

    def invalidate_all(self) -> None:
        for indexer in self.indexers():
            indexer.invalidate()

    def collection_summary(self, token_category: str) -> Dict[str, Any]:
        """Floor price, listed count, best collection bid and pool count for a category."""

        category = token_category.lower()
        listings = self.listings.listings_for_category(category)
        fixed_prices = [listing.price for listing in listings if not listing.is_auction]

        best_bid = None
        if self.collection_bids is not None:
            bids = self.collection_bids.bids_for_category(category)
            if bids:
                best_bid = bids[0]

        active_pools = 0
        if self.pools is not None:
            active_pools = len(self.pools.pools_for_category(category))

        return {
            "tokenCategory": category,
            "listed": len(listings),
            "floorPrice": str(min(fixed_prices)) if fixed_prices else None,
            "bestCollectionBid": str(best_bid.price) if best_bid is not None else None,
            "bestCollectionBidTxid": best_bid.txid if best_bid is not None else None,
            "activePools": active_pools,
        }
