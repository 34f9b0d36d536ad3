import json

from bazaar_index.chain import ChainOutput, ChainTransaction, StaticChainScanner, TokenData, UnspentOutput, UpstreamUnavailable
from bazaar_index.config import IndexerConfig
from bazaar_index.events import CollectionBidEvent, ListingEvent
from bazaar_index.indexer import CollectionBidIndexer, MarketplaceIndexer
from bazaar_index.pools import PoolReconstructor
from bazaar_index.service import MarketplaceService

SELLER = "11" * 20
CATEGORY = "ab" * 32
OTHER_CATEGORY = "cd" * 32
LISTING_INDEX = "bchtest:qlistings"
BID_INDEX = "bchtest:qbids"
COVENANT = "bchtest:pcovenant"
BID_COVENANT = "bchtest:pbid"
POOL = "bchtest:ppool"


def _tx(n: int, event, index: str, escrow: ChainOutput) -> ChainTransaction:
    return ChainTransaction(
        txid=f"{n:064x}",
        height=100 + n,
        position=1,
        timestamp=1_700_000_000 + n,
        outputs=[
            ChainOutput(n=0, value=0, script_type="nulldata", data_pushes=(event.encode(),)),
            ChainOutput(n=1, value=546, address=index, script_type="pubkeyhash"),
            escrow,
        ],
    )


def _fixed(price: int, category: str = CATEGORY) -> ListingEvent:
    return ListingEvent(
        listing_type="fixed",
        royalty_basis_points=0,
        price=price,
        min_bid=0,
        end_time=0,
        min_bid_increment=0,
        seller_pkh=SELLER,
        creator_pkh=SELLER,
        token_category=category,
    )


def _listing_escrow(commitment: str, category: str = CATEGORY) -> ChainOutput:
    return ChainOutput(
        n=2,
        value=1_000,
        address=COVENANT,
        script_type="scripthash",
        token=TokenData(category=category, commitment=commitment, capability="none"),
    )


def _chain() -> StaticChainScanner:
    cheap = _tx(1, _fixed(40_000), LISTING_INDEX, _listing_escrow("01"))
    dear = _tx(2, _fixed(90_000), LISTING_INDEX, _listing_escrow("02"))
    elsewhere = _tx(3, _fixed(1_000, OTHER_CATEGORY), LISTING_INDEX, _listing_escrow("03", OTHER_CATEGORY))
    bid = _tx(
        4,
        CollectionBidEvent(
            royalty_basis_points=0,
            price=35_000,
            bidder_pkh=SELLER,
            creator_pkh=SELLER,
            token_category=CATEGORY,
            bid_salt="09" * 32,
        ),
        BID_INDEX,
        ChainOutput(n=2, value=35_000, address=BID_COVENANT, script_type="scripthash"),
    )
    unspent = {
        COVENANT: [
            UnspentOutput(txid=tx.txid, vout=2, value=1_000, token=tx.outputs[2].token)
            for tx in (cheap, dear, elsewhere)
        ],
        BID_COVENANT: [UnspentOutput(txid=bid.txid, vout=2, value=35_000)],
        POOL: [UnspentOutput(txid="ee" * 32, vout=0, value=50_000)],
    }
    return StaticChainScanner([cheap, dear, elsewhere, bid], unspent)


def _registry(tmp_path):
    path = tmp_path / "pools.json"
    path.write_text(
        json.dumps(
            [
                {
                    "txid": "0f" * 32,
                    "tokenCategory": CATEGORY,
                    "price": "20000",
                    "contractAddress": POOL,
                    "createdAt": 1_700_000_000,
                }
            ]
        )
    )
    return path


def _service(tmp_path) -> MarketplaceService:
    config = IndexerConfig(
        listing_index_addresses=[LISTING_INDEX],
        collection_bid_index_addresses=[BID_INDEX],
        pool_registry_path=_registry(tmp_path),
    )
    return MarketplaceService.from_config(config, _chain())


def test_from_config_builds_every_family(tmp_path) -> None:
    service = _service(tmp_path)

    assert isinstance(service.listings, MarketplaceIndexer)
    assert isinstance(service.collection_bids, CollectionBidIndexer)
    assert isinstance(service.pools, PoolReconstructor)
    assert [indexer.family for indexer in service.indexers()] == ["listings", "collection_bids", "pools"]


def test_optional_families_are_skipped_without_config() -> None:
    service = MarketplaceService.from_config(
        IndexerConfig(listing_index_addresses=[LISTING_INDEX]), _chain()
    )

    assert service.collection_bids is None
    assert service.pools is None
    assert list(service.refresh_all()) == ["listings"]


def test_refresh_all_returns_each_family(tmp_path) -> None:
    snapshots = _service(tmp_path).refresh_all()

    assert set(snapshots) == {"listings", "collection_bids", "pools"}
    assert len(snapshots["listings"].records) == 3
    assert len(snapshots["collection_bids"].records) == 1
    assert len(snapshots["pools"].records) == 1
    assert all(snapshot.available and not snapshot.degraded for snapshot in snapshots.values())


def test_collection_summary(tmp_path) -> None:
    summary = _service(tmp_path).collection_summary(CATEGORY.upper())

    assert summary == {
        "tokenCategory": CATEGORY,
        "listed": 2,
        "floorPrice": "40000",
        "bestCollectionBid": "35000",
        "bestCollectionBidTxid": f"{4:064x}",
        "activePools": 1,
    }


def test_collection_summary_for_unknown_category(tmp_path) -> None:
    summary = _service(tmp_path).collection_summary("99" * 32)

    assert summary["listed"] == 0
    assert summary["floorPrice"] is None
    assert summary["bestCollectionBid"] is None
    assert summary["activePools"] == 0


def test_one_failing_family_does_not_block_the_others(tmp_path) -> None:
    class FlakyScanner(StaticChainScanner):
        def get_history(self, address):
            if address == BID_INDEX:
                raise UpstreamUnavailable("bid index unreachable")
            return super().get_history(address)

    chain = _chain()
    scanner = FlakyScanner(chain.transactions.values(), chain.unspent)
    config = IndexerConfig(
        listing_index_addresses=[LISTING_INDEX], collection_bid_index_addresses=[BID_INDEX]
    )

    snapshots = MarketplaceService.from_config(config, scanner).refresh_all()

    assert snapshots["listings"].available
    assert snapshots["collection_bids"].available is False
