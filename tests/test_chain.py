import pytest

from bazaar_index.chain import (
    ChainTransaction,
    RPCChainScanner,
    StaticChainScanner,
    UpstreamUnavailable,
    coins_to_sats,
    parse_null_data_script,
    parse_verbose_transaction,
    sort_history,
)
from bazaar_index.events import ListingEvent, StatusEvent
from bazaar_index.rpc_client import RPCError
from bazaar_index.state import fold_transactions

INDEX = "bchtest:qindex"


@pytest.mark.parametrize(
    "script_hex, expected",
    [
        ("6a0401020304", (b"\x01\x02\x03\x04",)),
        ("6a" + "4c03" + "aabbcc", (bytes.fromhex("aabbcc"),)),
        ("6a" + "4d0300" + "aabbcc", (bytes.fromhex("aabbcc"),)),
        ("6a" + "4e03000000" + "aabbcc", (bytes.fromhex("aabbcc"),)),
        ("6a" + "0201ff" + "01ee", (b"\x01\xff", b"\xee")),
        ("6a" + "05aabb", ()),
        ("76a914", ()),
        ("", ()),
    ],
)
def test_parse_null_data_script(script_hex: str, expected) -> None:
    assert parse_null_data_script(bytes.fromhex(script_hex)) == expected


def test_large_pushdata_payload_is_extracted() -> None:
    payload = bytes(range(136))
    script = bytes([0x6A, 0x4C, len(payload)]) + payload

    assert parse_null_data_script(script) == (payload,)


def test_coins_to_sats_is_exact() -> None:
    assert coins_to_sats("0.00000546") == 546
    assert coins_to_sats(1.1) == 110_000_000
    with pytest.raises(ValueError):
        coins_to_sats("abc")


def test_parse_verbose_transaction_reads_tokens_and_pushes() -> None:
    tx = parse_verbose_transaction(
        {
            "txid": "aa" * 32,
            "time": 1_700_000_100,
            "vout": [
                {"n": 0, "value": 0, "scriptPubKey": {"type": "nulldata", "hex": "6a03010203"}},
                {
                    "n": 1,
                    "value": "0.00001",
                    "scriptPubKey": {"type": "scripthash", "addresses": ["bchtest:pcov"]},
                    "tokenData": {
                        "category": "AB" * 32,
                        "amount": "0",
                        "nft": {"capability": "none", "commitment": "BEEF"},
                    },
                },
            ],
        },
        height=10,
        position=3,
    )

    assert tx.timestamp == 1_700_000_100
    assert list(tx.payloads()) == [(0, b"\x01\x02\x03")]
    escrow = tx.output_for_token("ab" * 32)
    assert escrow is not None
    assert escrow.value == 1_000
    assert escrow.address == "bchtest:pcov"
    assert escrow.token.commitment == "beef"
    assert tx.first_nft_output() is escrow


def test_sort_history_orders_and_prefers_confirmed_copies() -> None:
    pending = ChainTransaction(txid="c", height=None, position=None, timestamp=5)
    late = ChainTransaction(txid="b", height=11, position=0, timestamp=9)
    early_second = ChainTransaction(txid="a2", height=10, position=2, timestamp=9)
    early_first = ChainTransaction(txid="a1", height=10, position=1, timestamp=9)
    mempool_copy = ChainTransaction(txid="b", height=None, position=None, timestamp=1)

    ordered = sort_history([pending, mempool_copy, late, early_second, early_first])

    assert [tx.txid for tx in ordered] == ["a1", "a2", "b", "c"]
    assert ordered[2].height == 11


def test_static_scanner_from_document() -> None:
    scanner = StaticChainScanner.from_document(
        {
            "transactions": [
                {
                    "txid": "01" * 32,
                    "height": 5,
                    "position": 1,
                    "time": 100,
                    "vout": [
                        {"n": 0, "valueSat": 546, "scriptPubKey": {"type": "pubkeyhash", "address": INDEX}}
                    ],
                    "raw": "0200",
                },
                {"txid": "02" * 32, "time": 200, "vout": []},
            ],
            "unspent": {"bchtest:pcov": [{"txid": "01" * 32, "vout": 1, "valueSat": 1_000}]},
        }
    )

    assert [tx.txid for tx in scanner.get_history(INDEX)] == ["01" * 32]
    assert scanner.get_raw_transaction("01" * 32) == b"\x02\x00"
    assert scanner.get_unspent_outputs("bchtest:pcov")[0].value == 1_000
    assert scanner.get_unspent_outputs("bchtest:elsewhere") == []
    with pytest.raises(UpstreamUnavailable):
        scanner.get_transaction("ff" * 32)


def test_static_scanner_load_reports_bad_files(tmp_path) -> None:
    bad = tmp_path / "chain.json"
    bad.write_text("[1, 2")

    with pytest.raises(UpstreamUnavailable):
        StaticChainScanner.load(bad)


class StubRPC:
    def __init__(self, fail_scan: bool = False) -> None:
        self.fail_scan = fail_scan
        self.block_calls = 0
        self.pages = []

    def listtransactions(self, label="*", count=1000, skip=0, include_watchonly=True):
        self.pages.append((count, skip))
        entries = [
            {"address": INDEX, "txid": "0a" * 32, "confirmations": 3},
            {"address": INDEX, "txid": "0b" * 32, "confirmations": 2},
            {"address": "bchtest:other", "txid": "0c" * 32, "confirmations": 9},
            {"address": INDEX, "txid": "0a" * 32, "confirmations": 3},
        ]
        return entries[skip : skip + count]

    def getrawtransaction_verbose(self, txid):
        return {"txid": txid, "blockhash": "blk", "blocktime": 500, "vout": []}

    def getblock(self, block_hash, verbosity=1):
        self.block_calls += 1
        return {"height": 42, "tx": ["00" * 32, "0b" * 32, "0a" * 32]}

    def scantxoutset(self, descriptors):
        if self.fail_scan:
            raise RPCError(-8, "Scan already in progress")
        return {
            "success": True,
            "unspents": [
                {"txid": "0a" * 32, "vout": 1, "amount": 0.0001, "tokenData": {"category": "ab" * 32}}
            ],
        }


def test_rpc_scanner_history_pages_filters_and_positions() -> None:
    rpc = StubRPC()
    scanner = RPCChainScanner(rpc, page_size=2)

    history = scanner.get_history(INDEX)

    assert [tx.txid for tx in history] == ["0b" * 32, "0a" * 32]
    assert [(tx.height, tx.position) for tx in history] == [(42, 1), (42, 2)]
    assert rpc.pages == [(2, 0), (2, 2), (2, 4)]
    assert rpc.block_calls == 1


def test_rpc_scanner_honours_min_confirmations() -> None:
    scanner = RPCChainScanner(StubRPC(), min_confirmations=3)

    assert [tx.txid for tx in scanner.get_history(INDEX)] == ["0a" * 32]


def test_rpc_scanner_unspent_outputs() -> None:
    scanner = RPCChainScanner(StubRPC())

    unspent = scanner.get_unspent_outputs("bchtest:pcov")

    assert unspent[0].value == 10_000
    assert unspent[0].address == "bchtest:pcov"
    assert unspent[0].token.category == "ab" * 32


def test_rpc_scanner_wraps_rpc_errors_with_hint() -> None:
    scanner = RPCChainScanner(StubRPC(fail_scan=True))

    with pytest.raises(UpstreamUnavailable) as excinfo:
        scanner.get_unspent_outputs("bchtest:pcov")

    assert "Scan already in progress" in str(excinfo.value)
    assert "Hint:" in str(excinfo.value)


def _null_data_vout(payload: bytes) -> dict:
    script = bytes([0x6A, 0x4C, len(payload)]) + payload
    return {"n": 0, "valueSat": 0, "scriptPubKey": {"type": "nulldata", "hex": script.hex()}}


class MempoolRPC:
    """Wallet whose index history is still entirely unconfirmed."""

    def __init__(self, entries, transactions) -> None:
        self.entries = entries
        self.transactions = transactions

    def listtransactions(self, label="*", count=1000, skip=0, include_watchonly=True):
        return self.entries[skip : skip + count]

    def getrawtransaction_verbose(self, txid):
        return self.transactions[txid]


def test_unconfirmed_history_folds_in_first_seen_order() -> None:
    seller = "11" * 20
    create_txid = "ff" * 32
    sold_txid = "01" * 32
    listing = ListingEvent(
        listing_type="fixed",
        royalty_basis_points=0,
        price=40_000,
        min_bid=0,
        end_time=0,
        min_bid_increment=0,
        seller_pkh=seller,
        creator_pkh=seller,
        token_category="ab" * 32,
    )
    sold = StatusEvent(status="sold", listing_txid=create_txid, actor_pkh=seller)
    rpc = MempoolRPC(
        [
            {"address": INDEX, "txid": create_txid, "confirmations": 0, "time": 1_700_000_000, "timereceived": 1_700_000_000},
            {"address": INDEX, "txid": sold_txid, "confirmations": 0, "time": 1_700_000_060, "timereceived": 1_700_000_060},
        ],
        {
            create_txid: {"txid": create_txid, "vout": [_null_data_vout(listing.encode())]},
            sold_txid: {"txid": sold_txid, "vout": [_null_data_vout(sold.encode())]},
        },
    )

    history = RPCChainScanner(rpc).get_history(INDEX)
    state = fold_transactions(history)
    record = state.listings[create_txid]

    assert [tx.txid for tx in history] == [create_txid, sold_txid]
    assert [tx.timestamp for tx in history] == [1_700_000_000, 1_700_000_060]
    assert record.status == "sold"
    assert record.created_at == 1_700_000_000
    assert not state.anomalies


class MalformedRPC(StubRPC):
    def __init__(self, part: str) -> None:
        super().__init__()
        self.part = part

    def listtransactions(self, label="*", count=1000, skip=0, include_watchonly=True):
        if self.part == "history":
            return [{"address": INDEX, "txid": "0a" * 32, "confirmations": "many"}]
        return super().listtransactions(label, count, skip, include_watchonly)

    def getrawtransaction_verbose(self, txid):
        if self.part == "transaction":
            return {"txid": txid, "blockhash": "blk", "vout": [{"n": 0, "valueSat": "lots"}]}
        return super().getrawtransaction_verbose(txid)

    def getblock(self, block_hash, verbosity=1):
        if self.part == "block":
            return None
        return super().getblock(block_hash, verbosity)

    def scantxoutset(self, descriptors):
        if self.part == "unspent":
            return {"success": True, "unspents": [{"vout": 0, "amount": 0.0001}]}
        return super().scantxoutset(descriptors)


@pytest.mark.parametrize("part", ["history", "transaction", "block"])
def test_malformed_node_history_is_upstream_unavailable(part: str) -> None:
    scanner = RPCChainScanner(MalformedRPC(part))

    with pytest.raises(UpstreamUnavailable):
        scanner.get_history(INDEX)


def test_malformed_unspent_output_is_upstream_unavailable() -> None:
    scanner = RPCChainScanner(MalformedRPC("unspent"))

    with pytest.raises(UpstreamUnavailable):
        scanner.get_unspent_outputs("bchtest:pcov")


class ManyBlocksRPC(StubRPC):
    def getrawtransaction_verbose(self, txid):
        return {"txid": txid, "blockhash": f"blk-{txid}", "blocktime": 500, "vout": []}

    def getblock(self, block_hash, verbosity=1):
        self.block_calls += 1
        return {"height": 7, "tx": [block_hash[4:]], "size": 1_000_000}


def test_block_placements_are_bounded() -> None:
    rpc = ManyBlocksRPC()
    scanner = RPCChainScanner(rpc, block_cache_size=2)

    for txid in ("0a" * 32, "0b" * 32, "0c" * 32, "0a" * 32):
        assert scanner.get_transaction(txid).position == 0

    assert rpc.block_calls == 4
    assert len(scanner._blocks) == 2
    assert scanner.get_transaction("0a" * 32).height == 7
    assert rpc.block_calls == 4
