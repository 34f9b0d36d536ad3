"""Chain scanner interface and its node-backed and fixture-backed implementations.

The indexer only needs three read paths from the chain: the ordered history of
an index address, the outputs of a single transaction, and the live unspent
outputs of a covenant address. Everything returned here is already
normalized into small dataclasses so the fold never touches node JSON.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .rpc_client import NodeRPCClient, RPCError, RPCTransportError, format_rpc_hint

logger = logging.getLogger(__name__)

SATS_PER_COIN = Decimal(100_000_000)

OP_RETURN = 0x6A
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E


class UpstreamUnavailable(RuntimeError):
    """Raised when the chain scanner or metadata source cannot answer."""


@dataclass(frozen=True)
class TokenData:
    """Token attached to an output: category plus optional NFT commitment."""

    category: str
    commitment: str = ""
    amount: int = 0
    capability: Optional[str] = None


@dataclass
class ChainOutput:
    n: int
    value: int
    address: Optional[str] = None
    script_type: Optional[str] = None
    data_pushes: Tuple[bytes, ...] = ()
    token: Optional[TokenData] = None

    @property
    def is_null_data(self) -> bool:
        return self.script_type == "nulldata"


@dataclass
class ChainTransaction:
    """A transaction positioned in chain order.

    ``height`` and ``position`` are ``None`` for unconfirmed transactions,
    which sort after every confirmed one.
    """

    txid: str
    height: Optional[int]
    position: Optional[int]
    timestamp: int
    outputs: List[ChainOutput] = field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.height is not None

    def sort_key(self) -> tuple:
        if self.height is None:
            return (1, self.timestamp, self.txid)
        return (0, self.height, self.position if self.position is not None else 0, self.txid)

    def payloads(self) -> Iterator[Tuple[int, bytes]]:
        """Yield ``(vout, data)`` for every push of every null-data output."""

        for output in self.outputs:
            if not output.is_null_data:
                continue
            for push in output.data_pushes:
                yield output.n, push

    def output_for_token(self, category: str) -> Optional[ChainOutput]:
        for output in self.outputs:
            if output.token is not None and output.token.category == category:
                return output
        return None

    def first_nft_output(self) -> Optional[ChainOutput]:
        for output in self.outputs:
            if output.token is not None and output.token.capability is not None:
                return output
        return None

    def first_script_hash_output(self) -> Optional[ChainOutput]:
        for output in self.outputs:
            if output.script_type == "scripthash" and output.token is None:
                return output
        return None

    def pays_to(self, address: str) -> bool:
        return any(output.address == address for output in self.outputs)


@dataclass(frozen=True)
class UnspentOutput:
    txid: str
    vout: int
    value: int
    address: Optional[str] = None
    token: Optional[TokenData] = None


def sort_history(transactions: Iterable[ChainTransaction]) -> List[ChainTransaction]:
    """Return transactions de-duplicated by txid in canonical chain order."""

    unique: Dict[str, ChainTransaction] = {}
    for tx in transactions:
        existing = unique.get(tx.txid)
        # A confirmed sighting beats an unconfirmed one of the same txid.
        if existing is None or (existing.height is None and tx.height is not None):
            unique[tx.txid] = tx
    return sorted(unique.values(), key=lambda tx: tx.sort_key())


def coins_to_sats(value: Any) -> int:
    try:
        return int((Decimal(str(value)) * SATS_PER_COIN).to_integral_value())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid coin amount: {value!r}") from exc


def parse_null_data_script(script: bytes) -> Tuple[bytes, ...]:
    """Return the data pushes that follow ``OP_RETURN`` in ``script``.

    Parsing stops quietly at the first non-push opcode or truncated push; the
    pushes read so far are still returned.
    """

    if not script or script[0] != OP_RETURN:
        return ()
    pushes: List[bytes] = []
    cursor = 1
    while cursor < len(script):
        opcode = script[cursor]
        cursor += 1
        if opcode == 0:
            pushes.append(b"")
            continue
        if opcode < OP_PUSHDATA1:
            size = opcode
        elif opcode == OP_PUSHDATA1:
            if cursor + 1 > len(script):
                break
            size = script[cursor]
            cursor += 1
        elif opcode == OP_PUSHDATA2:
            if cursor + 2 > len(script):
                break
            size = int.from_bytes(script[cursor : cursor + 2], "little")
            cursor += 2
        elif opcode == OP_PUSHDATA4:
            if cursor + 4 > len(script):
                break
            size = int.from_bytes(script[cursor : cursor + 4], "little")
            cursor += 4
        else:
            break
        if cursor + size > len(script):
            break
        pushes.append(script[cursor : cursor + size])
        cursor += size
    return tuple(pushes)


def parse_token_data(raw: Any) -> Optional[TokenData]:
    if not isinstance(raw, dict) or not raw.get("category"):
        return None
    nft = raw.get("nft") or {}
    try:
        amount = int(raw.get("amount") or 0)
    except (TypeError, ValueError):
        amount = 0
    return TokenData(
        category=str(raw["category"]).lower(),
        commitment=str(nft.get("commitment") or "").lower(),
        amount=amount,
        capability=nft.get("capability") if nft else None,
    )


def _script_address(script_pub_key: Dict[str, Any]) -> Optional[str]:
    address = script_pub_key.get("address")
    if address:
        return str(address)
    addresses = script_pub_key.get("addresses") or []
    return str(addresses[0]) if addresses else None


def _output_value(entry: Dict[str, Any], coin_key: str) -> int:
    if "valueSat" in entry:
        return int(entry["valueSat"])
    return coins_to_sats(entry.get(coin_key, 0))


def parse_output(vout: Dict[str, Any]) -> ChainOutput:
    script_pub_key = vout.get("scriptPubKey") or {}
    script_type = script_pub_key.get("type")
    pushes: Tuple[bytes, ...] = ()
    if script_type == "nulldata":
        try:
            pushes = parse_null_data_script(bytes.fromhex(script_pub_key.get("hex") or ""))
        except ValueError:
            logger.debug("Malformed null-data script in output %s", vout.get("n"))
    return ChainOutput(
        n=int(vout.get("n", 0)),
        value=_output_value(vout, "value"),
        address=_script_address(script_pub_key),
        script_type=script_type,
        data_pushes=pushes,
        token=parse_token_data(vout.get("tokenData")),
    )


def parse_verbose_transaction(
    tx_json: Dict[str, Any],
    *,
    height: Optional[int] = None,
    position: Optional[int] = None,
    timestamp: Optional[int] = None,
) -> ChainTransaction:
    txid = tx_json.get("txid") or tx_json.get("hash")
    if not txid:
        raise ValueError("transaction JSON carries no txid")
    if timestamp is None:
        timestamp = int(tx_json.get("blocktime") or tx_json.get("time") or 0)
    return ChainTransaction(
        txid=str(txid),
        height=height,
        position=position,
        timestamp=int(timestamp),
        outputs=[parse_output(vout) for vout in tx_json.get("vout", []) or []],
    )


@dataclass(frozen=True)
class BlockPlacement:
    """Height of a block and the position of each of its transactions."""

    height: Optional[int]
    positions: Dict[str, int]

    @classmethod
    def from_block(cls, block: Dict[str, Any]) -> "BlockPlacement":
        height = block.get("height")
        positions: Dict[str, int] = {}
        for index, entry in enumerate(block.get("tx", []) or []):
            txid = entry if isinstance(entry, str) else entry.get("txid")
            if txid:
                positions.setdefault(str(txid), index)
        return cls(height=int(height) if height is not None else None, positions=positions)


def parse_unspent(entry: Dict[str, Any], address: Optional[str] = None) -> UnspentOutput:
    return UnspentOutput(
        txid=str(entry["txid"]),
        vout=int(entry["vout"]),
        value=_output_value(entry, "amount"),
        address=entry.get("address") or address,
        token=parse_token_data(entry.get("tokenData")),
    )


class ChainScanner:
    """Interface for the chain data the indexer consumes."""

    def get_history(self, address: str) -> List[ChainTransaction]:
        raise NotImplementedError

    def get_transaction(self, txid: str) -> ChainTransaction:
        raise NotImplementedError

    def get_raw_transaction(self, txid: str) -> bytes:
        raise NotImplementedError

    def get_unspent_outputs(self, address: str) -> List[UnspentOutput]:
        raise NotImplementedError


class RPCChainScanner(ChainScanner):
    """Chain scanner over a node's JSON-RPC interface.

    Address history comes from ``listtransactions`` on a wallet that watches
    the index addresses (nodes keep no general address index), transaction
    placement from the containing block, and unspent outputs from
    ``scantxoutset``. The placement of the most recently used blocks is
    memoized per scanner instance.

    Unconfirmed transactions carry no block time, so they are stamped with
    the time the wallet first saw them (``timereceived`` from
    ``listtransactions``). That keeps mempool events in arrival order.

    Node responses that cannot be parsed are reported as
    :class:`UpstreamUnavailable`, like failed calls.
    """

    def __init__(
        self,
        rpc: NodeRPCClient,
        *,
        min_confirmations: int = 0,
        page_size: int = 1000,
        block_cache_size: int = 256,
    ) -> None:
        self.rpc = rpc
        self.min_confirmations = min_confirmations
        self.page_size = page_size
        self.block_cache_size = block_cache_size
        self._blocks: "OrderedDict[str, BlockPlacement]" = OrderedDict()

    def _call(self, action: str, method, *args: Any) -> Any:
        try:
            return method(*args)
        except RPCError as exc:
            hint = format_rpc_hint(exc)
            message = f"{action} failed: {exc}"
            if hint:
                message = f"{message}\nHint: {hint}"
            raise UpstreamUnavailable(message) from exc
        except RPCTransportError as exc:
            raise UpstreamUnavailable(f"{action} failed: {exc}") from exc

    def _history_entries(self, address: str) -> Dict[str, Optional[int]]:
        """Return ``{txid: first-seen time}`` in wallet order for ``address``."""

        first_seen: Dict[str, Optional[int]] = {}
        skip = 0
        while True:
            page = self._call(
                f"listtransactions for {address}",
                self.rpc.listtransactions,
                "*",
                self.page_size,
                skip,
                True,
            ) or []
            if not isinstance(page, list):
                raise UpstreamUnavailable(f"listtransactions for {address} returned {type(page).__name__}")
            for entry in page:
                if not isinstance(entry, dict) or entry.get("address") != address:
                    continue
                try:
                    confirmations = int(entry.get("confirmations", 0) or 0)
                    received = entry.get("timereceived") or entry.get("time")
                    received = int(received) if received is not None else None
                except (TypeError, ValueError) as exc:
                    raise UpstreamUnavailable(
                        f"listtransactions for {address} returned a malformed entry: {exc}"
                    ) from exc
                if confirmations < self.min_confirmations:
                    continue
                txid = entry.get("txid")
                if txid and str(txid) not in first_seen:
                    first_seen[str(txid)] = received
            if len(page) < self.page_size:
                return first_seen
            skip += self.page_size

    def _block(self, block_hash: str) -> BlockPlacement:
        placement = self._blocks.get(block_hash)
        if placement is not None:
            self._blocks.move_to_end(block_hash)
            return placement
        block = self._call(f"getblock {block_hash}", self.rpc.getblock, block_hash, 1)
        if not isinstance(block, dict):
            raise UpstreamUnavailable(f"getblock {block_hash} returned no block")
        try:
            placement = BlockPlacement.from_block(block)
        except (AttributeError, TypeError, ValueError) as exc:
            raise UpstreamUnavailable(f"getblock {block_hash} returned a malformed block: {exc}") from exc
        self._blocks[block_hash] = placement
        while len(self._blocks) > self.block_cache_size:
            self._blocks.popitem(last=False)
        return placement

    def get_history(self, address: str) -> List[ChainTransaction]:
        history = [
            self._transaction(txid, first_seen)
            for txid, first_seen in self._history_entries(address).items()
        ]
        return sort_history(history)

    def get_transaction(self, txid: str) -> ChainTransaction:
        return self._transaction(txid)

    def _transaction(self, txid: str, first_seen: Optional[int] = None) -> ChainTransaction:
        tx_json = self._call(f"getrawtransaction {txid}", self.rpc.getrawtransaction_verbose, txid)
        if not isinstance(tx_json, dict):
            raise UpstreamUnavailable(f"getrawtransaction {txid} returned no transaction")
        height = position = None
        timestamp = None
        block_hash = tx_json.get("blockhash")
        if block_hash:
            placement = self._block(str(block_hash))
            height = placement.height
            position = placement.positions.get(txid)
        elif not (tx_json.get("time") or tx_json.get("blocktime")):
            timestamp = first_seen
        try:
            return parse_verbose_transaction(
                tx_json, height=height, position=position, timestamp=timestamp
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise UpstreamUnavailable(f"getrawtransaction {txid} returned a malformed transaction: {exc}") from exc

    def get_raw_transaction(self, txid: str) -> bytes:
        raw_hex = self._call(f"getrawtransaction {txid}", self.rpc.getrawtransaction, txid, False)
        try:
            return bytes.fromhex(raw_hex)
        except (TypeError, ValueError) as exc:
            raise UpstreamUnavailable(f"node returned malformed raw transaction for {txid}") from exc

    def get_unspent_outputs(self, address: str) -> List[UnspentOutput]:
        result = self._call(
            f"scantxoutset for {address}", self.rpc.scantxoutset, [f"addr({address})"]
        )
        if not isinstance(result, dict) or result.get("success") is False:
            raise UpstreamUnavailable(f"scantxoutset for {address} did not complete")
        try:
            return [parse_unspent(entry, address) for entry in result.get("unspents", []) or []]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise UpstreamUnavailable(f"scantxoutset for {address} returned a malformed output: {exc}") from exc


class StaticChainScanner(ChainScanner):
    """Chain scanner over an in-memory chain snapshot.

    The document shape is::

        {
          "transactions": [
            {"txid": "...", "height": 10, "position": 1, "time": 1700000000,
             "vout": [{"n": 0, "valueSat": 0,
                       "scriptPubKey": {"type": "nulldata", "hex": "6a4c68..."}}],
             "raw": "0200..."}
          ],
          "unspent": {"<address>": [{"txid": "...", "vout": 0, "valueSat": 1000,
                                      "tokenData": {...}}]}
        }

    An address's history is every transaction with an output paying to it.
    Used for offline replay from the CLI and in tests.
    """

    def __init__(
        self,
        transactions: Iterable[ChainTransaction] = (),
        unspent: Optional[Dict[str, List[UnspentOutput]]] = None,
        raw: Optional[Dict[str, bytes]] = None,
    ) -> None:
        self.transactions: Dict[str, ChainTransaction] = {tx.txid: tx for tx in transactions}
        self.unspent: Dict[str, List[UnspentOutput]] = dict(unspent or {})
        self.raw: Dict[str, bytes] = dict(raw or {})

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "StaticChainScanner":
        transactions = []
        raw: Dict[str, bytes] = {}
        for tx_json in document.get("transactions", []) or []:
            tx = parse_verbose_transaction(
                tx_json,
                height=tx_json.get("height"),
                position=tx_json.get("position"),
            )
            transactions.append(tx)
            if tx_json.get("raw"):
                raw[tx.txid] = bytes.fromhex(tx_json["raw"])
        unspent = {
            address: [parse_unspent(entry, address) for entry in entries or []]
            for address, entries in (document.get("unspent") or {}).items()
        }
        return cls(transactions, unspent, raw)

    @classmethod
    def load(cls, path: str | Path) -> "StaticChainScanner":
        try:
            document = json.loads(Path(path).read_text())
        except (OSError, ValueError) as exc:
            raise UpstreamUnavailable(f"Could not read chain fixture {path}: {exc}") from exc
        if not isinstance(document, dict):
            raise UpstreamUnavailable(f"Chain fixture {path} must contain a JSON object")
        return cls.from_document(document)

    def get_history(self, address: str) -> List[ChainTransaction]:
        return sort_history(tx for tx in self.transactions.values() if tx.pays_to(address))

    def get_transaction(self, txid: str) -> ChainTransaction:
        try:
            return self.transactions[txid]
        except KeyError:
            raise UpstreamUnavailable(f"transaction {txid} is not in the fixture") from None

    def get_raw_transaction(self, txid: str) -> bytes:
        try:
            return self.raw[txid]
        except KeyError:
            raise UpstreamUnavailable(f"raw transaction {txid} is not in the fixture") from None

    def get_unspent_outputs(self, address: str) -> List[UnspentOutput]:
        return list(self.unspent.get(address, []))
