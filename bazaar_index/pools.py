"""Liquidity pool reconstruction.

Pools have no event kind of their own. Their create records come from the
deployment registry written when a pool covenant is funded, and their
balance is read from the live unspent outputs of the pool address, because
every sale into a pool drains it as a side effect of a spend.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .chain import ChainScanner, UnspentOutput, UpstreamUnavailable
from .indexer import FamilyIndexer, IndexSnapshot
from .state import FoldAnomaly

logger = logging.getLogger(__name__)

POOL_ACTIVE = "active"
POOL_EMPTY = "empty"
POOL_WITHDRAWN = "withdrawn"
POOL_STATUSES = frozenset({POOL_ACTIVE, POOL_EMPTY, POOL_WITHDRAWN})

BALANCE_LIVE = "live"
BALANCE_REGISTRY = "registry"


class PoolRegistryError(ValueError):
    """Raised when a registry entry is missing required fields."""


def _entry_int(entry: Dict[str, Any], key: str, txid: str, *, default: Optional[int]) -> Optional[int]:
    raw = entry.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise PoolRegistryError(f"pool {txid} has an invalid {key}: {raw!r}") from exc


@dataclass
class PoolRecord:
    txid: str
    token_category: str
    pool_salt: str
    price: int
    operator_pkh: str
    creator_pkh: str
    royalty_basis_points: int
    contract_address: str
    available_sats: int
    status: str = POOL_ACTIVE
    created_at: int = 0
    created_height: Optional[int] = None
    updated_at: int = 0
    balance_source: str = BALANCE_REGISTRY

    @classmethod
    def from_registry_entry(cls, entry: Dict[str, Any]) -> "PoolRecord":
        try:
            txid = str(entry["txid"]).lower()
            contract_address = str(entry["contractAddress"])
            token_category = str(entry["tokenCategory"]).lower()
            price = int(entry["price"])
        except KeyError as exc:
            raise PoolRegistryError(f"pool entry is missing {exc.args[0]}") from exc
        except (TypeError, ValueError) as exc:
            raise PoolRegistryError(f"pool entry has an invalid price: {entry.get('price')!r}") from exc

        status = str(entry.get("status") or POOL_ACTIVE)
        if status not in POOL_STATUSES:
            raise PoolRegistryError(f"pool {txid} has unknown status {status!r}")
        created_at = _entry_int(entry, "createdAt", txid, default=0)
        return cls(
            txid=txid,
            token_category=token_category,
            pool_salt=str(entry.get("poolSalt") or "").lower(),
            price=price,
            operator_pkh=str(entry.get("operatorPkh") or ""),
            creator_pkh=str(entry.get("creatorPkh") or ""),
            royalty_basis_points=_entry_int(entry, "royaltyBasisPoints", txid, default=0),
            contract_address=contract_address,
            available_sats=_entry_int(entry, "availableSats", txid, default=0),
            status=status,
            created_at=created_at,
            created_height=_entry_int(entry, "createdHeight", txid, default=None),
            updated_at=_entry_int(entry, "updatedAt", txid, default=created_at),
        )

    @property
    def is_active(self) -> bool:
        return self.status == POOL_ACTIVE

    def sync_balance(self, unspent: Iterable[UnspentOutput]) -> None:
        """Take ``available_sats`` from the token-free outputs at the pool address."""

        self.available_sats = sum(utxo.value for utxo in unspent if utxo.token is None)
        self.balance_source = BALANCE_LIVE
        if self.status == POOL_WITHDRAWN:
            return
        self.status = POOL_ACTIVE if self.price > 0 and self.available_sats >= self.price else POOL_EMPTY

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "tokenCategory": self.token_category,
            "poolSalt": self.pool_salt,
            "price": str(self.price),
            "operatorPkh": self.operator_pkh,
            "creatorPkh": self.creator_pkh,
            "royaltyBasisPoints": self.royalty_basis_points,
            "contractAddress": self.contract_address,
            "availableSats": str(self.available_sats),
            "status": self.status,
            "balanceSource": self.balance_source,
            "createdAt": self.created_at,
            "createdHeight": self.created_height,
            "updatedAt": self.updated_at,
        }


class PoolRegistry:
    """Deployment records for pool covenants, from a JSON file or in memory.

    The file holds either a JSON list of entries or ``{"pools": [...]}``;
    entries use the same camelCase keys the records serialize to.
    """

    def __init__(
        self, path: str | Path | None = None, entries: Optional[List[Dict[str, Any]]] = None
    ) -> None:
        self.path = Path(path) if path is not None else None
        self._entries = list(entries or [])

    def entries(self) -> List[Dict[str, Any]]:
        if self.path is None:
            return list(self._entries)
        if not self.path.exists():
            logger.info("Pool registry %s does not exist yet", self.path)
            return []
        try:
            document = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            raise UpstreamUnavailable(f"Could not read pool registry {self.path}: {exc}") from exc
        if isinstance(document, dict):
            document = document.get("pools", [])
        if not isinstance(document, list):
            raise UpstreamUnavailable(f"Pool registry {self.path} must hold a list of pools")
        return [entry for entry in document if isinstance(entry, dict)]


def _deployment_order(record: PoolRecord) -> tuple:
    return (
        record.created_height is None,
        record.created_height or 0,
        record.created_at,
        record.txid,
    )


class PoolReconstructor(FamilyIndexer):
    """Pool table rebuilt from the registry and synchronized to live balances."""

    family = "pools"

    def __init__(self, scanner: ChainScanner, registry: PoolRegistry, **kwargs: Any) -> None:
        super().__init__(scanner, **kwargs)
        self.registry = registry

    def build(self) -> IndexSnapshot:
        anomalies: List[FoldAnomaly] = []
        candidates: List[PoolRecord] = []
        for entry in self.registry.entries():
            try:
                candidates.append(PoolRecord.from_registry_entry(entry))
            except PoolRegistryError as exc:
                logger.warning("Skipping pool registry entry: %s", exc)
                anomalies.append(
                    FoldAnomaly("invalid_deployment", str(entry.get("txid", "")), "", str(exc))
                )

        pools: Dict[str, PoolRecord] = {}
        for record in sorted(candidates, key=_deployment_order):
            if record.txid in pools:
                logger.warning("Duplicate pool deployment %s ignored", record.txid)
                anomalies.append(FoldAnomaly("duplicate", record.txid, record.txid, "pool"))
                continue
            pools[record.txid] = record

        now = self.wall_clock()
        errors: List[str] = []
        for record in pools.values():
            try:
                unspent = self.scanner.get_unspent_outputs(record.contract_address)
            except UpstreamUnavailable as exc:
                logger.warning("Keeping registry balance for pool %s: %s", record.txid, exc)
                errors.append(str(exc))
                continue
            record.sync_balance(unspent)

        return IndexSnapshot(
            family=self.family,
            records=pools,
            anomalies=anomalies,
            built_at=now,
            transactions_scanned=0,
            degraded=bool(errors),
            errors=errors,
        )

    def pools_for_category(self, token_category: str, *, active_only: bool = True) -> List[PoolRecord]:
        category = token_category.lower()
        pools = [
            pool
            for pool in self.snapshot().records.values()
            if pool.token_category == category and (pool.is_active or not active_only)
        ]
        return sorted(pools, key=lambda pool: pool.price, reverse=True)
