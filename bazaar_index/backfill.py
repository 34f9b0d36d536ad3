"""Listing events for listings created before the index address existed.

Legacy listings were announced off-chain only. Backfilling rebuilds a v1
listing event for each one so it can be replayed to the listing index
address; the token category and commitment are read back from the NFT output
of the original listing transaction rather than trusted from the input rows.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List

from .chain import ChainScanner
from .events import EventValidationError, ListingEvent, encode_hex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackfillEvent:
    txid: str
    listing_type: str
    token_category: str
    commitment: str
    event_hex: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "txid": self.txid,
            "listingType": self.listing_type,
            "tokenCategory": self.token_category,
            "commitment": self.commitment,
            "eventHex": self.event_hex,
        }


def load_backfill_rows(path: str | Path) -> List[Dict[str, Any]]:
    """Read backfill rows from a JSON list or a ``{"listings": [...]}`` object."""

    document = json.loads(Path(path).read_text())
    if isinstance(document, dict):
        document = document.get("listings", [])
    if not isinstance(document, list):
        raise ValueError(f"{path} must hold a list of listings")
    return [row for row in document if isinstance(row, dict)]


def backfill_listing_events(
    scanner: ChainScanner, rows: Iterable[Dict[str, Any]]
) -> List[BackfillEvent]:
    """Build a v1 listing event for every row whose transaction holds an NFT.

    Rows without a txid, whose transaction has no NFT output, or whose fields
    cannot be encoded are skipped with a warning. Upstream failures propagate.
    """

    results: List[BackfillEvent] = []
    for row in rows:
        txid = str(row.get("txid") or "").lower()
        if not txid:
            continue
        tx = scanner.get_transaction(txid)
        nft = tx.first_nft_output()
        if nft is None or nft.token is None:
            logger.warning("No NFT output found in %s", txid)
            continue

        listing_type = "fixed" if row.get("listingType") == "fixed" else "auction"
        try:
            event = ListingEvent(
                listing_type=listing_type,
                royalty_basis_points=int(row.get("royaltyBasisPoints") or 0),
                price=int(row.get("price") or 0),
                min_bid=int(row.get("minBid") or 0),
                end_time=int(row.get("endTime") or 0),
                min_bid_increment=int(row.get("minBidIncrement") or 0),
                seller_pkh=str(row.get("sellerPkh") or "").lower(),
                creator_pkh=str(row.get("creatorPkh") or "").lower(),
                token_category=nft.token.category,
            )
            event_hex = encode_hex(event)
        except (EventValidationError, TypeError, ValueError) as exc:
            logger.warning("Cannot build listing event for %s: %s", txid, exc)
            continue

        results.append(
            BackfillEvent(
                txid=txid,
                listing_type=listing_type,
                token_category=nft.token.category,
                commitment=nft.token.commitment,
                event_hex=event_hex,
            )
        )
    return results
