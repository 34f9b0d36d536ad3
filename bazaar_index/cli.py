"""Command-line interface for the marketplace indexer.

Every read command rebuilds the requested family from the chain (a node over
JSON-RPC, or a JSON chain fixture with ``--fixture``) and prints either a
compact table or, with ``--json``, the serialized records.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, Sequence

from .backfill import backfill_listing_events, load_backfill_rows
from .chain import ChainScanner, RPCChainScanner, StaticChainScanner, UpstreamUnavailable
from .config import (
    ConfigurationError,
    IndexerConfig,
    load_indexer_config,
    load_rpc_config,
    set_default_config_path,
)
from .events import DecodeError, decode_hex
from .indexer import IndexSnapshot
from .metadata import IPFSMetadataResolver
from .rpc_client import NodeRPCClient, RPCError
from .service import MarketplaceService

logger = logging.getLogger(__name__)

COMPACT_JSON_SEPARATORS = (",", ":")


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid or no answer can be given."""


def _add_source_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--fixture",
        help="Replay a JSON chain fixture instead of querying a node",
    )
    parser.add_argument(
        "--listing-address",
        action="append",
        dest="listing_addresses",
        help="Listing index address (repeatable; overrides config)",
    )
    parser.add_argument(
        "--collection-bid-address",
        action="append",
        dest="collection_bid_addresses",
        help="Collection-bid index address (repeatable; overrides config)",
    )
    parser.add_argument("--pool-registry", help="Path to the pool deployment registry JSON")
    parser.add_argument(
        "--metadata",
        action="store_true",
        help="Resolve listing metadata through the configured IPFS gateway",
    )
    parser.add_argument("--rpc-url", help="Override RPC endpoint URL")
    parser.add_argument("--rpc-host", help="Override RPC host")
    parser.add_argument("--rpc-port", type=int, help="Override RPC port")
    parser.add_argument("--rpc-user", help="Override RPC username")
    parser.add_argument("--rpc-password", help="Override RPC password")
    parser.add_argument("--rpc-wallet", help="Override RPC wallet name")
    https_group = parser.add_mutually_exclusive_group()
    https_group.add_argument(
        "--rpc-use-https",
        dest="rpc_use_https",
        action="store_const",
        const=True,
        help="Force HTTPS when contacting the node",
    )
    https_group.add_argument(
        "--rpc-use-http",
        dest="rpc_use_https",
        action="store_const",
        const=False,
        help="Force HTTP when contacting the node",
    )
    parser.set_defaults(rpc_use_https=None)


def _add_json_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--json",
        action="store_true",
        dest="as_json",
        help="Emit JSON instead of a table",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BCH marketplace indexer")
    parser.add_argument("--config", help="Path to the YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    decode_parser = subparsers.add_parser(
        "decode-event", help="Decode a hex marketplace event payload"
    )
    decode_parser.add_argument("payload", help="Hex payload from a null-data output")
    _add_json_flag(decode_parser)

    listings_parser = subparsers.add_parser("listings", help="List indexed listings and auctions")
    listings_parser.add_argument("--category", help="Only listings of this token category")
    listings_parser.add_argument(
        "--all", action="store_true", dest="include_closed", help="Include closed listings"
    )
    _add_source_arguments(listings_parser)
    _add_json_flag(listings_parser)

    listing_parser = subparsers.add_parser("listing", help="Show one listing by txid")
    listing_parser.add_argument("txid", help="Listing creation transaction id")
    _add_source_arguments(listing_parser)
    _add_json_flag(listing_parser)

    bids_parser = subparsers.add_parser("collection-bids", help="List collection-wide bids")
    bids_parser.add_argument("--category", help="Only bids on this token category")
    bids_parser.add_argument(
        "--all", action="store_true", dest="include_closed", help="Include closed bids"
    )
    _add_source_arguments(bids_parser)
    _add_json_flag(bids_parser)

    pools_parser = subparsers.add_parser("pools", help="List liquidity pools")
    pools_parser.add_argument("--category", help="Only pools for this token category")
    pools_parser.add_argument(
        "--all", action="store_true", dest="include_closed", help="Include empty and withdrawn pools"
    )
    _add_source_arguments(pools_parser)
    _add_json_flag(pools_parser)

    collection_parser = subparsers.add_parser(
        "collection", help="Summarize the market for one token category"
    )
    collection_parser.add_argument("category", help="Token category (hex)")
    _add_source_arguments(collection_parser)
    _add_json_flag(collection_parser)

    backfill_parser = subparsers.add_parser(
        "backfill-events", help="Build listing events for legacy listings"
    )
    backfill_parser.add_argument(
        "--input", required=True, help="JSON list of legacy listing rows"
    )
    backfill_parser.add_argument("--output", help="Write the result here instead of stdout")
    _add_source_arguments(backfill_parser)

    return parser


def _indexer_config_from_args(args: argparse.Namespace) -> IndexerConfig:
    overrides: Dict[str, Any] = {}
    if args.listing_addresses:
        overrides["listing_index_addresses"] = args.listing_addresses
    if args.collection_bid_addresses:
        overrides["collection_bid_index_addresses"] = args.collection_bid_addresses
    if args.pool_registry:
        overrides["pool_registry_path"] = args.pool_registry
    return load_indexer_config(config_path=args.config, overrides=overrides)


def _scanner_from_args(args: argparse.Namespace, config: IndexerConfig) -> ChainScanner:
    if args.fixture:
        return StaticChainScanner.load(args.fixture)
    rpc_config = load_rpc_config(
        config_path=args.config,
        overrides={
            "user": args.rpc_user,
            "password": args.rpc_password,
            "host": args.rpc_host,
            "port": args.rpc_port,
            "use_https": args.rpc_use_https,
            "wallet": args.rpc_wallet,
            "endpoint": args.rpc_url,
        },
    )
    return RPCChainScanner(NodeRPCClient(rpc_config), min_confirmations=config.min_confirmations)


def _service_from_args(args: argparse.Namespace) -> MarketplaceService:
    config = _indexer_config_from_args(args)
    if not config.listing_index_addresses:
        raise CLIError(
            "No listing index address configured; pass --listing-address or set "
            "BAZAAR_LISTING_INDEX_ADDRESSES"
        )
    scanner = _scanner_from_args(args, config)
    resolver = None
    if args.metadata:
        resolver = IPFSMetadataResolver(
            config.ipfs_gateway, timeout=config.metadata_timeout_seconds
        )
    return MarketplaceService.from_config(config, scanner, resolver)


def _require_available(snapshot: IndexSnapshot) -> IndexSnapshot:
    if not snapshot.available:
        raise CLIError(f"{snapshot.family} index unavailable: {'; '.join(snapshot.errors)}")
    if snapshot.degraded:
        for error in snapshot.errors:
            logger.warning("%s index degraded: %s", snapshot.family, error)
    return snapshot


def _print_records(records: Iterable[Any], now: float, as_json: bool, columns: Sequence[str]) -> None:
    rows = [record.to_dict(now) for record in records]
    if as_json:
        print(json.dumps(rows, indent=2))
        return
    if not rows:
        print("No matching records found.")
        return
    print(" | ".join(columns))
    for row in rows:
        print(" | ".join(str(row.get(column, "")) for column in columns))


def cmd_decode_event(args: argparse.Namespace) -> None:
    event = decode_hex(args.payload)
    fields = {"kind": event.kind, **asdict(event)}
    if event.kind == "listing":
        fields["version"] = event.version
    if args.as_json:
        print(json.dumps(fields, separators=COMPACT_JSON_SEPARATORS))
        return
    for name, value in fields.items():
        print(f"{name}: {value}")


def cmd_listings(args: argparse.Namespace) -> None:
    service = _service_from_args(args)
    snapshot = _require_available(service.listings.snapshot())
    if args.category:
        records = service.listings.listings_for_category(
            args.category, active_only=not args.include_closed
        )
    else:
        records = [
            record
            for record in snapshot.records.values()
            if record.is_active or args.include_closed
        ]
    _print_records(
        records,
        service.listings.wall_clock(),
        args.as_json,
        ("txid", "listingType", "status", "price", "currentBid", "tokenCategory"),
    )


def cmd_listing(args: argparse.Namespace) -> None:
    service = _service_from_args(args)
    snapshot = _require_available(service.listings.snapshot())
    record = snapshot.get(args.txid.lower())
    if record is None:
        raise CLIError(f"Listing {args.txid} not found")
    payload = record.to_dict(service.listings.wall_clock())
    if args.as_json:
        print(json.dumps(payload, indent=2))
        return
    for name, value in payload.items():
        if name == "bidHistory":
            print(f"bidHistory: {len(value)} bids")
            for bid in value:
                print(f"  {bid['amount']} from {bid['bidderPkh']} in {bid['txid']}")
            continue
        print(f"{name}: {value}")


def cmd_collection_bids(args: argparse.Namespace) -> None:
    service = _service_from_args(args)
    if service.collection_bids is None:
        raise CLIError("No collection-bid index address configured")
    snapshot = _require_available(service.collection_bids.snapshot())
    if args.category:
        records = service.collection_bids.bids_for_category(
            args.category, active_only=not args.include_closed
        )
    else:
        records = [
            record
            for record in snapshot.records.values()
            if record.is_active or args.include_closed
        ]
    _print_records(
        records,
        service.collection_bids.wall_clock(),
        args.as_json,
        ("txid", "status", "price", "tokenCategory", "bidderPkh"),
    )


def cmd_pools(args: argparse.Namespace) -> None:
    service = _service_from_args(args)
    if service.pools is None:
        raise CLIError("No pool registry configured; pass --pool-registry")
    snapshot = _require_available(service.pools.snapshot())
    if args.category:
        records = service.pools.pools_for_category(
            args.category, active_only=not args.include_closed
        )
    else:
        records = [
            record
            for record in snapshot.records.values()
            if record.is_active or args.include_closed
        ]
    _print_records(
        records,
        service.pools.wall_clock(),
        args.as_json,
        ("txid", "status", "price", "availableSats", "tokenCategory"),
    )


def cmd_collection(args: argparse.Namespace) -> None:
    service = _service_from_args(args)
    for snapshot in service.refresh_all().values():
        _require_available(snapshot)
    summary = service.collection_summary(args.category)
    if args.as_json:
        print(json.dumps(summary, indent=2))
        return
    for name, value in summary.items():
        print(f"{name}: {value if value is not None else '-'}")


def cmd_backfill_events(args: argparse.Namespace) -> None:
    config = _indexer_config_from_args(args)
    scanner = _scanner_from_args(args, config)
    rows = load_backfill_rows(args.input)
    events = backfill_listing_events(scanner, rows)
    index_address = config.listing_index_addresses[0] if config.listing_index_addresses else None
    output = {"indexAddress": index_address, "events": [event.to_dict() for event in events]}
    rendered = json.dumps(output, indent=2)
    if args.output:
        Path(args.output).write_text(rendered + "\n")
        logger.info("Wrote %d events to %s", len(events), args.output)
        return
    print(rendered)


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if args.config:
        set_default_config_path(args.config)
    try:
        if args.command == "decode-event":
            cmd_decode_event(args)
        elif args.command == "listings":
            cmd_listings(args)
        elif args.command == "listing":
            cmd_listing(args)
        elif args.command == "collection-bids":
            cmd_collection_bids(args)
        elif args.command == "pools":
            cmd_pools(args)
        elif args.command == "collection":
            cmd_collection(args)
        elif args.command == "backfill-events":
            cmd_backfill_events(args)
        else:  # pragma: no cover - argparse enforces choices
            raise CLIError(f"Unknown command: {args.command}")
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
    except (
        CLIError,
        ConfigurationError,
        DecodeError,
        RPCError,
        UpstreamUnavailable,
        OSError,
        ValueError,
    ) as exc:
        parser.exit(1, f"error: {exc}\n")


if __name__ == "__main__":
    main()
