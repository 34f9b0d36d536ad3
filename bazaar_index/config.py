"""Shared configuration loader for the marketplace indexer."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping
from urllib.parse import urlparse

import yaml


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".bazaar-index.yaml"
DEFAULT_RPC_PORT = 8332
DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_IPFS_GATEWAY = "https://gateway.pinata.cloud"
_CONFIG_PATH_OVERRIDE: Path | None = None


@dataclass
class RPCConfig:
    """Connection details for the node backing the chain scanner."""

    user: str
    password: str
    host: str = "127.0.0.1"
    port: int = DEFAULT_RPC_PORT
    use_https: bool = False
    wallet: str | None = None

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass
class IndexerConfig:
    """Which addresses to replay and how long folded state stays fresh."""

    listing_index_addresses: List[str] = field(default_factory=list)
    collection_bid_index_addresses: List[str] = field(default_factory=list)
    pool_registry_path: Path | None = None
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    ipfs_gateway: str = DEFAULT_IPFS_GATEWAY
    metadata_timeout_seconds: float = 10.0
    min_confirmations: int = 0


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _resolve_path(config_path: str | Path | None) -> tuple[Path, bool]:
    explicit_path = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    path = (
        Path(config_path).expanduser()
        if config_path is not None
        else _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH
    )
    return path, explicit_path


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _section(file_config: dict[str, Any], name: str, path: Path) -> dict[str, Any]:
    section = file_config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Expected '{name}' to be a mapping in {path}")
    return section


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    return None


def _coerce_port(raw: Any, *, source: str) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid port in {source}: {raw}") from exc


def _coerce_number(raw: Any, *, name: str, source: str) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {name} in {source}: {raw}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} in {source} must not be negative")
    return value


def _coerce_count(raw: Any, *, name: str, source: str) -> int | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool) or isinstance(raw, float):
        raise ConfigurationError(f"{name} in {source} must be a whole number: {raw}")
    try:
        value = int(str(raw).strip())
    except ValueError as exc:
        raise ConfigurationError(f"Invalid {name} in {source}: {raw}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} in {source} must not be negative")
    return value


def _coerce_address_list(raw: Any, *, source: str) -> List[str] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return [piece.strip() for piece in raw.split(",") if piece.strip()]
    if isinstance(raw, (list, tuple)):
        return [str(piece).strip() for piece in raw if str(piece).strip()]
    raise ConfigurationError(f"Expected a list of addresses in {source}")


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _parse_endpoint(raw: str | None) -> tuple[str | None, int | None, bool | None]:
    if not raw:
        return None, None, None
    parsed = urlparse(raw)
    if not parsed.scheme and not parsed.hostname:
        raise ConfigurationError(f"Invalid RPC endpoint URL: {raw}")
    host = parsed.hostname or None
    port = parsed.port
    use_https = parsed.scheme.lower() == "https" if parsed.scheme else None
    return host, port, use_https


def load_rpc_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RPCConfig:
    """Load RPC configuration from environment variables and optional YAML."""

    env_map = os.environ if env is None else env
    path, explicit_path = _resolve_path(config_path)
    file_config = _load_config_file(path, required=explicit_path)
    rpc_section = _section(file_config, "rpc", path)
    override_map = dict(overrides or {})

    env_port = _coerce_port(env_map.get("BAZAAR_RPC_PORT"), source="environment")
    endpoint_host, endpoint_port, endpoint_use_https = _parse_endpoint(
        _first_value(
            override_map.get("endpoint"),
            env_map.get("BAZAAR_RPC_ENDPOINT") or env_map.get("BAZAAR_RPC_URL"),
            rpc_section.get("endpoint"),
        )
    )

    resolved_user = _first_value(
        override_map.get("user"), env_map.get("BAZAAR_RPC_USER"), rpc_section.get("user")
    )
    resolved_password = _first_value(
        override_map.get("password"),
        env_map.get("BAZAAR_RPC_PASSWORD"),
        rpc_section.get("password"),
    )
    if not resolved_user or not resolved_password:
        raise ConfigurationError(
            "RPC credentials must be provided via BAZAAR_RPC_* environment variables or a config file"
        )

    resolved_host = _first_value(
        override_map.get("host"),
        endpoint_host,
        env_map.get("BAZAAR_RPC_HOST"),
        rpc_section.get("host"),
        "127.0.0.1",
    )
    resolved_port = _first_value(
        _coerce_port(override_map.get("port"), source="overrides"),
        endpoint_port,
        env_port,
        _coerce_port(rpc_section.get("port"), source=f"{path} rpc.port"),
        DEFAULT_RPC_PORT,
    )
    resolved_use_https = _first_value(
        _coerce_bool(override_map.get("use_https")),
        endpoint_use_https,
        _coerce_bool(env_map.get("BAZAAR_RPC_USE_HTTPS")),
        _coerce_bool(rpc_section.get("use_https")),
        False,
    )
    resolved_wallet = _first_value(
        override_map.get("wallet"), env_map.get("BAZAAR_RPC_WALLET"), rpc_section.get("wallet")
    )

    return RPCConfig(
        user=resolved_user,
        password=resolved_password,
        host=resolved_host,
        port=resolved_port,
        use_https=bool(resolved_use_https),
        wallet=resolved_wallet,
    )


def load_indexer_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> IndexerConfig:
    """Load index addresses, cache TTL and metadata settings.

    Precedence matches :func:`load_rpc_config`: explicit overrides, then
    ``BAZAAR_*`` environment variables, then the ``indexer`` section of the
    YAML file, then defaults. Address lists may be given as YAML lists or as
    comma-separated strings.
    """

    env_map = os.environ if env is None else env
    path, explicit_path = _resolve_path(config_path)
    file_config = _load_config_file(path, required=explicit_path)
    section = _section(file_config, "indexer", path)
    override_map = dict(overrides or {})
    file_source = f"{path} indexer"

    listing_addresses = _first_value(
        _coerce_address_list(override_map.get("listing_index_addresses"), source="overrides"),
        _coerce_address_list(env_map.get("BAZAAR_LISTING_INDEX_ADDRESSES"), source="environment"),
        _coerce_address_list(section.get("listing_index_addresses"), source=file_source),
        default=[],
    )
    collection_bid_addresses = _first_value(
        _coerce_address_list(
            override_map.get("collection_bid_index_addresses"), source="overrides"
        ),
        _coerce_address_list(
            env_map.get("BAZAAR_COLLECTION_BID_INDEX_ADDRESSES"), source="environment"
        ),
        _coerce_address_list(section.get("collection_bid_index_addresses"), source=file_source),
        default=[],
    )
    registry_raw = _first_value(
        override_map.get("pool_registry_path"),
        env_map.get("BAZAAR_POOL_REGISTRY"),
        section.get("pool_registry_path"),
    )
    ttl = _first_value(
        _coerce_number(override_map.get("cache_ttl_seconds"), name="cache_ttl_seconds", source="overrides"),
        _coerce_number(env_map.get("BAZAAR_CACHE_TTL_SECONDS"), name="cache_ttl_seconds", source="environment"),
        _coerce_number(section.get("cache_ttl_seconds"), name="cache_ttl_seconds", source=file_source),
        DEFAULT_CACHE_TTL_SECONDS,
    )
    metadata_timeout = _first_value(
        _coerce_number(
            override_map.get("metadata_timeout_seconds"),
            name="metadata_timeout_seconds",
            source="overrides",
        ),
        _coerce_number(
            env_map.get("BAZAAR_METADATA_TIMEOUT_SECONDS"),
            name="metadata_timeout_seconds",
            source="environment",
        ),
        _coerce_number(
            section.get("metadata_timeout_seconds"),
            name="metadata_timeout_seconds",
            source=file_source,
        ),
        10.0,
    )
    min_confirmations = _first_value(
        _coerce_count(override_map.get("min_confirmations"), name="min_confirmations", source="overrides"),
        _coerce_count(env_map.get("BAZAAR_MIN_CONFIRMATIONS"), name="min_confirmations", source="environment"),
        _coerce_count(section.get("min_confirmations"), name="min_confirmations", source=file_source),
        0,
    )
    gateway = _first_value(
        override_map.get("ipfs_gateway"),
        env_map.get("BAZAAR_IPFS_GATEWAY"),
        section.get("ipfs_gateway"),
        DEFAULT_IPFS_GATEWAY,
    )

    return IndexerConfig(
        listing_index_addresses=list(listing_addresses),
        collection_bid_index_addresses=list(collection_bid_addresses),
        pool_registry_path=Path(registry_raw).expanduser() if registry_raw else None,
        cache_ttl_seconds=float(ttl),
        ipfs_gateway=str(gateway).rstrip("/"),
        metadata_timeout_seconds=float(metadata_timeout),
        min_confirmations=int(min_confirmations),
    )
