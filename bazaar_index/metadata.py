"""Off-chain metadata lookup for token commitments.

NFT commitments carry the IPFS CID of a JSON document, hex encoded. The
resolver fetches that document through an HTTP gateway and normalizes the
fields the marketplace displays. Metadata is decoration only: the indexer
treats every failure here as "no metadata" and never as a state change.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

import requests
from requests import RequestException

from .chain import UpstreamUnavailable
from .config import DEFAULT_IPFS_GATEWAY

logger = logging.getLogger(__name__)


def commitment_to_cid(commitment: str) -> str:
    """Return the content identifier stored in a hex ``commitment``.

    Commitments that are not hex, or whose bytes are not printable UTF-8, are
    returned unchanged.
    """

    if not commitment:
        return ""
    try:
        decoded = bytes.fromhex(commitment).decode("utf-8")
    except ValueError:
        return commitment
    if not decoded or not decoded.isprintable():
        return commitment
    return decoded


def normalize_metadata(document: Dict[str, Any]) -> Dict[str, Any]:
    attributes = document.get("attributes")
    return {
        "name": document.get("name") or "Untitled",
        "description": document.get("description") or "",
        "image": document.get("image") or "",
        "creator": document.get("creator") or "",
        "attributes": attributes if isinstance(attributes, list) else [],
        "collection": document.get("collection"),
        "createdAt": document.get("createdAt"),
    }


class MetadataCache:
    """Thread-safe populate-if-absent map from content id to metadata.

    Entries are never replaced once written, so concurrent refreshes racing
    to fill the same content id all end up reading the same document.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, Any]] = {}

    def get(self, content_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._entries.get(content_id)

    def put_if_absent(self, content_id: str, document: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            return self._entries.setdefault(content_id, document)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MetadataResolver:
    """Interface for turning a content identifier into a metadata document."""

    def resolve(self, content_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class IPFSMetadataResolver(MetadataResolver):
    """Resolve content ids through an IPFS HTTP gateway.

    Only successful lookups are cached; a missing or malformed document is
    retried on the next refresh.
    """

    def __init__(
        self,
        gateway: str = DEFAULT_IPFS_GATEWAY,
        *,
        timeout: float = 10.0,
        cache: MetadataCache | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.gateway = gateway.rstrip("/")
        self.timeout = timeout
        self.cache = cache if cache is not None else MetadataCache()
        self._session = session or requests.Session()

    def url_for(self, content_id: str) -> str:
        cid = content_id[len("ipfs://") :] if content_id.startswith("ipfs://") else content_id
        return f"{self.gateway}/ipfs/{cid}"

    def resolve(self, content_id: str) -> Optional[Dict[str, Any]]:
        if not content_id:
            return None
        cached = self.cache.get(content_id)
        if cached is not None:
            return cached

        url = self.url_for(content_id)
        try:
            response = self._session.get(url, timeout=self.timeout)
        except RequestException as exc:
            raise UpstreamUnavailable(f"metadata gateway unreachable for {content_id}: {exc}") from exc
        if response.status_code >= 500:
            raise UpstreamUnavailable(
                f"metadata gateway returned HTTP {response.status_code} for {content_id}"
            )
        if not response.ok:
            logger.debug("No metadata at %s (HTTP %s)", url, response.status_code)
            return None
        try:
            document = response.json()
        except ValueError:
            logger.debug("Metadata at %s is not JSON", url)
            return None
        if not isinstance(document, dict):
            return None
        return self.cache.put_if_absent(content_id, normalize_metadata(document))
