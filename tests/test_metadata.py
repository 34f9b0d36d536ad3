import json

import pytest
import requests

from bazaar_index.chain import UpstreamUnavailable
from bazaar_index.metadata import (
    IPFSMetadataResolver,
    MetadataCache,
    commitment_to_cid,
    normalize_metadata,
)

CID = "bafkreihello"


def _response(status: int, content: bytes) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = content
    return response


class StubSession:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.mark.parametrize(
    "commitment, expected",
    [
        (CID.encode().hex(), CID),
        ("", ""),
        ("00ff", "00ff"),
        ("not-hex", "not-hex"),
    ],
)
def test_commitment_to_cid(commitment: str, expected: str) -> None:
    assert commitment_to_cid(commitment) == expected


def test_normalize_metadata_defaults() -> None:
    normalized = normalize_metadata({"description": "d", "attributes": "bad"})

    assert normalized["name"] == "Untitled"
    assert normalized["description"] == "d"
    assert normalized["attributes"] == []
    assert normalized["image"] == ""


def test_resolver_fetches_once_and_caches() -> None:
    body = json.dumps({"name": "Genesis", "image": "ipfs://img"}).encode()
    session = StubSession(_response(200, body))
    resolver = IPFSMetadataResolver("https://gw.example/", session=session)

    first = resolver.resolve(CID)
    second = resolver.resolve(CID)

    assert first["name"] == "Genesis"
    assert second is first
    assert session.urls == [f"https://gw.example/ipfs/{CID}"]


def test_resolver_strips_ipfs_scheme() -> None:
    resolver = IPFSMetadataResolver("https://gw.example", session=StubSession())

    assert resolver.url_for(f"ipfs://{CID}") == f"https://gw.example/ipfs/{CID}"


def test_missing_or_malformed_documents_are_not_cached() -> None:
    session = StubSession(
        _response(404, b""),
        _response(200, b"<html>"),
        _response(200, b"[1, 2]"),
        _response(200, b'{"name": "Later"}'),
    )
    resolver = IPFSMetadataResolver(session=session)

    assert resolver.resolve(CID) is None
    assert resolver.resolve(CID) is None
    assert resolver.resolve(CID) is None
    assert resolver.resolve(CID)["name"] == "Later"
    assert len(resolver.cache) == 1


@pytest.mark.parametrize(
    "outcome",
    [requests.ConnectionError("refused"), requests.Timeout("slow"), _response(502, b"")],
)
def test_gateway_failures_raise_upstream_unavailable(outcome) -> None:
    resolver = IPFSMetadataResolver(session=StubSession(outcome))

    with pytest.raises(UpstreamUnavailable):
        resolver.resolve(CID)


def test_metadata_cache_keeps_first_writer() -> None:
    cache = MetadataCache()

    first = cache.put_if_absent(CID, {"name": "a"})
    second = cache.put_if_absent(CID, {"name": "b"})

    assert first == second == {"name": "a"}
    assert cache.get(CID) == {"name": "a"}
    cache.clear()
    assert len(cache) == 0
