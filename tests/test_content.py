from __future__ import annotations

import json

import pytest

from taskmaster.content import GatewayContentResolver, to_http_url
from taskmaster.errors import ContentResolutionError

GW = "https://gw.test/"


def _resolver(responses: dict[str, tuple[bytes, str]], fetches: list[str] | None = None) -> GatewayContentResolver:
    def fetch(url: str) -> tuple[bytes, str]:
        if fetches is not None:
            fetches.append(url)
        if url not in responses:
            raise OSError("404 not found")
        return responses[url]

    return GatewayContentResolver(gateway=GW, fetch=fetch)


def test_to_http_url_forms() -> None:
    assert to_http_url("ipfs://Qm123", gateway=GW) == "https://gw.test/ipfs/Qm123"
    assert to_http_url("ipfs://ipfs/Qm123/a.png", gateway=GW) == "https://gw.test/ipfs/Qm123/a.png"
    assert to_http_url("https://example.com/a.png", gateway=GW) == "https://example.com/a.png"
    assert to_http_url("ipfs://", gateway=GW) is None
    assert to_http_url("ftp://x", gateway=GW) is None
    assert to_http_url("", gateway=GW) is None


def test_image_reference_resolves_to_itself() -> None:
    resolver = _resolver({"https://gw.test/ipfs/img": (b"", "image/jpeg")})
    assert resolver.resolve("ipfs://img") == ["https://gw.test/ipfs/img"]


def test_manifest_expands_to_listed_images() -> None:
    manifest = json.dumps({"images": ["ipfs://a", "https://cdn.test/b.png", "bogus"]}).encode()
    resolver = _resolver({"https://gw.test/ipfs/bundle": (manifest, "application/json")})
    assert resolver.resolve("ipfs://bundle") == ["https://gw.test/ipfs/a", "https://cdn.test/b.png"]


def test_non_manifest_json_is_a_single_image() -> None:
    resolver = _resolver({"https://gw.test/ipfs/doc": (b'{"title": "x"}', "application/json")})
    assert resolver.resolve("ipfs://doc") == ["https://gw.test/ipfs/doc"]


def test_empty_manifest_is_unresolvable() -> None:
    resolver = _resolver({"https://gw.test/ipfs/m": (b'{"images": ["nope"]}', "application/json")})
    with pytest.raises(ContentResolutionError, match="no usable images"):
        resolver.resolve("ipfs://m")


def test_fetch_failure_and_bad_scheme_raise_resolution_error() -> None:
    fetches: list[str] = []
    resolver = _resolver({}, fetches)
    with pytest.raises(ContentResolutionError, match="could not fetch"):
        resolver.resolve("ipfs://missing")
    with pytest.raises(ContentResolutionError, match="unsupported"):
        resolver.resolve("file:///etc/passwd")
    assert fetches == ["https://gw.test/ipfs/missing"]


def test_each_successful_fetch_is_reported() -> None:
    count: list[int] = []
    resolver = GatewayContentResolver(
        gateway=GW, fetch=lambda url: (b"", "image/png"), on_fetch=lambda: count.append(1)
    )
    resolver.resolve("ipfs://a")
    resolver.resolve("ipfs://b")
    assert len(count) == 2
