from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Protocol
from urllib import request

from taskmaster.errors import ContentResolutionError

logger = logging.getLogger(__name__)

# Manifests are small JSON documents; anything bigger is treated as opaque content.
_MAX_MANIFEST_BYTES = 256 * 1024

Fetcher = Callable[[str], tuple[bytes, str]]


class ContentResolver(Protocol):
    def resolve(self, ref: str) -> list[str]: ...


def to_http_url(ref: str, *, gateway: str) -> str | None:
    """Map a content reference to a fetchable URL, or None when it is not one."""
    ref = (ref or "").strip()
    if not ref:
        return None
    if ref.startswith("ipfs://"):
        cid_path = ref[len("ipfs://") :].lstrip("/")
        if cid_path.startswith("ipfs/"):
            cid_path = cid_path[len("ipfs/") :]
        if not cid_path:
            return None
        return f"{gateway.rstrip('/')}/ipfs/{cid_path}"
    if ref.startswith("http://") or ref.startswith("https://"):
        return ref
    return None


def _urllib_fetch(url: str, *, timeout_s: float = 30.0) -> tuple[bytes, str]:
    req = request.Request(url=url, method="GET")
    with request.urlopen(req, timeout=timeout_s) as resp:
        content_type = str(resp.headers.get("Content-Type") or "")
        if content_type.startswith("image/"):
            return b"", content_type
        return resp.read(_MAX_MANIFEST_BYTES + 1), content_type


class GatewayContentResolver:
    """Resolves proof references through an IPFS HTTP gateway.

    A reference whose content is a JSON object with a non-empty `images` list
    is a manifest and expands to every listed image; anything else is a single
    image.
    """

    def __init__(
        self,
        *,
        gateway: str,
        fetch: Fetcher | None = None,
        on_fetch: Callable[[], None] | None = None,
    ) -> None:
        self._gateway = gateway
        self._fetch = fetch or _urllib_fetch
        self._on_fetch = on_fetch

    def resolve(self, ref: str) -> list[str]:
        url = to_http_url(ref, gateway=self._gateway)
        if url is None:
            raise ContentResolutionError(f"unsupported content reference: {ref!r}")

        try:
            body, content_type = self._fetch(url)
        except Exception as e:
            raise ContentResolutionError(f"could not fetch {url}: {e}") from e
        if self._on_fetch is not None:
            self._on_fetch()

        if content_type.startswith("image/") or not body or len(body) > _MAX_MANIFEST_BYTES:
            return [url]
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return [url]
        if not isinstance(data, dict) or not isinstance(data.get("images"), list):
            return [url]

        images: list[str] = []
        for entry in data["images"]:
            mapped = to_http_url(str(entry), gateway=self._gateway) if entry else None
            if mapped is None:
                logger.warning("skipping invalid manifest entry %r in %s", entry, ref)
                continue
            images.append(mapped)
        if not images:
            raise ContentResolutionError(f"manifest {ref!r} lists no usable images")
        return images
