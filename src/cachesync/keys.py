"""Resource key derivation.

A resource key is a request URL with the origin prefix stripped, the form
used by the Resource Manifest. The site root is represented by ``ROOT_KEY``.
"""

from __future__ import annotations

ROOT_KEY = "/"
_CACHE_BUST_MARKER = "?v="


def _strip_origin(url: str, origin: str) -> str | None:
    origin = origin.rstrip("/")
    if url == origin:
        return ""
    if url.startswith(origin + "#"):
        return url[len(origin) :]
    if not url.startswith(origin + "/"):
        return None
    return url[len(origin) + 1 :]


def resource_key(url: str, origin: str) -> str | None:
    """Derive the manifest key an intercepted request maps to.

    Returns ``None`` for URLs outside ``origin``, which are never
    cache-managed. A trailing ``?v=...`` cache-busting parameter is dropped;
    the bare origin, fragment-only navigations and the empty path all map to
    ``ROOT_KEY``.
    """
    key = _strip_origin(url, origin)
    if key is None:
        return None
    if _CACHE_BUST_MARKER in key:
        key = key.split(_CACHE_BUST_MARKER)[0]
    if key == "" or key.startswith("#"):
        return ROOT_KEY
    return key


def stored_key(url: str, origin: str) -> str | None:
    """Derive the manifest key of an entry already held in a namespace."""
    key = _strip_origin(url, origin)
    if key is None:
        return None
    return key or ROOT_KEY


def canonical_url(key: str, origin: str) -> str:
    """URL under which the resource for ``key`` is stored and fetched."""
    origin = origin.rstrip("/")
    if key == ROOT_KEY:
        return origin + "/"
    return f"{origin}/{key}"
