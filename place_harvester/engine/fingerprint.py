"""Stable identifiers for logical queries."""

from __future__ import annotations

import hashlib
import json


def fingerprint(keyword: str, country: str, state: str, city: str = "") -> str:
    """Return the SHA-256 hex digest of the query's canonical JSON form.

    The four fields are serialised as a compact JSON object in fixed key order,
    so ``("ab", "c")`` and ``("a", "bc")`` never collide and the digest matches
    identifiers written by earlier deployments. An empty ``city`` is the key of
    the state-wide automation query.
    """

    payload = json.dumps(
        {"keyword": keyword, "country": country, "state": state, "city": city},
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


__all__ = ["fingerprint"]
