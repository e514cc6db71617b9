"""Stable content-derived identifiers."""

from __future__ import annotations

import hashlib

__all__ = ["make_idempotency_key", "playlist_item_id"]

_Part = str | bytes


def _normalise_part(part: _Part) -> bytes:
    if isinstance(part, bytes):
        return part
    if isinstance(part, str):
        return part.encode("utf-8")
    msg = "idempotency key parts must be str or bytes"
    raise TypeError(msg)


def make_idempotency_key(*parts: _Part) -> str:
    """Return a stable 32 character SHA256 based key over length-prefixed parts."""

    if not parts:
        raise ValueError("at least one part must be provided")
    digest = hashlib.sha256()
    for part in parts:
        data = _normalise_part(part)
        digest.update(len(data).to_bytes(4, "big"))
        digest.update(data)
    return digest.hexdigest()[:32]


def playlist_item_id(
    playlist_id: str,
    track_id: str | None,
    added_at: str | None,
    added_by: str | None,
    position: int,
    snapshot_id: str | None,
) -> str:
    """Deterministic identifier for one playlist entry within a snapshot."""

    return make_idempotency_key(
        playlist_id,
        track_id or "",
        added_at or "",
        added_by or "",
        str(int(position)),
        snapshot_id or "",
    )
