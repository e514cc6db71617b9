"""Idempotent upserts of catalog entities keyed by upstream identifiers.

Every write is last-writer-wins on a natural key, so replaying a page (after a
crash or a duplicate delivery) leaves the tables exactly as one application
would.  Methods take the caller's session; the algorithms own the transaction
boundary, one per page.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from librarysync.db import upsert
from librarysync.models import (
    Artist,
    Playlist,
    PlaylistItem,
    Track,
    TrackArtist,
    UserPlaylist,
    UserSavedTrack,
)
from librarysync.utils.idempotency import playlist_item_id
from librarysync.utils.time import parse_upstream_timestamp


@dataclass(slots=True, frozen=True)
class ArtistRef:
    id: str
    name: str


@dataclass(slots=True, frozen=True)
class TrackRecord:
    id: str
    name: str
    duration_ms: int | None
    explicit: bool
    popularity: int | None
    album_id: str | None
    album_name: str | None
    album_image_url: str | None
    artists: tuple[ArtistRef, ...]


@dataclass(slots=True, frozen=True)
class SavedTrackEntry:
    track: TrackRecord
    added_at: datetime | None


@dataclass(slots=True, frozen=True)
class PlaylistRecord:
    id: str
    name: str
    owner_id: str | None
    is_public: bool | None
    collaborative: bool
    snapshot_id: str | None
    tracks_total: int | None


@dataclass(slots=True, frozen=True)
class PlaylistItemRecord:
    item_id: str
    playlist_id: str
    track: TrackRecord | None
    added_at: datetime | None
    added_by: str | None
    position: int


def _optional_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def pick_image_url(images: Any) -> str | None:
    """Return the widest image URL from an upstream ``images`` list."""

    if not isinstance(images, list):
        return None
    candidates = [
        image
        for image in images
        if isinstance(image, Mapping) and isinstance(image.get("url"), str) and image["url"]
    ]
    if not candidates:
        return None
    best = max(candidates, key=lambda image: _optional_int(image.get("width")) or 0)
    return str(best["url"])


def parse_track(raw: Any) -> TrackRecord | None:
    """Normalise an upstream track object; local files and id-less entries yield ``None``."""

    if not isinstance(raw, Mapping):
        return None
    track_id = raw.get("id")
    if not isinstance(track_id, str) or not track_id or raw.get("is_local"):
        return None
    album = raw.get("album") if isinstance(raw.get("album"), Mapping) else {}
    artists = tuple(
        ArtistRef(id=str(artist["id"]), name=str(artist.get("name") or ""))
        for artist in raw.get("artists") or []
        if isinstance(artist, Mapping) and artist.get("id")
    )
    return TrackRecord(
        id=track_id,
        name=str(raw.get("name") or ""),
        duration_ms=_optional_int(raw.get("duration_ms")),
        explicit=bool(raw.get("explicit", False)),
        popularity=_optional_int(raw.get("popularity")),
        album_id=album.get("id") or None,
        album_name=album.get("name") or None,
        album_image_url=pick_image_url(album.get("images")),
        artists=artists,
    )


def parse_saved_tracks(items: Iterable[Any]) -> list[SavedTrackEntry]:
    entries: list[SavedTrackEntry] = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        track = parse_track(item.get("track"))
        if track is None:
            continue
        entries.append(
            SavedTrackEntry(track=track, added_at=parse_upstream_timestamp(item.get("added_at")))
        )
    return entries


def parse_playlists(items: Iterable[Any]) -> list[PlaylistRecord]:
    records: list[PlaylistRecord] = []
    for item in items:
        if not isinstance(item, Mapping) or not item.get("id"):
            continue
        owner = item.get("owner") if isinstance(item.get("owner"), Mapping) else {}
        tracks = item.get("tracks") if isinstance(item.get("tracks"), Mapping) else {}
        public = item.get("public")
        records.append(
            PlaylistRecord(
                id=str(item["id"]),
                name=str(item.get("name") or ""),
                owner_id=owner.get("id") or None,
                is_public=bool(public) if public is not None else None,
                collaborative=bool(item.get("collaborative", False)),
                snapshot_id=item.get("snapshot_id") or None,
                tracks_total=_optional_int(tracks.get("total")),
            )
        )
    return records


def parse_playlist_items(
    items: Sequence[Any], *, playlist_id: str, snapshot_id: str | None, offset: int
) -> list[PlaylistItemRecord]:
    """Build item rows; positions are absolute (``offset`` + index within the page)."""

    records: list[PlaylistItemRecord] = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            continue
        position = offset + index
        track = parse_track(item.get("track"))
        raw_added_at = item.get("added_at") if isinstance(item.get("added_at"), str) else None
        adder = item.get("added_by") if isinstance(item.get("added_by"), Mapping) else {}
        added_by = adder.get("id") or None
        records.append(
            PlaylistItemRecord(
                item_id=playlist_item_id(
                    playlist_id,
                    track.id if track else None,
                    raw_added_at,
                    added_by,
                    position,
                    snapshot_id,
                ),
                playlist_id=playlist_id,
                track=track,
                added_at=parse_upstream_timestamp(raw_added_at),
                added_by=added_by,
                position=position,
            )
        )
    return records


def _dedupe(rows: Iterable[dict[str, Any]], key: str) -> list[dict[str, Any]]:
    unique: dict[Any, dict[str, Any]] = {}
    for row in rows:
        unique[row[key]] = row
    return list(unique.values())


class CatalogStore:
    """DAO for catalog tables; all statements run on the caller's session."""

    def upsert_tracks(self, session: Session, tracks: Sequence[TrackRecord], *, now: datetime) -> int:
        if not tracks:
            return 0
        table = Track.__table__
        rows = _dedupe(
            (
                {
                    "id": track.id,
                    "name": track.name,
                    "duration_ms": track.duration_ms,
                    "explicit": track.explicit,
                    "popularity": track.popularity,
                    "album_id": track.album_id,
                    "album_name": track.album_name,
                    "album_image_url": track.album_image_url,
                    "created_at": now,
                    "updated_at": now,
                }
                for track in tracks
            ),
            "id",
        )
        stmt = upsert(session, table).values(rows)
        excluded = stmt.excluded
        next_url = func.coalesce(excluded.album_image_url, table.c.album_image_url)
        url_unchanged = table.c.album_image_url.is_not_distinct_from(next_url)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={
                "name": excluded.name,
                "duration_ms": func.coalesce(excluded.duration_ms, table.c.duration_ms),
                "explicit": excluded.explicit,
                "popularity": func.coalesce(excluded.popularity, table.c.popularity),
                "album_id": func.coalesce(excluded.album_id, table.c.album_id),
                "album_name": func.coalesce(excluded.album_name, table.c.album_name),
                "album_image_url": next_url,
                "album_image_blob": case((url_unchanged, table.c.album_image_blob), else_=None),
                "album_image_mime": case((url_unchanged, table.c.album_image_mime), else_=None),
                "updated_at": excluded.updated_at,
            },
        )
        session.execute(stmt)
        self._upsert_track_artists(session, tracks, now=now)
        return len(rows)

    def _upsert_track_artists(
        self, session: Session, tracks: Sequence[TrackRecord], *, now: datetime
    ) -> None:
        artist_rows = _dedupe(
            (
                {"id": artist.id, "name": artist.name, "updated_at": now}
                for track in tracks
                for artist in track.artists
            ),
            "id",
        )
        if not artist_rows:
            return
        artists = Artist.__table__
        stmt = upsert(session, artists).values(artist_rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[artists.c.id],
            set_={
                "name": case((stmt.excluded.name == "", artists.c.name), else_=stmt.excluded.name),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)

        links = TrackArtist.__table__
        link_rows = _dedupe(
            (
                {"track_id": track.id, "artist_id": artist.id, "key": (track.id, artist.id)}
                for track in tracks
                for artist in track.artists
            ),
            "key",
        )
        for row in link_rows:
            row.pop("key")
        session.execute(
            upsert(session, links)
            .values(link_rows)
            .on_conflict_do_nothing(index_elements=[links.c.track_id, links.c.artist_id])
        )

    def upsert_saved_tracks(
        self,
        session: Session,
        user_id: str,
        entries: Sequence[SavedTrackEntry],
        *,
        now: datetime,
    ) -> int:
        """Write tracks, artists and the user's saved-track rows for one page."""

        if not entries:
            return 0
        self.upsert_tracks(session, [entry.track for entry in entries], now=now)
        table = UserSavedTrack.__table__
        rows = _dedupe(
            (
                {
                    "user_id": user_id,
                    "track_id": entry.track.id,
                    "added_at": entry.added_at or now,
                    "last_seen_at": now,
                }
                for entry in entries
            ),
            "track_id",
        )
        stmt = upsert(session, table).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id, table.c.track_id],
            set_={"added_at": stmt.excluded.added_at, "last_seen_at": stmt.excluded.last_seen_at},
        )
        session.execute(stmt)
        return len(rows)

    def newest_saved_added_at(self, session: Session, user_id: str) -> datetime | None:
        return session.execute(
            select(func.max(UserSavedTrack.added_at)).where(UserSavedTrack.user_id == user_id)
        ).scalar_one_or_none()

    def reconciled_snapshots(
        self, session: Session, playlist_ids: Sequence[str]
    ) -> dict[str, str | None]:
        """Item snapshots of the given playlists that were reconciled at least once.

        Playlists never reconciled are absent, so a missing upstream snapshot id
        still reads as new.
        """

        if not playlist_ids:
            return {}
        rows = session.execute(
            select(Playlist.id, Playlist.items_snapshot_id).where(
                Playlist.id.in_(playlist_ids), Playlist.items_reconciled_at.is_not(None)
            )
        ).all()
        return {row.id: row.items_snapshot_id for row in rows}

    def upsert_playlists(
        self,
        session: Session,
        user_id: str,
        playlists: Sequence[PlaylistRecord],
        *,
        now: datetime,
    ) -> int:
        if not playlists:
            return 0
        table = Playlist.__table__
        rows = _dedupe(
            (
                {
                    "id": playlist.id,
                    "name": playlist.name,
                    "owner_id": playlist.owner_id,
                    "is_public": playlist.is_public,
                    "collaborative": playlist.collaborative,
                    "snapshot_id": playlist.snapshot_id,
                    "tracks_total": playlist.tracks_total,
                    "updated_at": now,
                }
                for playlist in playlists
            ),
            "id",
        )
        stmt = upsert(session, table).values(rows)
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={
                "name": excluded.name,
                "owner_id": excluded.owner_id,
                "is_public": excluded.is_public,
                "collaborative": excluded.collaborative,
                "snapshot_id": excluded.snapshot_id,
                "tracks_total": excluded.tracks_total,
                "updated_at": excluded.updated_at,
            },
        )
        session.execute(stmt)

        links = UserPlaylist.__table__
        link_stmt = upsert(session, links).values(
            [{"user_id": user_id, "playlist_id": row["id"], "last_seen_at": now} for row in rows]
        )
        link_stmt = link_stmt.on_conflict_do_update(
            index_elements=[links.c.user_id, links.c.playlist_id],
            set_={"last_seen_at": link_stmt.excluded.last_seen_at},
        )
        session.execute(link_stmt)
        return len(rows)

    def upsert_playlist_items(
        self,
        session: Session,
        items: Sequence[PlaylistItemRecord],
        *,
        snapshot_id: str | None,
        run_id: str,
        now: datetime,
    ) -> int:
        if not items:
            return 0
        self.upsert_tracks(session, [item.track for item in items if item.track], now=now)
        table = PlaylistItem.__table__
        rows = _dedupe(
            (
                {
                    "item_id": item.item_id,
                    "playlist_id": item.playlist_id,
                    "track_id": item.track.id if item.track else None,
                    "added_at": item.added_at,
                    "added_by": item.added_by,
                    "position": item.position,
                    "snapshot_id": snapshot_id,
                    "run_id": run_id,
                    "updated_at": now,
                }
                for item in items
            ),
            "item_id",
        )
        stmt = upsert(session, table).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.item_id],
            set_={
                "position": stmt.excluded.position,
                "snapshot_id": stmt.excluded.snapshot_id,
                "run_id": stmt.excluded.run_id,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)
        return len(rows)

    def prune_playlist_items(self, session: Session, playlist_id: str, run_id: str) -> int:
        """Delete rows of ``playlist_id`` that the run ``run_id`` did not write."""

        result = session.execute(
            delete(PlaylistItem).where(
                PlaylistItem.playlist_id == playlist_id, PlaylistItem.run_id != run_id
            )
        )
        return int(result.rowcount or 0)

    def mark_playlist_reconciled(
        self, session: Session, playlist_id: str, snapshot_id: str | None, *, now: datetime
    ) -> None:
        session.execute(
            update(Playlist)
            .where(Playlist.id == playlist_id)
            .values(items_snapshot_id=snapshot_id, items_reconciled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    def _user_track_scope(self, user_id: str) -> Any:
        saved = select(UserSavedTrack.track_id).where(UserSavedTrack.user_id == user_id)
        in_playlists = (
            select(PlaylistItem.track_id)
            .join(UserPlaylist, UserPlaylist.playlist_id == PlaylistItem.playlist_id)
            .where(UserPlaylist.user_id == user_id, PlaylistItem.track_id.is_not(None))
        )
        return or_(Track.id.in_(saved), Track.id.in_(in_playlists))

    def metadata_candidates(
        self, session: Session, user_id: str, *, after: str | None, limit: int
    ) -> list[str]:
        """Track ids of the user's library missing album linkage, ordered by id."""

        stmt = select(Track.id).where(
            self._user_track_scope(user_id),
            or_(Track.album_id.is_(None), Track.album_image_url.is_(None)),
        )
        if after:
            stmt = stmt.where(Track.id > after)
        return list(session.execute(stmt.order_by(Track.id).limit(limit)).scalars())

    def artists_missing_details(self, session: Session, artist_ids: Sequence[str]) -> list[str]:
        """Ids from ``artist_ids`` that are unknown or have no genres recorded."""

        if not artist_ids:
            return []
        complete = set(
            session.execute(
                select(Artist.id).where(
                    Artist.id.in_(list(artist_ids)), Artist.genres.is_not(None)
                )
            ).scalars()
        )
        return sorted(set(artist_ids) - complete)

    def update_artist_details(
        self, session: Session, artists: Iterable[Any], *, now: datetime
    ) -> int:
        updated = 0
        for raw in artists:
            if not isinstance(raw, Mapping) or not raw.get("id"):
                continue
            genres = [str(genre) for genre in raw.get("genres") or [] if genre]
            values: dict[str, Any] = {
                "genres": genres,
                "popularity": _optional_int(raw.get("popularity")),
                "updated_at": now,
            }
            if raw.get("name"):
                values["name"] = str(raw["name"])
            result = session.execute(
                update(Artist)
                .where(Artist.id == str(raw["id"]))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            updated += int(result.rowcount or 0)
        return updated

    def cover_candidates(
        self, session: Session, user_id: str, *, after: str | None, limit: int
    ) -> list[tuple[str, str]]:
        """``(track_id, image_url)`` pairs with a URL but no cached image, ordered by id."""

        stmt = select(Track.id, Track.album_image_url).where(
            self._user_track_scope(user_id),
            Track.album_image_url.is_not(None),
            Track.album_image_blob.is_(None),
        )
        if after:
            stmt = stmt.where(Track.id > after)
        rows = session.execute(stmt.order_by(Track.id).limit(limit)).all()
        return [(row.id, row.album_image_url) for row in rows]

    def tracks_missing_cover(
        self, session: Session, track_ids: Sequence[str]
    ) -> list[tuple[str, str]]:
        if not track_ids:
            return []
        rows = session.execute(
            select(Track.id, Track.album_image_url)
            .where(
                Track.id.in_(list(track_ids)),
                Track.album_image_url.is_not(None),
                Track.album_image_blob.is_(None),
            )
            .order_by(Track.id)
        ).all()
        return [(row.id, row.album_image_url) for row in rows]

    def store_cover(
        self,
        session: Session,
        track_id: str,
        *,
        url: str,
        data: bytes,
        mime: str,
        now: datetime,
    ) -> bool:
        """Cache image bytes unless the track's image URL changed meanwhile."""

        result = session.execute(
            update(Track)
            .where(and_(Track.id == track_id, Track.album_image_url == url))
            .values(album_image_blob=data, album_image_mime=mime, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)


__all__ = [
    "ArtistRef",
    "CatalogStore",
    "PlaylistItemRecord",
    "PlaylistRecord",
    "SavedTrackEntry",
    "TrackRecord",
    "parse_playlist_items",
    "parse_playlists",
    "parse_saved_tracks",
    "parse_track",
    "pick_image_url",
]
