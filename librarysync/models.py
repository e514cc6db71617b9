"""Database models for the library sync engine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
)

from librarysync.db import Base
from librarysync.utils.time import utcnow


def _utcnow() -> datetime:
    """Naive UTC timestamp for ORM defaults."""

    return utcnow()


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class SyncStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    BACKOFF = "backoff"
    ERROR = "error"


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    external_user_id = Column(String(128), unique=True, nullable=True)
    display_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    deleted_at = Column(DateTime, nullable=True)


class OAuthToken(Base):
    __tablename__ = "oauth_tokens"

    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    refresh_token_enc = Column(Text, nullable=False)
    enc_key_version = Column(Integer, nullable=False, default=1)
    access_token_enc = Column(Text, nullable=True)
    access_expires_at = Column(DateTime, nullable=True)
    scope = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class Track(Base):
    __tablename__ = "tracks"

    id = Column(String(64), primary_key=True)
    name = Column(String(512), nullable=False)
    duration_ms = Column(Integer, nullable=True)
    explicit = Column(Boolean, nullable=False, default=False)
    popularity = Column(Integer, nullable=True)
    album_id = Column(String(64), nullable=True)
    album_name = Column(String(512), nullable=True)
    album_image_url = Column(Text, nullable=True)
    album_image_blob = Column(LargeBinary, nullable=True)
    album_image_mime = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class Artist(Base):
    __tablename__ = "artists"

    id = Column(String(64), primary_key=True)
    name = Column(String(512), nullable=False)
    genres = Column(JSON(none_as_null=True), nullable=True)
    popularity = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class TrackArtist(Base):
    __tablename__ = "track_artists"

    track_id = Column(String(64), ForeignKey("tracks.id", ondelete="CASCADE"), primary_key=True)
    artist_id = Column(String(64), ForeignKey("artists.id", ondelete="CASCADE"), primary_key=True)


class UserSavedTrack(Base):
    __tablename__ = "user_saved_tracks"
    __table_args__ = (Index("ix_user_saved_tracks_user_added", "user_id", "added_at"),)

    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    track_id = Column(String(64), ForeignKey("tracks.id", ondelete="CASCADE"), primary_key=True)
    added_at = Column(DateTime, nullable=False)
    last_seen_at = Column(DateTime, nullable=False)


class Playlist(Base):
    __tablename__ = "playlists"

    id = Column(String(64), primary_key=True)
    name = Column(String(512), nullable=False)
    owner_id = Column(String(128), nullable=True)
    is_public = Column(Boolean, nullable=True)
    collaborative = Column(Boolean, nullable=False, default=False)
    snapshot_id = Column(String(128), nullable=True)
    items_snapshot_id = Column(String(128), nullable=True)
    items_reconciled_at = Column(DateTime, nullable=True)
    tracks_total = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class UserPlaylist(Base):
    __tablename__ = "user_playlists"

    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    playlist_id = Column(
        String(64), ForeignKey("playlists.id", ondelete="CASCADE"), primary_key=True
    )
    last_seen_at = Column(DateTime, nullable=False)


class PlaylistItem(Base):
    __tablename__ = "playlist_items"
    __table_args__ = (
        Index("ix_playlist_items_playlist_run", "playlist_id", "run_id"),
        Index("ix_playlist_items_playlist_position", "playlist_id", "position"),
    )

    item_id = Column(String(64), primary_key=True)
    playlist_id = Column(
        String(64), ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False
    )
    track_id = Column(String(64), nullable=True)
    added_at = Column(DateTime, nullable=True)
    added_by = Column(String(128), nullable=True)
    position = Column(Integer, nullable=False)
    snapshot_id = Column(String(128), nullable=True)
    run_id = Column(String(64), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class SyncState(Base):
    __tablename__ = "sync_state"
    __table_args__ = (
        CheckConstraint(
            "status IN ('idle','queued','running','backoff','error')",
            name="ck_sync_state_status_valid",
        ),
        CheckConstraint("failure_count >= 0", name="ck_sync_state_failures_non_negative"),
    )

    user_id = Column(String(64), primary_key=True)
    resource = Column(String(191), primary_key=True)
    status = Column(String(16), nullable=False, default=SyncStatus.IDLE.value)
    cursor_offset = Column(Integer, nullable=True)
    cursor_limit = Column(Integer, nullable=True)
    cursor_key = Column(String(128), nullable=True)
    last_successful_at = Column(DateTime, nullable=True)
    retry_after_at = Column(DateTime, nullable=True)
    failure_count = Column(Integer, nullable=False, default=0)
    last_error_code = Column(String(255), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued','running','done','error')",
            name="ck_jobs_status_valid",
        ),
        CheckConstraint("attempts >= 0", name="ck_jobs_attempts_non_negative"),
        Index("ix_jobs_claim", "status", "run_after", "created_at"),
        Index("ix_jobs_user_type_status", "user_id", "type", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    type = Column(String(64), nullable=False)
    payload = Column("payload_json", JSON, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default=JobStatus.QUEUED.value)
    attempts = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    run_after = Column(DateTime, nullable=False, default=_utcnow)
    lease_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class WorkerHeartbeat(Base):
    __tablename__ = "worker_heartbeat"

    id = Column(String(32), primary_key=True)
    updated_at = Column(DateTime, nullable=False)
