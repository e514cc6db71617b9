"""Job types and their typed payload variants.

Jobs are persisted with an untyped JSON payload; the dispatcher decodes it
into the variant registered for the job's :class:`JobType` before calling the
matching sync algorithm.  Field aliases follow the camelCase wire format used
by callers that enqueue work.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from librarysync.errors import InvalidPayloadError


class JobType(str, Enum):
    TRACKS_INITIAL = "SYNC_TRACKS_INITIAL"
    TRACKS_INCREMENTAL = "SYNC_TRACKS_INCREMENTAL"
    PLAYLISTS = "SYNC_PLAYLISTS"
    PLAYLIST_ITEMS = "SYNC_PLAYLIST_ITEMS"
    TRACK_METADATA = "SYNC_TRACK_METADATA"
    COVERS = "SYNC_COVERS"


JOB_TYPE_ALIASES: dict[str, JobType] = {
    "tracks_initial": JobType.TRACKS_INITIAL,
    "tracks_incremental": JobType.TRACKS_INCREMENTAL,
    "playlists": JobType.PLAYLISTS,
    "playlist_items": JobType.PLAYLIST_ITEMS,
    "track_metadata": JobType.TRACK_METADATA,
    "covers": JobType.COVERS,
}


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class TracksPayload(_Payload):
    offset: int | None = Field(default=None, ge=0)
    limit: int = Field(default=50, ge=1, le=50)
    max_pages_per_run: int = Field(default=5, ge=1, alias="maxPagesPerRun")
    watermark_ms: int | None = Field(default=None, ge=0, alias="watermarkMs")


class PlaylistsPayload(_Payload):
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1, le=50)
    max_pages_per_run: int = Field(default=5, ge=1, alias="maxPagesPerRun")


class PlaylistItemsPayload(_Payload):
    playlist_id: str = Field(..., min_length=1, alias="playlistId")
    snapshot_id: str | None = Field(default=None, alias="snapshotId")
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=100, ge=1, le=100)
    max_pages_per_run: int = Field(default=5, ge=1, alias="maxPagesPerRun")
    run_id: str = Field(..., min_length=1, alias="runId")

    @field_validator("playlist_id", "run_id")
    @classmethod
    def _strip(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("value must not be empty")
        return stripped


class BackfillPayload(_Payload):
    cursor: str | None = None
    limit: int = Field(default=50, ge=1, le=50)
    max_batches: int = Field(default=5, ge=1, alias="maxBatches")


JobPayload = Union[TracksPayload, PlaylistsPayload, PlaylistItemsPayload, BackfillPayload]

PAYLOAD_MODELS: dict[JobType, type[_Payload]] = {
    JobType.TRACKS_INITIAL: TracksPayload,
    JobType.TRACKS_INCREMENTAL: TracksPayload,
    JobType.PLAYLISTS: PlaylistsPayload,
    JobType.PLAYLIST_ITEMS: PlaylistItemsPayload,
    JobType.TRACK_METADATA: BackfillPayload,
    JobType.COVERS: BackfillPayload,
}

_FIXED_RESOURCES: dict[JobType, str] = {
    JobType.TRACKS_INITIAL: "tracks",
    JobType.TRACKS_INCREMENTAL: "tracks",
    JobType.PLAYLISTS: "playlists",
    JobType.TRACK_METADATA: "track_metadata",
    JobType.COVERS: "covers",
}


def parse_job_type(value: str | JobType) -> JobType:
    if isinstance(value, JobType):
        return value
    text = str(value or "").strip()
    alias = JOB_TYPE_ALIASES.get(text.lower())
    if alias is not None:
        return alias
    try:
        return JobType(text)
    except ValueError as exc:
        raise InvalidPayloadError(f"unknown job type: {text!r}") from exc


def parse_payload(job_type: JobType, raw: Mapping[str, Any] | None) -> JobPayload:
    """Decode ``raw`` into the payload variant for ``job_type``."""

    model = PAYLOAD_MODELS[job_type]
    if raw is not None and not isinstance(raw, Mapping):
        raise InvalidPayloadError(f"payload for {job_type.value} must be an object")
    try:
        return model.model_validate(dict(raw or {}))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'payload'}: {error['msg']}"
            for error in exc.errors()
        )
        raise InvalidPayloadError(f"invalid {job_type.value} payload: {problems}") from exc


def dump_payload(payload: JobPayload) -> dict[str, Any]:
    return payload.model_dump(by_alias=True, exclude_none=True)


def resource_key(job_type: JobType, payload: JobPayload | Mapping[str, Any] | None) -> str:
    """Return the SyncState resource key a job reports progress under."""

    fixed = _FIXED_RESOURCES.get(job_type)
    if fixed is not None:
        return fixed
    if isinstance(payload, PlaylistItemsPayload):
        playlist_id = payload.playlist_id
    elif isinstance(payload, Mapping):
        playlist_id = str(payload.get("playlistId") or "").strip()
    else:
        playlist_id = ""
    return f"playlist_items:{playlist_id}" if playlist_id else "playlist_items"


__all__ = [
    "BackfillPayload",
    "JOB_TYPE_ALIASES",
    "JobPayload",
    "JobType",
    "PAYLOAD_MODELS",
    "PlaylistItemsPayload",
    "PlaylistsPayload",
    "TracksPayload",
    "dump_payload",
    "parse_job_type",
    "parse_payload",
    "resource_key",
]
