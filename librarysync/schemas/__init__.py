"""Typed schemas for persisted job payloads."""

from .jobs import (
    BackfillPayload,
    JobPayload,
    JobType,
    PlaylistItemsPayload,
    PlaylistsPayload,
    TracksPayload,
    dump_payload,
    parse_job_type,
    parse_payload,
    resource_key,
)

__all__ = [
    "BackfillPayload",
    "JobPayload",
    "JobType",
    "PlaylistItemsPayload",
    "PlaylistsPayload",
    "TracksPayload",
    "dump_payload",
    "parse_job_type",
    "parse_payload",
    "resource_key",
]
