"""Classified pull events: the two shapes a pull can take.

A pull is addressed either by tag or by digest, and the two are handled
differently by the aggregator, so they are separate types rather than one
record with optional fields.  ``PullEvent`` is their union; code branches on
it with ``isinstance`` (or ``match``) exactly once, in
:mod:`pullstats.aggregate`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class TagPull:
    """A fetch addressed by tag name.

    ``manifest_digest`` is the digest the tag resolved to at pull time when the
    audit entry recorded it, otherwise ``None`` and resolved later.
    """

    repository_id: int
    tag_name: str
    manifest_digest: str | None
    occurred_at: datetime
    ordinal: int | None = None


@dataclass(frozen=True)
class DigestPull:
    """A fetch addressed directly by manifest digest."""

    repository_id: int
    manifest_digest: str
    occurred_at: datetime
    ordinal: int | None = None


PullEvent = TagPull | DigestPull
