"""Pull-entry classification: audit-log record → typed pull event.

``classify_record(record)`` is the single entry point.  It decides, once,
whether an audit entry is a tag pull or a digest pull and returns the
matching :class:`~pullstats.models.pull.TagPull` /
:class:`~pullstats.models.pull.DigestPull`, or raises a typed error.

Error hierarchy (all inherit from ValueError):

    MalformedEventError
    ├── MissingFieldError   — repository id absent, or neither tag nor digest
    └── InvalidFieldError   — repository id not an integer, metadata not an
                              object, bad tag or digest

A tag pull whose entry also names the resolved digest keeps it; otherwise the
digest is left ``None`` for the aggregator to resolve.
"""

import re
from typing import Any

from pullstats.models.entry import LogRecord
from pullstats.models.pull import DigestPull, PullEvent, TagPull

# <algorithm>:<hex>, e.g. sha256:4f2a…  Algorithm names follow the OCI
# image-spec digest grammar.
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-fA-F0-9]{32,}$")

# Registry tag grammar: up to 128 chars of [A-Za-z0-9_.-], not starting with . or -.
TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


class MalformedEventError(ValueError):
    """Base class for pull entries that cannot be aggregated."""


class MissingFieldError(MalformedEventError):
    """A field required to classify the pull is absent."""


class InvalidFieldError(MalformedEventError):
    """A field is present but unusable."""


def classify_record(record: LogRecord) -> PullEvent:
    """Classify *record* as a tag pull or a digest pull.

    Raises:
        MissingFieldError: No repository id, or metadata names neither a tag
                           nor a manifest digest.
        InvalidFieldError: The repository id is not an integer, metadata is not
                           an object, or the tag or digest does not match the
                           registry grammar.
    """
    if record.repository_id is None:
        raise MissingFieldError("Required field missing: 'repository_id'")
    repository_id = _repository_id(record.repository_id)

    metadata = record.metadata
    if metadata is None:
        raise MissingFieldError("Required field missing: 'metadata'")
    if not isinstance(metadata, dict):
        raise InvalidFieldError(f"metadata must be an object, got {type(metadata).__name__}")

    tag = _optional_str(metadata, "tag")
    digest = _optional_str(metadata, "manifest_digest")

    if digest is not None and not DIGEST_PATTERN.match(digest):
        raise InvalidFieldError(f"Invalid value for 'manifest_digest': {digest!r}")

    if tag is not None:
        if not TAG_PATTERN.match(tag):
            raise InvalidFieldError(f"Invalid value for 'tag': {tag!r}")
        return TagPull(
            repository_id=repository_id,
            tag_name=tag,
            manifest_digest=digest,
            occurred_at=record.occurred_at,
            ordinal=record.id,
        )

    if digest is not None:
        return DigestPull(
            repository_id=repository_id,
            manifest_digest=digest,
            occurred_at=record.occurred_at,
            ordinal=record.id,
        )

    raise MissingFieldError("Pull entry names neither 'tag' nor 'manifest_digest'")


def _optional_str(metadata: dict[str, Any], key: str) -> str | None:
    value = metadata.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidFieldError(f"Invalid value for {key!r}: expected string, got {value!r}")
    return value


def _repository_id(value: Any) -> int:
    # JSON numbers arrive as int; decimal strings are accepted as well.
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.isdecimal():
        return int(value)
    raise InvalidFieldError(f"Invalid value for 'repository_id': {value!r}")
