"""Record and outcome types.

A Record is the unit flowing through the pipeline: a mapping of string
attributes plus content bytes. Records are immutable; every change returns a
new version carrying the same ``id``, so the latest version is always the one
handed back to the session.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType

# Attributes written by the stage
ATTR_STATUS = "http.status"
ATTR_MESSAGE = "http.message"
ATTR_URL = "http.url"
ATTR_ERROR_RESPONSE = "http.response"

# Identity attributes owned by the pipeline
ATTR_UUID = "uuid"
ATTR_FILENAME = "filename"
ATTR_PATH = "path"
CORE_ATTRIBUTES: frozenset[str] = frozenset({ATTR_UUID, ATTR_FILENAME, ATTR_PATH})


class Relationship(str, Enum):
    """Output streams a record can be routed to."""

    REQUEST_SUCCESS = "request-success"  # original record, 2xx only
    RESPONSE_SUCCESS = "response-success"  # response headers + body
    FAILURE = "failure"  # any failure, timeout or exception


def _freeze(attributes: Mapping[str, str]) -> Mapping[str, str]:
    return MappingProxyType(dict(attributes))


@dataclass(frozen=True)
class Record:
    """A pipeline record.

    ``attributes`` is a read-only view over a private copy, so two records
    never share mutable attribute storage.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attributes: Mapping[str, str] = field(default_factory=dict)
    content: bytes = b""
    penalized: bool = False

    def __post_init__(self) -> None:
        attributes = dict(self.attributes)
        attributes.setdefault(ATTR_UUID, self.id)
        object.__setattr__(self, "attributes", _freeze(attributes))

    @classmethod
    def create(
        cls,
        attributes: Mapping[str, str] | None = None,
        content: bytes = b"",
    ) -> Record:
        return cls(attributes=attributes or {}, content=content)

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.attributes.get(key, default)

    def with_attributes(self, attributes: Mapping[str, str]) -> Record:
        """Return a new version with ``attributes`` merged over the current ones."""
        merged = dict(self.attributes)
        merged.update(attributes)
        # The identity attribute follows the record, never the caller
        merged[ATTR_UUID] = self.attributes[ATTR_UUID]
        return replace(self, attributes=merged)

    def with_content(self, content: bytes) -> Record:
        return replace(self, content=content)

    def penalize(self) -> Record:
        return replace(self, penalized=True)

    def clone(self) -> Record:
        """Create a child record: same attributes, new identity, empty content."""
        child_id = str(uuid.uuid4())
        attributes = dict(self.attributes)
        attributes[ATTR_UUID] = child_id
        return Record(id=child_id, attributes=attributes)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")


@dataclass(frozen=True)
class Success:
    """2xx outcome: the original and the response-branch record."""

    original: Record
    response: Record


@dataclass(frozen=True)
class Failure:
    """Failure outcome: the penalized original and why it failed."""

    record: Record
    reason: Exception


Outcome = Success | Failure
