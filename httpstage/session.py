"""Pipeline session interface.

RecordSession is the seam between the stage and the host pipeline: it hands
out input records, creates child records, stores content and routes records to
output relationships. MemorySession is the in-process implementation used by
the stage runner and by tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncIterable, Iterable, Mapping

import structlog

from httpstage.errors import StreamingError
from httpstage.records import Record, Relationship

logger = structlog.get_logger()


class RecordSession(ABC):
    """Abstract pipeline session.

    Implementations must be safe to share between concurrent executions on
    one event loop. Content imports must not block other executions.
    """

    @abstractmethod
    def get(self) -> Record | None:
        """Take the next input record, or None when the queue is empty."""
        ...

    @abstractmethod
    def create(self, parent: Record) -> Record:
        """Create a child of ``parent`` with copied attributes and no content."""
        ...

    def put_attribute(self, record: Record, key: str, value: str) -> Record:
        return record.with_attributes({key: value})

    def put_all_attributes(self, record: Record, attributes: Mapping[str, str]) -> Record:
        return record.with_attributes(attributes)

    @abstractmethod
    async def import_from(self, record: Record, chunks: AsyncIterable[bytes]) -> Record:
        """Replace the record's content with everything ``chunks`` yields."""
        ...

    @abstractmethod
    def transfer(self, record: Record, relationship: Relationship) -> None:
        """Route a record to an output relationship."""
        ...

    @abstractmethod
    def remove(self, record: Record) -> None:
        """Discard a record created in this session."""
        ...

    def penalize(self, record: Record) -> Record:
        return record.penalize()


class MemorySession(RecordSession):
    """In-memory session with an input queue and per-relationship outputs."""

    def __init__(self, records: Iterable[Record] = ()) -> None:
        self._queue: deque[Record] = deque(records)
        self._outputs: dict[Relationship, list[Record]] = {r: [] for r in Relationship}
        self._created: set[str] = set()
        self._removed: list[Record] = []
        self._log = logger.bind(component="memory_session")

    def enqueue(
        self,
        content: bytes = b"",
        attributes: Mapping[str, str] | None = None,
    ) -> Record:
        record = Record.create(attributes, content)
        self._queue.append(record)
        return record

    def get(self) -> Record | None:
        if not self._queue:
            return None
        return self._queue.popleft()

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def create(self, parent: Record) -> Record:
        child = parent.clone()
        self._created.add(child.id)
        return child

    async def import_from(self, record: Record, chunks: AsyncIterable[bytes]) -> Record:
        buffer = bytearray()
        try:
            async for chunk in chunks:
                buffer.extend(chunk)
        except OSError as e:
            raise StreamingError(f"Failed to import content: {e}") from e
        return record.with_content(bytes(buffer))

    def transfer(self, record: Record, relationship: Relationship) -> None:
        self._outputs[relationship].append(record)
        self._log.debug(
            "session.transfer",
            record=record.id,
            relationship=relationship.value,
        )

    def remove(self, record: Record) -> None:
        if record.id not in self._created:
            raise ValueError(f"Record {record.id} was not created in this session")
        self._created.discard(record.id)
        self._removed.append(record)

    def output(self, relationship: Relationship) -> list[Record]:
        """Records routed to ``relationship``, in transfer order."""
        return list(self._outputs[relationship])

    @property
    def removed(self) -> list[Record]:
        return list(self._removed)
