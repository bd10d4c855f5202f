"""Mutation lock and identifier allocation.

The workbook has no transactions and no row locks, so every mutating
operation runs inside one :class:`MutationLock` region that covers ID
allocation, stock movement and the multi-row commit together. The
:class:`SequenceAllocator` refuses to run outside that region: reading the
current maximum and writing the row that uses ``max + 1`` must happen under
the same acquisition.
"""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Tuple

from . import log
from .constants import ENTITY_SEQUENCES, SEQUENCE_WIDTH, DEFAULT_LOCK_WAIT_SECONDS, EntityType
from .data_manager import WorkbookStore
from .errors import Busy


class MutationLock:
    """Single process-wide critical section with a bounded wait.

    Acquisition is not re-entrant: a thread that already holds the region and
    asks for it again gets a :class:`RuntimeError` instead of a deadlock.
    """

    def __init__(self, wait_seconds: float = DEFAULT_LOCK_WAIT_SECONDS) -> None:
        self.wait_seconds = wait_seconds
        self._lock = threading.Lock()
        self._owner: Optional[int] = None
        self._operation: Optional[str] = None

    @property
    def current_operation(self) -> Optional[str]:
        return self._operation

    def held_by_current_thread(self) -> bool:
        return self._owner == threading.get_ident()

    def require_held(self) -> None:
        if not self.held_by_current_thread():
            raise RuntimeError("Mutation lock must be held by the calling thread")

    @contextmanager
    def hold(self, operation: str = "mutation") -> Iterator[None]:
        """Run the ``with`` body inside the critical section.

        Raises:
            RuntimeError: If the calling thread already holds the lock.
            Busy: If the lock is not free within ``wait_seconds``.
        """

        if self.held_by_current_thread():
            raise RuntimeError(
                f"Nested acquisition of the mutation lock by '{operation}' "
                f"while '{self._operation}' holds it")

        if not self._lock.acquire(timeout=self.wait_seconds):
            log.warning(
                "Lock wait of %ss exceeded for '%s' (held by '%s')",
                self.wait_seconds,
                operation,
                self._operation,
            )
            raise Busy(f"System busy, '{operation}' could not start; try again shortly")

        self._owner = threading.get_ident()
        self._operation = operation
        log.debug("Mutation lock acquired for '%s'", operation)
        try:
            yield
        finally:
            self._owner = None
            self._operation = None
            self._lock.release()
            log.debug("Mutation lock released by '%s'", operation)


class SequenceAllocator:
    """Issue ``PREFIX-000123`` identifiers, one higher than any seen before.

    The counter is derived from the rows already in the entity's collection,
    so no separate counter sheet is needed. Values handed out in this process
    are remembered as well, which keeps an ID that was allocated for a commit
    that later failed from ever being issued twice. Gaps are acceptable,
    duplicates are not.
    """

    def __init__(self, store: WorkbookStore, lock: MutationLock, *, width: int = SEQUENCE_WIDTH) -> None:
        self.store = store
        self.lock = lock
        self.width = width
        self._last_issued: Dict[str, int] = {}
        self._scanned: Dict[Tuple[object, str], Tuple[int, int]] = {}

    def next_id(self, entity_type: EntityType, prefix: Optional[str] = None) -> str:
        """Return the next identifier for ``entity_type``.

        Args:
            entity_type (EntityType): Entity whose collection is scanned.
            prefix (str | None): Overrides the registered prefix.

        Raises:
            RuntimeError: If the caller does not hold the mutation lock.
        """

        self.lock.require_held()
        sequence = ENTITY_SEQUENCES[entity_type]
        prefix = prefix or sequence.prefix

        highest = max(
            self.highest_suffix(sequence.sheet, sequence.key_column, prefix),
            self._last_issued.get(prefix, 0),
        )
        issued = highest + 1
        self._last_issued[prefix] = issued
        identifier = f"{prefix}-{issued:0{self.width}d}"
        log.debug("Allocated %s identifier '%s'", entity_type.value, identifier)
        return identifier

    def highest_suffix(self, collection, key_column: str, prefix: str) -> int:
        """Largest numeric suffix among ``prefix-N`` keys; malformed keys are skipped.

        Only rows appended since the previous call for the same prefix are read.
        """

        pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
        slot = (collection, prefix)
        start_row, highest = self._scanned.get(slot, (2, 0))
        values, next_row = self.store.key_values(collection, key_column, start_row=start_row)
        for value in values:
            if value is None:
                continue
            match = pattern.match(str(value).strip())
            if match is None:
                continue
            highest = max(highest, int(match.group(1)))
        self._scanned[slot] = (next_row, highest)
        return highest
