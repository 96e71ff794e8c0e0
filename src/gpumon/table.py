"""Sortable GPU process tables."""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from functools import cmp_to_key

from gpumon.device import DeviceHandle, ProcessFetcher
from gpumon.models import (
    FetchFailed,
    GpumonError,
    ProcessRecord,
    Uninitialized,
    UtilizationSample,
)
from gpumon.processes import ProcessEnricher

logger = logging.getLogger(__name__)


class Column(Enum):
    """Sortable columns of a process table."""

    PID = "pid"
    NAME = "name"
    MEMORY = "memory"


class Direction(Enum):
    """Sort direction."""

    ASCENDING = "ascending"
    DESCENDING = "descending"

    def flipped(self) -> "Direction":
        """Get the opposite direction."""
        if self is Direction.ASCENDING:
            return Direction.DESCENDING
        return Direction.ASCENDING


@dataclass(slots=True)
class SortSpec:
    """Current sort column and direction of a table."""

    column: Column = Column.MEMORY
    direction: Direction = Direction.DESCENDING

    def click(self, column: Column) -> None:
        """Flip direction on the active column, otherwise sort ascending by ``column``."""
        if column == self.column:
            self.direction = self.direction.flipped()
        else:
            self.column = column
            self.direction = Direction.ASCENDING


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def compare_pid(a: ProcessRecord, b: ProcessRecord) -> int:
    return _cmp(a.pid, b.pid)


def compare_name(a: ProcessRecord, b: ProcessRecord) -> int:
    return _cmp(a.name, b.name)


def compare_memory(a: ProcessRecord, b: ProcessRecord) -> int:
    """Numeric compare where an unavailable figure is greater than any used amount."""
    if a.used_gpu_memory is None and b.used_gpu_memory is None:
        return 0
    if a.used_gpu_memory is None:
        return 1
    if b.used_gpu_memory is None:
        return -1
    return _cmp(a.used_gpu_memory, b.used_gpu_memory)


COMPARATORS: dict[Column, Callable[[ProcessRecord, ProcessRecord], int]] = {
    Column.PID: compare_pid,
    Column.NAME: compare_name,
    Column.MEMORY: compare_memory,
}


def sorted_view(records: Sequence[ProcessRecord], sort: SortSpec) -> list[ProcessRecord]:
    """
    Sort records by the active column.

    Descending order swaps the operands handed to the comparator instead of
    negating its result, so ties resolve the same way in both directions.
    """
    compare = COMPARATORS[sort.column]
    if sort.direction is Direction.ASCENDING:
        key = cmp_to_key(compare)
    else:
        key = cmp_to_key(lambda a, b: compare(b, a))
    return sorted(records, key=key)


class ProcessTable:
    """
    One process list of a device (graphics or compute) with its sort state.

    The snapshot is replaced wholesale on every refresh. A failed refresh
    stores the error, which ``sorted_view`` raises until the next success.
    """

    def __init__(
        self,
        fetcher: ProcessFetcher,
        enricher: ProcessEnricher,
        refresh_interval: float = 1.0,
    ) -> None:
        """
        Initialize the ProcessTable.

        Args:
            fetcher: Which process list to query from the device.
            enricher: Joins raw processes with OS names.
            refresh_interval: Minimum seconds between device queries.
        """
        self._fetcher = fetcher
        self._enricher = enricher
        self._refresh_interval = refresh_interval
        self._sort = SortSpec()
        self._snapshot: list[ProcessRecord] | GpumonError = Uninitialized(
            "process list has not been fetched yet"
        )
        self._last_refresh: float | None = None

    @property
    def label(self) -> str:
        """Get the table label (e.g. 'Graphics')."""
        return self._fetcher.label

    @property
    def sort(self) -> SortSpec:
        """Get the mutable sort state."""
        return self._sort

    @property
    def last_refresh(self) -> float | None:
        """Get the clock time of the last refresh, if any."""
        return self._last_refresh

    def is_due(self, now: float) -> bool:
        """Check whether the refresh interval has elapsed."""
        return self._last_refresh is None or now - self._last_refresh >= self._refresh_interval

    def refresh(
        self,
        handle: DeviceHandle,
        now: float,
        utilization_samples: list[UtilizationSample] | None = None,
    ) -> bool:
        """
        Query the device if the table is due.

        Args:
            handle: Device to query.
            now: Current clock time in seconds.
            utilization_samples: Per-process utilization to join, shared by
                every table of the device for this tick.

        Returns:
            True when a query was made.
        """
        if not self.is_due(now):
            return False

        self._last_refresh = now
        try:
            raw = self._fetcher.fetch(handle)
        except FetchFailed as exc:
            logger.debug("%s process list fetch failed: %s", self.label, exc)
            self._snapshot = exc
            return True

        self._snapshot = self._enricher.enrich(raw, utilization_samples)
        return True

    def sorted_view(self) -> list[ProcessRecord]:
        """
        Get the current records in sort order.

        Raises:
            FetchFailed: The last refresh failed.
            Uninitialized: No refresh has happened yet.
        """
        if isinstance(self._snapshot, GpumonError):
            # Drop the previous traceback so repeated reads don't grow it.
            raise self._snapshot.with_traceback(None)
        return sorted_view(self._snapshot, self._sort)
