"""Join GPU process lists with OS process metadata."""

import logging
import time
from collections.abc import Callable, Iterable

import psutil

from gpumon.device import ProcessNameSource
from gpumon.models import (
    UNKNOWN_PROCESS_NAME,
    ProcessRecord,
    RawProcess,
    UtilizationSample,
)

logger = logging.getLogger(__name__)

# pid 0 is a kernel/system aggregate with no single owning process.
SENTINEL_PID = 0


class PsutilNameSource:
    """
    Process name table built from psutil.

    Handles NoSuchProcess, AccessDenied and ZombieProcess by skipping the
    process, since it may die between listing and reading.
    """

    def __init__(self) -> None:
        self._names: dict[int, str] = {}

    def refresh(self) -> None:
        """Rebuild the pid -> name table from the running processes."""
        names: dict[int, str] = {}
        for proc in psutil.process_iter(attrs=["pid", "name"]):
            try:
                info = proc.info
                name = info.get("name")
                if name:
                    names[info["pid"]] = name
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        self._names = names
        logger.debug("Refreshed process name table: %d entries", len(names))

    def name_of(self, pid: int) -> str | None:
        """Get the cached name of ``pid``, if known."""
        return self._names.get(pid)


class ProcessEnricher:
    """
    Turns raw device process lists into ProcessRecords.

    The name source is refreshed at most once every ``refresh_interval``
    seconds, independently of how often ``enrich`` is called.
    """

    def __init__(
        self,
        name_source: ProcessNameSource | None = None,
        refresh_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the ProcessEnricher.

        Args:
            name_source: Where process names come from. Defaults to psutil.
            refresh_interval: Minimum seconds between name table refreshes.
            clock: Monotonic time source in seconds.
        """
        self._name_source = name_source if name_source is not None else PsutilNameSource()
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._last_refresh: float | None = None

    @property
    def name_source(self) -> ProcessNameSource:
        """Get the process name source."""
        return self._name_source

    def _refresh_names_if_due(self) -> None:
        now = self._clock()
        if self._last_refresh is None or now - self._last_refresh >= self._refresh_interval:
            self._name_source.refresh()
            self._last_refresh = now

    def enrich(
        self,
        raw_processes: Iterable[RawProcess],
        utilization_samples: Iterable[UtilizationSample] | None = None,
    ) -> list[ProcessRecord]:
        """
        Build enriched records, skipping the pid 0 sentinel.

        Args:
            raw_processes: Processes reported by the device.
            utilization_samples: Optional per-process utilization. When given,
                processes without a sample get 0%.

        Returns:
            One record per non-sentinel process, in input order.
        """
        self._refresh_names_if_due()

        utilization: dict[int, int] | None = None
        if utilization_samples is not None:
            utilization = {}
            newest: dict[int, int] = {}
            # A pid can have several samples; keep the most recent one.
            for sample in utilization_samples:
                if sample.pid not in newest or sample.timestamp >= newest[sample.pid]:
                    newest[sample.pid] = sample.timestamp
                    utilization[sample.pid] = sample.sm_util

        records: list[ProcessRecord] = []
        for raw in raw_processes:
            if raw.pid == SENTINEL_PID:
                continue

            name = self._name_source.name_of(raw.pid) or UNKNOWN_PROCESS_NAME
            percent = None if utilization is None else utilization.get(raw.pid, 0)
            records.append(
                ProcessRecord(
                    pid=raw.pid,
                    name=name,
                    used_gpu_memory=raw.used_gpu_memory,
                    gpu_utilization_percent=percent,
                )
            )

        return records
