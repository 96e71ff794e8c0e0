"""Per-device polling engine for gpumon."""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from gpumon.device import ComputeProcesses, DeviceHandle, GraphicsProcesses, ProcessNameSource
from gpumon.history import History
from gpumon.models import DEFAULT_HISTORY_CAPACITY, FetchFailed, Sample, UtilizationSample
from gpumon.processes import ProcessEnricher
from gpumon.table import ProcessTable

logger = logging.getLogger(__name__)

MIN_INTERVAL = 0.1


@dataclass(slots=True, frozen=True)
class PollerConfig:
    """Refresh cadences (seconds) and retention for a device poller."""

    metrics_interval: float = 0.5
    process_interval: float = 1.0
    name_refresh_interval: float = 2.0
    history_capacity: int = DEFAULT_HISTORY_CAPACITY
    join_utilization: bool = True

    def __post_init__(self) -> None:
        for field_name in ("metrics_interval", "process_interval", "name_refresh_interval"):
            value = getattr(self, field_name)
            object.__setattr__(self, field_name, max(MIN_INTERVAL, value))


class Metric:
    """A history together with the device query that feeds it."""

    __slots__ = ("name", "history", "_read", "last_refresh")

    def __init__(self, name: str, history: History, read: Callable[[], float]) -> None:
        self.name = name
        self.history = history
        self._read = read
        self.last_refresh: float | None = None

    def sample(self, now: float) -> Sample:
        """Read the device once and push the result, a gap on failure."""
        try:
            value: Sample = float(self._read())
        except FetchFailed as exc:
            logger.debug("%s fetch failed: %s", self.name, exc)
            value = None
        self.history.push(value)
        self.last_refresh = now
        return value


class DevicePoller:
    """
    Polls one GPU on independent metric and process-list cadences.

    Never blocks beyond the device calls themselves and never raises
    FetchFailed from ``tick``: metric failures become gaps in the history and
    process-list failures are stored on the table.
    """

    def __init__(
        self,
        handle: DeviceHandle,
        config: PollerConfig | None = None,
        name_source: ProcessNameSource | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the DevicePoller.

        Args:
            handle: Device to poll.
            config: Cadences and retention. Defaults to PollerConfig().
            name_source: OS process name lookup shared by both tables.
            clock: Monotonic time source in seconds.

        Raises:
            FetchFailed: The device uuid cannot be read.
        """
        self._handle = handle
        self._config = config if config is not None else PollerConfig()
        self._clock = clock

        self._uuid = handle.uuid()
        try:
            self._name = handle.name()
        except FetchFailed:
            self._name = "Unknown GPU"
        try:
            self._max_memory = handle.memory_info().total
        except FetchFailed as exc:
            logger.warning("Cannot read total memory of %s: %s", self._uuid, exc)
            self._max_memory = 0

        capacity = self._config.history_capacity
        self._usage = Metric("usage", History(capacity), handle.utilization_percent)
        self._memory = Metric("memory", History(capacity), lambda: handle.memory_info().used)
        self._temperature = Metric("temperature", History(capacity), handle.temperature)

        enricher = ProcessEnricher(
            name_source,
            refresh_interval=self._config.name_refresh_interval,
            clock=clock,
        )
        self._graphics_table = ProcessTable(
            GraphicsProcesses(),
            enricher,
            refresh_interval=self._config.process_interval,
        )
        self._compute_table = ProcessTable(
            ComputeProcesses(),
            enricher,
            refresh_interval=self._config.process_interval,
        )

    @property
    def config(self) -> PollerConfig:
        """Get the poller configuration."""
        return self._config

    @property
    def uuid(self) -> str:
        return self._uuid

    @property
    def name(self) -> str:
        return self._name

    @property
    def max_memory(self) -> int:
        """Get the total device memory in bytes (0 if unknown)."""
        return self._max_memory

    @property
    def usage(self) -> History:
        """Get the utilization history (percent)."""
        return self._usage.history

    @property
    def memory(self) -> History:
        """Get the used memory history (bytes)."""
        return self._memory.history

    @property
    def temperature(self) -> History:
        """Get the temperature history (degrees Celsius)."""
        return self._temperature.history

    @property
    def graphics_table(self) -> ProcessTable:
        return self._graphics_table

    @property
    def compute_table(self) -> ProcessTable:
        return self._compute_table

    @property
    def tables(self) -> tuple[ProcessTable, ProcessTable]:
        """Get the graphics and compute tables."""
        return (self._graphics_table, self._compute_table)

    def metrics_due(self, now: float) -> bool:
        """Check whether the metric histories should be sampled."""
        last = self._usage.last_refresh
        return last is None or now - last >= self._config.metrics_interval

    def tick(self) -> None:
        """Refresh every metric and table whose interval has elapsed."""
        now = self._clock()

        if self.metrics_due(now):
            for metric in (self._usage, self._memory, self._temperature):
                metric.sample(now)

        due = [table for table in self.tables if table.is_due(now)]
        if not due:
            return

        # The device hands out each sample once; both tables join the same list.
        samples = self._fetch_utilization()
        for table in due:
            table.refresh(self._handle, now, samples)

    def _fetch_utilization(self) -> list[UtilizationSample] | None:
        if not self._config.join_utilization:
            return None
        try:
            return self._handle.process_utilization()
        except FetchFailed as exc:
            logger.debug("Process utilization unavailable: %s", exc)
            return None


class GpuMonitor:
    """
    Owns one DevicePoller per enumerated GPU.

    Devices whose identity cannot be read are skipped.
    """

    def __init__(
        self,
        handles: Iterable[DeviceHandle],
        config: PollerConfig | None = None,
        name_source: ProcessNameSource | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the GpuMonitor.

        Args:
            handles: Devices to poll, in display order.
            config: Shared poller configuration.
            name_source: Shared OS process name lookup.
            clock: Monotonic time source in seconds.
        """
        self._devices: list[DevicePoller] = []
        for index, handle in enumerate(handles):
            try:
                poller = DevicePoller(handle, config=config, name_source=name_source, clock=clock)
            except FetchFailed as exc:
                logger.warning("Skipping GPU %d: %s", index, exc)
                continue
            logger.info("Monitoring GPU %d: %s (%s)", index, poller.name, poller.uuid)
            self._devices.append(poller)

    @property
    def devices(self) -> list[DevicePoller]:
        """Get the device pollers in enumeration order."""
        return list(self._devices)

    def tick(self) -> None:
        """Tick every device poller."""
        for device in self._devices:
            device.tick()
