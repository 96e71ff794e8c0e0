"""Data models and exceptions for gpumon."""

from dataclasses import dataclass

DEFAULT_HISTORY_CAPACITY = 5000

# Name shown when the OS has no entry for a GPU process.
UNKNOWN_PROCESS_NAME = "Unknown"

Sample = float | None


class GpumonError(Exception):
    """Base exception for all gpumon errors."""


class FetchFailed(GpumonError):
    """A device query failed (driver error, permission, device removed)."""


class Uninitialized(GpumonError):
    """No refresh has completed yet."""


@dataclass(slots=True, frozen=True)
class MemoryInfo:
    """Device memory usage in bytes."""

    used: int
    total: int


@dataclass(slots=True, frozen=True)
class RawProcess:
    """A process as reported by the device, before enrichment."""

    pid: int
    used_gpu_memory: int | None  # None when the driver cannot report it


@dataclass(slots=True, frozen=True)
class UtilizationSample:
    """Per-process GPU utilization reported by the device."""

    pid: int
    sm_util: int
    timestamp: int = 0  # Device clock, microseconds


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Immutable, enriched view of a GPU process."""

    pid: int
    name: str
    used_gpu_memory: int | None  # Bytes, None = unavailable
    gpu_utilization_percent: int | None = None

    @property
    def memory_available(self) -> bool:
        """Whether the driver reported a memory figure for this process."""
        return self.used_gpu_memory is not None
