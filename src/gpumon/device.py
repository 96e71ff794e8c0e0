"""Capabilities gpumon consumes from the hardware and the OS."""

from typing import Protocol

from gpumon.models import MemoryInfo, RawProcess, UtilizationSample


class DeviceHandle(Protocol):
    """
    A single GPU. Every query raises FetchFailed when the device cannot answer.
    """

    def uuid(self) -> str: ...

    def name(self) -> str: ...

    def utilization_percent(self) -> float: ...

    def memory_info(self) -> MemoryInfo: ...

    def temperature(self) -> float: ...

    def running_graphics_processes(self) -> list[RawProcess]: ...

    def running_compute_processes(self) -> list[RawProcess]: ...

    def process_utilization(self) -> list[UtilizationSample]: ...


class ProcessNameSource(Protocol):
    """Lookup table from pid to OS process name."""

    def refresh(self) -> None: ...

    def name_of(self, pid: int) -> str | None: ...


class ProcessFetcher(Protocol):
    """Strategy choosing which process list a table shows."""

    label: str

    def fetch(self, handle: DeviceHandle) -> list[RawProcess]: ...


class GraphicsProcesses:
    """Processes holding a graphics context on the device."""

    label = "Graphics"

    def fetch(self, handle: DeviceHandle) -> list[RawProcess]:
        return handle.running_graphics_processes()


class ComputeProcesses:
    """Processes holding a compute context on the device."""

    label = "Compute"

    def fetch(self, handle: DeviceHandle) -> list[RawProcess]:
        return handle.running_compute_processes()
