"""NVIDIA device access through NVML (pynvml)."""

import logging
from collections.abc import Callable, Iterator
from typing import TypeVar

import pynvml

from gpumon.models import FetchFailed, MemoryInfo, RawProcess, UtilizationSample

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _decode(value: str | bytes) -> str:
    # Older pynvml releases return bytes for names and uuids.
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _call(func: Callable[..., T], *args) -> T:
    """Call an NVML function, re-raising NVMLError as FetchFailed."""
    try:
        return func(*args)
    except pynvml.NVMLError as exc:
        raise FetchFailed(f"{getattr(func, '__name__', 'nvml')}: {exc}") from exc


def _raw_processes(infos) -> list[RawProcess]:
    # pynvml reports unavailable memory as None.
    return [RawProcess(pid=int(info.pid), used_gpu_memory=info.usedGpuMemory) for info in infos]


class NvmlDevice:
    """DeviceHandle backed by an NVML device handle."""

    def __init__(self, handle) -> None:
        self._handle = handle
        self._last_utilization_timestamp = 0

    def uuid(self) -> str:
        return _decode(_call(pynvml.nvmlDeviceGetUUID, self._handle))

    def name(self) -> str:
        return _decode(_call(pynvml.nvmlDeviceGetName, self._handle))

    def utilization_percent(self) -> float:
        return float(_call(pynvml.nvmlDeviceGetUtilizationRates, self._handle).gpu)

    def memory_info(self) -> MemoryInfo:
        info = _call(pynvml.nvmlDeviceGetMemoryInfo, self._handle)
        return MemoryInfo(used=int(info.used), total=int(info.total))

    def temperature(self) -> float:
        return float(
            _call(pynvml.nvmlDeviceGetTemperature, self._handle, pynvml.NVML_TEMPERATURE_GPU)
        )

    def running_graphics_processes(self) -> list[RawProcess]:
        return _raw_processes(_call(pynvml.nvmlDeviceGetGraphicsRunningProcesses, self._handle))

    def running_compute_processes(self) -> list[RawProcess]:
        return _raw_processes(_call(pynvml.nvmlDeviceGetComputeRunningProcesses, self._handle))

    def process_utilization(self) -> list[UtilizationSample]:
        """
        Get per-process SM utilization since the previous call.

        NVML returns only samples newer than the timestamp passed in, so the
        newest timestamp seen is remembered between calls. No new samples
        (an idle GPU) is an empty list, not an error.
        """
        try:
            samples = pynvml.nvmlDeviceGetProcessUtilization(
                self._handle, self._last_utilization_timestamp
            )
        except pynvml.NVMLError_NotFound:
            return []
        except pynvml.NVMLError as exc:
            raise FetchFailed(f"nvmlDeviceGetProcessUtilization: {exc}") from exc

        result: list[UtilizationSample] = []
        for sample in samples:
            self._last_utilization_timestamp = max(
                self._last_utilization_timestamp, int(sample.timeStamp)
            )
            result.append(
                UtilizationSample(
                    pid=int(sample.pid),
                    sm_util=int(sample.smUtil),
                    timestamp=int(sample.timeStamp),
                )
            )
        return result


class NvmlBackend:
    """
    Owns the NVML session and enumerates devices.

    Use as a context manager: NVML is initialized on enter and shut down on
    exit.
    """

    def __init__(self) -> None:
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def open(self) -> None:
        """Initialize NVML."""
        if self._initialized:
            return
        _call(pynvml.nvmlInit)
        self._initialized = True
        logger.info("NVML initialized")

    def close(self) -> None:
        """Shut NVML down."""
        if not self._initialized:
            return
        self._initialized = False
        try:
            _call(pynvml.nvmlShutdown)
        except FetchFailed as exc:
            logger.warning("NVML shutdown failed: %s", exc)
        else:
            logger.info("NVML shut down")

    def devices(self) -> Iterator[NvmlDevice]:
        """Yield a handle for every GPU, in index order, skipping unreadable ones."""
        count = _call(pynvml.nvmlDeviceGetCount)
        for index in range(count):
            try:
                handle = _call(pynvml.nvmlDeviceGetHandleByIndex, index)
            except FetchFailed as exc:
                logger.warning("Skipping GPU %d: %s", index, exc)
                continue
            yield NvmlDevice(handle)

    def __enter__(self) -> "NvmlBackend":
        self.open()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
