"""Shared fakes for gpumon tests."""

from types import SimpleNamespace

import pynvml
import pytest

from gpumon.models import FetchFailed, MemoryInfo, RawProcess, UtilizationSample


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeNameSource:
    """
    ProcessNameSource backed by a dict, counting refreshes.

    Like the psutil source, lookups see ``names`` as of the last refresh.
    """

    def __init__(self, names: dict[int, str] | None = None) -> None:
        self.names = dict(names or {})
        self.refreshes = 0
        self._snapshot: dict[int, str] = {}

    def refresh(self) -> None:
        self.refreshes += 1
        self._snapshot = dict(self.names)

    def name_of(self, pid: int) -> str | None:
        return self._snapshot.get(pid)


class FakeDevice:
    """
    DeviceHandle with settable readings.

    Set an attribute to an exception instance to make that query fail.
    """

    def __init__(self, uuid: str = "GPU-0000", name: str = "Fake GPU") -> None:
        self._uuid = uuid
        self._name = name
        self.utilization: float | Exception = 42.0
        self.memory: MemoryInfo | Exception = MemoryInfo(used=1024**3, total=8 * 1024**3)
        self.temp: float | Exception = 55.0
        self.graphics: list[RawProcess] | Exception = []
        self.compute: list[RawProcess] | Exception = []
        self.samples: list[UtilizationSample] | Exception = FetchFailed("not supported")
        self.calls: dict[str, int] = {}

    def _answer(self, key: str, value):
        self.calls[key] = self.calls.get(key, 0) + 1
        if isinstance(value, Exception):
            raise value
        return value

    def uuid(self) -> str:
        return self._uuid

    def name(self) -> str:
        return self._name

    def utilization_percent(self) -> float:
        return self._answer("utilization", self.utilization)

    def memory_info(self) -> MemoryInfo:
        return self._answer("memory", self.memory)

    def temperature(self) -> float:
        return self._answer("temperature", self.temp)

    def running_graphics_processes(self) -> list[RawProcess]:
        return self._answer("graphics", self.graphics)

    def running_compute_processes(self) -> list[RawProcess]:
        return self._answer("compute", self.compute)

    def process_utilization(self) -> list[UtilizationSample]:
        return self._answer("samples", self.samples)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def names() -> FakeNameSource:
    return FakeNameSource({5: "python", 7: "Xorg", 9: "blender"})


def nvml_sample(pid: int, timestamp: int, sm_util: int) -> SimpleNamespace:
    return SimpleNamespace(pid=pid, timeStamp=timestamp, smUtil=sm_util, memUtil=0)


@pytest.fixture
def fake_nvml(monkeypatch):
    """
    Patch the NVML calls gpumon uses with canned answers.

    Process utilization behaves like the driver: only samples newer than
    the timestamp passed in are returned, and NOT_FOUND is raised when
    there are none.
    """
    state = SimpleNamespace(
        initialized=False,
        shutdowns=0,
        utilization_timestamps=[],
        samples=[nvml_sample(11, 1000, 30), nvml_sample(12, 1500, 5)],
        graphics=[
            SimpleNamespace(pid=11, usedGpuMemory=1024),
            SimpleNamespace(pid=12, usedGpuMemory=None),
        ],
        compute=[],
    )

    def init():
        state.initialized = True

    def shutdown():
        state.shutdowns += 1

    def process_utilization(handle, last_seen):
        state.utilization_timestamps.append(last_seen)
        newer = [sample for sample in state.samples if sample.timeStamp > last_seen]
        if not newer:
            raise pynvml.NVMLError(pynvml.NVML_ERROR_NOT_FOUND)
        return newer

    monkeypatch.setattr(pynvml, "nvmlInit", init)
    monkeypatch.setattr(pynvml, "nvmlShutdown", shutdown)
    monkeypatch.setattr(pynvml, "nvmlDeviceGetCount", lambda: 2)
    monkeypatch.setattr(pynvml, "nvmlDeviceGetHandleByIndex", lambda index: f"handle-{index}")
    monkeypatch.setattr(pynvml, "nvmlDeviceGetUUID", lambda handle: f"GPU-{handle}")
    monkeypatch.setattr(pynvml, "nvmlDeviceGetName", lambda handle: b"NVIDIA Fake")
    monkeypatch.setattr(
        pynvml, "nvmlDeviceGetUtilizationRates", lambda handle: SimpleNamespace(gpu=37, memory=10)
    )
    monkeypatch.setattr(
        pynvml,
        "nvmlDeviceGetMemoryInfo",
        lambda handle: SimpleNamespace(used=2048, total=4096, free=2048),
    )
    monkeypatch.setattr(pynvml, "nvmlDeviceGetTemperature", lambda handle, sensor: 61)
    monkeypatch.setattr(
        pynvml, "nvmlDeviceGetGraphicsRunningProcesses", lambda handle: list(state.graphics)
    )
    monkeypatch.setattr(
        pynvml, "nvmlDeviceGetComputeRunningProcesses", lambda handle: list(state.compute)
    )
    monkeypatch.setattr(pynvml, "nvmlDeviceGetProcessUtilization", process_utilization)
    return state
