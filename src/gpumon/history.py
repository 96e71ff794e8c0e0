"""Bounded, most-recent-first sample history."""

from collections import deque
from collections.abc import Iterator

from gpumon.models import DEFAULT_HISTORY_CAPACITY, Sample


class History:
    """
    Fixed-capacity history of optional samples for one metric.

    Index 0 is the most recent sample. ``None`` entries are gaps (no reading
    that tick) and keep their position so charts can break the line there.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        """
        Initialize the History.

        Args:
            capacity: Maximum number of retained samples. Must be positive.
        """
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._samples: deque[Sample] = deque()

    @property
    def capacity(self) -> int:
        """Get the maximum number of retained samples."""
        return self._capacity

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(self._samples)

    def push(self, value: Sample) -> None:
        """Prepend a sample, dropping the oldest ones beyond capacity."""
        self._samples.appendleft(value)
        while len(self._samples) > self._capacity:
            self._samples.pop()

    def get(self, index: int) -> Sample:
        """Get the sample ``index`` ticks ago, or None when out of range."""
        if index < 0 or index >= len(self._samples):
            return None
        return self._samples[index]

    def latest(self) -> Sample:
        """Get the most recent sample."""
        return self.get(0)

    def trim_to(self, max_observed_index: int) -> None:
        """
        Drop samples so at most ``max_observed_index`` remain.

        Render-driven alternative to the fixed capacity: a renderer passes the
        highest index it read this frame. The poller never calls this.
        """
        while len(self._samples) > max(0, max_observed_index):
            self._samples.pop()

    def series(self, length: int) -> list[Sample]:
        """Get the newest ``length`` samples ordered oldest first."""
        newest = [self.get(i) for i in range(min(length, len(self._samples)))]
        newest.reverse()
        return newest
