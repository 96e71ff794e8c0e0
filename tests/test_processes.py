"""Tests for the process enricher and the psutil name source."""

import os

from conftest import FakeClock, FakeNameSource

from gpumon.models import ProcessRecord, RawProcess, UtilizationSample
from gpumon.processes import ProcessEnricher, PsutilNameSource


class TestProcessEnricher:
    """Tests for ProcessEnricher."""

    def test_filters_sentinel_pid(self, names, clock):
        """Test pid 0 is dropped and other processes are kept."""
        enricher = ProcessEnricher(names, clock=clock)

        records = enricher.enrich(
            [RawProcess(pid=0, used_gpu_memory=100), RawProcess(pid=5, used_gpu_memory=200)]
        )

        assert len(records) == 1
        assert records[0].pid == 5

    def test_resolves_names(self, names, clock):
        """Test names come from the name source."""
        enricher = ProcessEnricher(names, clock=clock)

        records = enricher.enrich(
            [RawProcess(pid=5, used_gpu_memory=1), RawProcess(pid=7, used_gpu_memory=None)]
        )

        assert records == [
            ProcessRecord(pid=5, name="python", used_gpu_memory=1),
            ProcessRecord(pid=7, name="Xorg", used_gpu_memory=None),
        ]

    def test_unknown_name_fallback(self, clock):
        """Test a pid missing from the name source is named 'Unknown'."""
        enricher = ProcessEnricher(FakeNameSource(), clock=clock)

        records = enricher.enrich([RawProcess(pid=5, used_gpu_memory=1)])

        assert records[0].name == "Unknown"

    def test_keeps_input_order(self, names, clock):
        """Test records come out in device order."""
        enricher = ProcessEnricher(names, clock=clock)
        raw = [RawProcess(pid=pid, used_gpu_memory=None) for pid in (9, 5, 7)]

        assert [record.pid for record in enricher.enrich(raw)] == [9, 5, 7]

    def test_name_cache_refresh_is_time_gated(self, names):
        """Test the name source refreshes at most once per interval."""
        clock = FakeClock()
        enricher = ProcessEnricher(names, refresh_interval=2.0, clock=clock)
        raw = [RawProcess(pid=5, used_gpu_memory=1)]

        enricher.enrich(raw)
        assert names.refreshes == 1

        clock.advance(1.0)
        enricher.enrich(raw)
        assert names.refreshes == 1

        clock.advance(1.0)
        enricher.enrich(raw)
        assert names.refreshes == 2

    def test_name_change_visible_after_refresh(self, clock):
        """Test a renamed process shows up once the name table is refreshed."""
        source = FakeNameSource({5: "old"})
        enricher = ProcessEnricher(source, clock=clock)
        raw = [RawProcess(pid=5, used_gpu_memory=1)]
        assert enricher.enrich(raw)[0].name == "old"

        source.names[5] = "new"
        assert enricher.enrich(raw)[0].name == "old"

        clock.advance(2.0)
        assert enricher.enrich(raw)[0].name == "new"

    def test_utilization_join(self, names, clock):
        """Test utilization samples are joined by pid, defaulting to 0."""
        enricher = ProcessEnricher(names, clock=clock)
        raw = [RawProcess(pid=5, used_gpu_memory=1), RawProcess(pid=7, used_gpu_memory=1)]

        records = enricher.enrich(raw, [UtilizationSample(pid=5, sm_util=63)])

        assert records[0].gpu_utilization_percent == 63
        assert records[1].gpu_utilization_percent == 0

    def test_newest_sample_per_pid_wins(self, names, clock):
        """Test the most recent of several samples for one pid is used."""
        enricher = ProcessEnricher(names, clock=clock)
        samples = [
            UtilizationSample(pid=5, sm_util=90, timestamp=2000),
            UtilizationSample(pid=5, sm_util=10, timestamp=1000),
            UtilizationSample(pid=7, sm_util=20, timestamp=500),
            UtilizationSample(pid=7, sm_util=40, timestamp=1500),
        ]

        records = enricher.enrich(
            [RawProcess(pid=5, used_gpu_memory=1), RawProcess(pid=7, used_gpu_memory=1)], samples
        )

        assert [r.gpu_utilization_percent for r in records] == [90, 40]

    def test_no_utilization_samples(self, names, clock):
        """Test utilization stays None when no samples are supplied."""
        enricher = ProcessEnricher(names, clock=clock)

        records = enricher.enrich([RawProcess(pid=5, used_gpu_memory=1)])

        assert records[0].gpu_utilization_percent is None

    def test_empty_input(self, names, clock):
        """Test an empty process list yields no records."""
        enricher = ProcessEnricher(names, clock=clock)
        assert enricher.enrich([]) == []

    def test_default_name_source_is_psutil(self):
        """Test the enricher defaults to the psutil name source."""
        enricher = ProcessEnricher()
        assert isinstance(enricher.name_source, PsutilNameSource)


class TestPsutilNameSource:
    """Tests for PsutilNameSource against the real process table."""

    def test_knows_current_process(self):
        """Test the running test process can be looked up by pid."""
        source = PsutilNameSource()
        source.refresh()

        name = source.name_of(os.getpid())
        assert isinstance(name, str)
        assert name

    def test_empty_before_refresh(self):
        """Test lookups miss until the first refresh."""
        source = PsutilNameSource()
        assert source.name_of(os.getpid()) is None

    def test_unknown_pid(self):
        """Test an unused pid resolves to None."""
        source = PsutilNameSource()
        source.refresh()
        assert source.name_of(2**31 - 1) is None
