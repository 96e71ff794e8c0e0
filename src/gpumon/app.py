"""gpumon - Main Textual application."""

import logging
import os

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.css.query import NoMatches
from textual.widgets import DataTable, Footer, Sparkline, Static

from gpumon.history import History
from gpumon.models import FetchFailed, GpumonError, ProcessRecord
from gpumon.nvml import NvmlBackend
from gpumon.poller import DevicePoller, GpuMonitor
from gpumon.table import Column, Direction, ProcessTable

logger = logging.getLogger(__name__)

# Number of samples drawn by each sparkline.
CHART_SAMPLES = 120

COLUMN_KEYS = {
    "pid": Column.PID,
    "name": Column.NAME,
    "memory": Column.MEMORY,
}


def format_bytes(size: float) -> str:
    """Format bytes as KiB, MiB or GiB."""
    if size > 1024**3:
        return f"{size / 1024**3:.2f}GiB"
    if size > 1024**2:
        return f"{size / 1024**2:.2f}MiB"
    return f"{size / 1024:.2f}KiB"


def format_percent(value: float) -> str:
    return f"{value:.0f}%"


def format_temperature(value: float) -> str:
    return f"{value:.0f}°"


class MetricChart(Vertical):
    """Sparkline of one metric history with its latest value as title."""

    DEFAULT_CSS = """
    MetricChart {
        height: 5;
        width: 1fr;
        border: solid $primary;
        padding: 0 1;
    }

    MetricChart Sparkline {
        height: 3;
    }
    """

    def __init__(self, title: str, formatter, *args, **kwargs) -> None:
        """Initialize MetricChart."""
        super().__init__(*args, **kwargs)
        self._title = title
        self._formatter = formatter

    def compose(self) -> ComposeResult:
        """Compose the chart."""
        yield Static(f"{self._title} (-)", classes="chart-title")
        yield Sparkline([], summary_function=max)

    def update_history(self, history: History) -> None:
        """Redraw from a history; gaps are drawn as zero."""
        latest = history.latest()
        label = "-" if latest is None else self._formatter(latest)
        try:
            self.query_one(".chart-title", Static).update(f"{self._title} ({label})")
            self.query_one(Sparkline).data = [
                0.0 if value is None else value for value in history.series(CHART_SAMPLES)
            ]
        except NoMatches:
            pass  # Not mounted yet


class ProcessTableView(Container):
    """DataTable view of a device process table with clickable headers."""

    DEFAULT_CSS = """
    ProcessTableView {
        height: 1fr;
        border: solid $primary;
    }
    """

    ERROR_TEXT = "Error fetching processes"

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ProcessTableView."""
        super().__init__(*args, **kwargs)
        self._table: ProcessTable | None = None
        self._rendered_sort: tuple[Column, Direction] | None = None
        self._current_pids: list[int] = []
        self._showing_error = False

    @property
    def table(self) -> ProcessTable | None:
        """Get the process table being shown."""
        return self._table

    @property
    def showing_error(self) -> bool:
        return self._showing_error

    def compose(self) -> ComposeResult:
        """Compose the process table."""
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"

    def show(self, table: ProcessTable) -> None:
        """Switch to another process table."""
        self._table = table
        self._rendered_sort = None
        self.border_title = f"{table.label} processes"
        self.update_processes()

    def _column_label(self, text: str, column: Column) -> str:
        if self._table is None or self._table.sort.column != column:
            return text
        arrow = "▲" if self._table.sort.direction is Direction.ASCENDING else "▼"
        return f"{arrow} {text}"

    def _ensure_columns(self, data_table: DataTable, table: ProcessTable) -> None:
        sort = (table.sort.column, table.sort.direction)
        if sort == self._rendered_sort:
            data_table.clear()
            return

        data_table.clear(columns=True)
        data_table.add_column(self._column_label("PID", Column.PID), key="pid", width=10)
        data_table.add_column(self._column_label("Process", Column.NAME), key="name", width=40)
        data_table.add_column(self._column_label("Memory", Column.MEMORY), key="memory", width=14)
        data_table.add_column("GPU%", key="gpu", width=6)
        self._rendered_sort = sort

    def update_processes(self) -> None:
        """Redraw rows from the table's current sorted view."""
        if self._table is None:
            return
        try:
            data_table = self.query_one("#process-table", DataTable)
        except NoMatches:
            return  # Not mounted yet

        self._ensure_columns(data_table, self._table)
        try:
            records = self._table.sorted_view()
        except GpumonError as exc:
            logger.debug("Showing error row for %s: %s", self._table.label, exc)
            self._current_pids = []
            self._showing_error = True
            data_table.add_row(self.ERROR_TEXT, "", "", "", key="error")
            return

        self._showing_error = False
        self._current_pids = [record.pid for record in records]
        for record in records:
            self._add_row(data_table, record)

    def _add_row(self, data_table: DataTable, record: ProcessRecord) -> None:
        if record.used_gpu_memory is None:
            memory = "Unavailable"
        else:
            memory = format_bytes(record.used_gpu_memory)
        utilization = record.gpu_utilization_percent
        data_table.add_row(
            str(record.pid),
            record.name,
            memory,
            "" if utilization is None else f"{utilization}%",
            key=str(record.pid),
        )

    def on_data_table_header_selected(self, event: DataTable.HeaderSelected) -> None:
        """Apply the click toggle rule to the selected column."""
        column = COLUMN_KEYS.get(event.column_key.value)
        if column is None or self._table is None:
            return
        self._table.sort.click(column)
        self.update_processes()


class DevicePanel(Container):
    """Charts and process table of the selected GPU."""

    DEFAULT_CSS = """
    DevicePanel {
        height: 1fr;
    }

    #device-title {
        height: 1;
        padding: 0 1;
        background: $surface;
    }

    DevicePanel Horizontal {
        height: auto;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize DevicePanel."""
        super().__init__(*args, **kwargs)
        self._device: DevicePoller | None = None
        self._show_compute = False

    @property
    def device(self) -> DevicePoller | None:
        return self._device

    @property
    def show_compute(self) -> bool:
        """Whether the compute table is shown instead of the graphics one."""
        return self._show_compute

    def compose(self) -> ComposeResult:
        """Compose the device panel layout."""
        yield Static("No GPU", id="device-title")
        yield Horizontal(
            MetricChart("GPU Usage", format_percent, id="usage-chart"),
            MetricChart("Memory", format_bytes, id="memory-chart"),
            MetricChart("Temperature", format_temperature, id="temperature-chart"),
        )
        yield ProcessTableView()

    def show(self, device: DevicePoller) -> None:
        """Switch the panel to another device."""
        self._device = device
        self.query_one("#device-title", Static).update(
            f"{device.name}  {format_bytes(device.max_memory)} total"
        )
        table = self._current_table()
        if table is not None:
            self.query_one(ProcessTableView).show(table)
        self.refresh_data()

    def toggle_table(self) -> ProcessTable | None:
        """Switch between the graphics and compute tables."""
        self._show_compute = not self._show_compute
        table = self._current_table()
        if table is None:
            return None
        self.query_one(ProcessTableView).show(table)
        return table

    def _current_table(self) -> ProcessTable | None:
        if self._device is None:
            return None
        if self._show_compute:
            return self._device.compute_table
        return self._device.graphics_table

    def refresh_data(self) -> None:
        """Redraw charts and the process table from the device state."""
        if self._device is None:
            return
        self.query_one("#usage-chart", MetricChart).update_history(self._device.usage)
        self.query_one("#memory-chart", MetricChart).update_history(self._device.memory)
        self.query_one("#temperature-chart", MetricChart).update_history(self._device.temperature)
        self.query_one(ProcessTableView).update_processes()


class GpumonApp(App):
    """Main gpumon application."""

    TITLE = "gpumon"
    SUB_TITLE = "GPU Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("n", "next_device", "Next GPU"),
        ("t", "toggle_table", "Graphics/Compute"),
    ]

    def __init__(self, monitor: GpuMonitor | None = None, refresh_rate: float = 0.25) -> None:
        """
        Initialize the GpumonApp.

        Args:
            monitor: Devices to show. When omitted, NVML is opened on mount.
            refresh_rate: How often to tick the pollers (in seconds).
        """
        super().__init__()
        self._monitor = monitor
        self._backend: NvmlBackend | None = None
        self._refresh_rate = max(0.1, refresh_rate)
        self._selected = 0

    @property
    def monitor(self) -> GpuMonitor | None:
        return self._monitor

    @property
    def selected(self) -> int:
        """Get the index of the displayed GPU."""
        return self._selected

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield DevicePanel(id="device-panel")
        yield Footer()

    def on_mount(self) -> None:
        """Open the devices and start ticking the pollers."""
        if self._monitor is None:
            self._monitor = self._open_nvml()
        if self._monitor is None or not self._monitor.devices:
            self.notify("No GPU found", severity="error")
            return

        self._monitor.tick()
        self.query_one(DevicePanel).show(self._monitor.devices[self._selected])
        self.set_interval(self._refresh_rate, self._tick)

    def _open_nvml(self) -> GpuMonitor | None:
        backend = NvmlBackend()
        try:
            backend.open()
            monitor = GpuMonitor(list(backend.devices()))
        except FetchFailed as exc:
            logger.error("Cannot open NVML: %s", exc)
            backend.close()
            return None
        self._backend = backend
        return monitor

    def _tick(self) -> None:
        """Poll devices and redraw the panel."""
        if self._monitor is None:
            return
        self._monitor.tick()
        self.query_one(DevicePanel).refresh_data()

    def action_next_device(self) -> None:
        """Show the next GPU."""
        if self._monitor is None or not self._monitor.devices:
            return
        devices = self._monitor.devices
        self._selected = (self._selected + 1) % len(devices)
        self.query_one(DevicePanel).show(devices[self._selected])

    def action_toggle_table(self) -> None:
        """Switch between graphics and compute processes."""
        table = self.query_one(DevicePanel).toggle_table()
        if table is not None:
            self.notify(f"{table.label} processes")

    def action_quit(self) -> None:
        """Handle quit action."""
        self.exit()

    def on_unmount(self) -> None:
        """Shut NVML down however the app exits."""
        if self._backend is not None:
            self._backend.close()
            self._backend = None


def main() -> None:
    """Entry point for the gpumon application."""
    log_file = os.environ.get("GPUMON_LOG")
    if log_file:
        logging.basicConfig(
            filename=log_file,
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    app = GpumonApp()
    app.run()


if __name__ == "__main__":
    main()
