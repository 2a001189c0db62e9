"""jvmtop - Main Textual application and console entry point."""

import platform
import sys
import time
from importlib import metadata
from queue import Empty, Queue
from typing import TextIO

import psutil
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from jvmtop.config import Config, init_config_from_args, parse_args, setup_logging
from jvmtop.discovery import LocalDiscovery, StaticDiscovery
from jvmtop.errors import DiscoveryError
from jvmtop.jolokia import JolokiaProvider
from jvmtop.models import DetailCycle, InstanceDescriptor, InstanceRow, OverviewCycle, ThreadRow
from jvmtop.monitor import Cycle, JvmMonitor
from jvmtop.ranking import SortKey
from jvmtop.state import ConnectionState

VERSION = "1.0"

CLEAR_TERMINAL = "\033[2J\033[H"

STATE_MARKERS = {
    ConnectionState.INIT: "[ERROR: Not attached yet]",
    ConnectionState.CONNECTING: "[ERROR: Not attached yet]",
    ConnectionState.ATTACHED_UPDATE_ERROR: "[ERROR: Could not fetch telemetries (Process DEAD?)]",
    ConnectionState.ERROR_DURING_ATTACH: "[ERROR: Could not attach to VM]",
    ConnectionState.CONNECTION_REFUSED: "[ERROR: Connection refused/access denied]",
    ConnectionState.DETACHED: "[ERROR: Detached]",
}

OVERVIEW_COLUMNS = ("PID", "MAIN-CLASS", "HPCUR", "HPMAX", "NHCUR", "NHMAX", "CPU", "GC", "VM", "USERNAME", "#T", "DL")


def to_mb(size: int) -> str:
    """Format bytes as megabytes, "n/a" if undefined (negative)."""
    if size < 0:
        return "n/a"
    return f"{size // 1024 // 1024}m"


def to_hhmm(millis: int) -> str:
    """Format milliseconds as hours and minutes."""
    return f"{millis // 1000 // 3600:02d}:{(millis // 1000 // 60) % 60:02d}m"


def left_str(text: str, length: int) -> str:
    return text[:length]


def right_str(text: str, length: int) -> str:
    return text[max(0, len(text) - length) :]


def entry_point_class(display_name: str) -> str:
    """Rightmost part of the main class (first word of the display name)."""
    name = display_name.split(" ", 1)[0] if " " in display_name else display_name
    return right_str(name, 15)


def render_top_bar() -> str:
    """One-line summary of the local machine."""
    line = (
        f" JvmTop {VERSION} - {time.strftime('%H:%M:%S')}, {platform.machine():>6}, "
        f"{psutil.cpu_count() or 0:2d} cpus, {(platform.system() + ' ' + platform.release())[:15]:>15}"
    )
    try:
        load = psutil.getloadavg()[0]
    except (AttributeError, OSError):
        return line
    return f"{line}, load avg {load:3.2f}"


def render_sysinfo() -> list[str]:
    """Diagnostic lines describing the host and interpreter."""
    lines = [
        f"jvmtop: {VERSION}",
        f"python: {platform.python_implementation()} {platform.python_version()} ({sys.executable})",
        f"os: {platform.system()} {platform.release()} {platform.machine()}",
        f"cpus: {psutil.cpu_count() or 0}",
        f"memory: {psutil.virtual_memory().total // (1024 * 1024)}m",
        f"textual: {_distribution_version('textual')}",
        f"requests: {_distribution_version('requests')}",
        f"psutil: {psutil.__version__}",
    ]
    try:
        lines.append("load avg: " + " ".join(f"{load:.2f}" for load in psutil.getloadavg()))
    except (AttributeError, OSError):
        pass
    return lines


def _distribution_version(name: str) -> str:
    try:
        return metadata.version(name)
    except metadata.PackageNotFoundError:
        return "unknown"


def render_overview(cycle: OverviewCycle) -> list[str]:
    """Text lines of the overview, one per JVM."""
    lines = [
        "{:>5} {:<15.15} {:>5} {:>5} {:>5} {:>5} {:>6} {:>6} {:>5} {:>8} {:>4} {:>2}".format(*OVERVIEW_COLUMNS)
    ]
    for row in cycle.rows:
        lines.append(render_instance(row))
    return lines


def render_instance(row: InstanceRow) -> str:
    name = entry_point_class(row.display_name)
    if row.state is not ConnectionState.ATTACHED:
        return f"{row.identity:5d} {name:<25.15} {STATE_MARKERS[row.state]}"
    m = row.metrics
    deadlock = "!D" if m.deadlocks_detected else ""
    return (
        f"{row.identity:5d} {name:<15.15} {to_mb(m.heap_used):>5} {to_mb(m.heap_max):>5} "
        f"{to_mb(m.non_heap_used):>5} {to_mb(m.non_heap_max):>5} "
        f"{m.cpu_load * 100:5.2f}% {m.gc_load * 100:5.2f}% {m.vm_version:<5.5} "
        f"{m.os_user:>8.8} {m.thread_count:4d} {deadlock:>2.2}"
    )


def render_stat(cycle: DetailCycle) -> tuple[list[str], bool]:
    """One compact line for the JVM, and whether monitoring should end."""
    row = cycle.row
    if row.state is ConnectionState.ATTACHED_UPDATE_ERROR:
        return ["ERROR: Could not fetch telemetries - Process terminated."], True
    if row.state is not ConnectionState.ATTACHED:
        return ["ERROR: Could not attach to process."], True
    m = row.metrics
    deadlock = "!D" if m.deadlocks_detected else ""
    return [
        f"{row.identity:5d} {to_mb(m.heap_used):>5} {m.cpu_load * 100:5.2f}% "
        f"{m.gc_load * 100:5.2f}% {m.thread_count:4d} {deadlock:>2.2}"
    ], False


def render_detail_header(row: InstanceRow) -> list[str]:
    m = row.metrics
    properties = m.system_properties
    lines = []
    command = properties.get("sun.java.command")
    if command:
        main, _, args = command.partition(" ")
        lines.append(f" PID {row.identity}: {main} ")
        if len(args) > 67:
            lines.append(f" ARGS: {left_str(args, 67)}[...]")
        else:
            lines.append(f" ARGS: {args}")
    else:
        lines.append(f" PID {row.identity}: ")
        lines.append(" ARGS: [UNKNOWN] ")
    lines.append(" VMARGS: " + "".join(f"\n {arg}" for arg in m.input_arguments))
    lines.append(
        f" VM: {properties.get('java.vendor', '')} {properties.get('java.vm.name', '')} "
        f"{properties.get('java.version', '')}"
    )
    lines.append(
        f" UP: {to_hhmm(m.uptime):<7} #THR: {m.thread_count:<4d} #THRPEAK: {m.peak_thread_count:<4d} "
        f"#THRCREATED: {m.total_started_thread_count:<4d} USER: {m.os_user:<12}"
    )
    lines.append(
        f" GC-Time: {to_hhmm(m.gc_time):<7}  #GC-Runs: {m.gc_count:<8d}  "
        f"#TotalLoadedClasses: {m.loaded_class_count:<8d}"
    )
    lines.append(
        f" CPU: {m.cpu_load * 100:5.2f}% GC: {m.gc_load * 100:5.2f}% "
        f"HEAP:{to_mb(m.heap_used):>5} /{to_mb(m.heap_max):>5} "
        f"NONHEAP:{to_mb(m.non_heap_used):>5} /{to_mb(m.non_heap_max):>5}"
    )
    return lines


def render_thread(thread: ThreadRow, name_width: int) -> str:
    blocked_by = str(thread.blocked_by) if thread.blocked_by is not None else ""
    return (
        f" {thread.tid:6d} {left_str(thread.name, name_width):<{name_width}}  {thread.state:>13} "
        f"{thread.cpu_percent:5.2f}%    {thread.total_cpu_percent:5.2f}% {blocked_by:>5} "
    )


def render_detail(cycle: DetailCycle, cfg: Config) -> tuple[list[str], bool]:
    """Text lines of the detail view, and whether monitoring should end."""
    row = cycle.row
    if row.state is ConnectionState.ATTACHED_UPDATE_ERROR:
        return ["ERROR: Could not fetch telemetries - Process terminated?"], True
    if row.state is not ConnectionState.ATTACHED:
        return ["ERROR: Could not attach to process."], True

    width = cfg.thread_name_width
    lines = render_detail_header(row)
    lines.append("")
    lines.append(f" {'TID':>6} {'NAME':<{width}}  {'STATE':>13} {'CPU':>8}    {'TOTALCPU':>8} {'BLOCKEDBY':>5} ")
    if cycle.threads is None:
        lines.append("")
        lines.append(" -Thread CPU telemetries are not available on the monitored jvm/platform-")
        return lines, False
    lines.extend(render_thread(thread, width) for thread in cycle.threads)
    if cycle.truncated:
        lines.append(f" Note: Only top {cfg.thread_limit} threads (according cpu load) are shown!")
    return lines, False


def render_cycle(cycle: Cycle, cfg: Config) -> tuple[list[str], bool]:
    if isinstance(cycle, OverviewCycle):
        return render_overview(cycle), False
    if cfg.stat:
        return render_stat(cycle)
    return render_detail(cycle, cfg)


def build_monitor(cfg: Config, update_queue: Queue[Cycle] | None = None) -> JvmMonitor:
    """Wire discovery, the Jolokia provider and the monitor from the configuration."""
    if cfg.jolokia_url:
        discovery = StaticDiscovery(
            [
                InstanceDescriptor(
                    pid=cfg.pid,
                    display_name=cfg.jolokia_url,
                    attachable=True,
                    endpoint=cfg.jolokia_url,
                    user=cfg.user,
                    password=cfg.password,
                )
            ]
        )
    else:
        discovery = LocalDiscovery(cfg.jolokia_port, cfg.user, cfg.password)
    return JvmMonitor(
        discovery,
        JolokiaProvider(timeout=cfg.timeout),
        update_queue=update_queue,
        poll_rate=cfg.delay,
        sort_key=cfg.sort_key,
        pid=cfg.pid,
        thread_limit=cfg.displayed_thread_limit,
    )


def run_batch(monitor: JvmMonitor, cfg: Config, out: TextIO | None = None) -> None:
    """Print plain-text cycles until the iteration count is reached or the JVM is lost."""
    out = out or sys.stdout
    clearing = not cfg.stat and (cfg.iterations is None or cfg.iterations > 1)

    def emit(cycle: Cycle) -> None:
        if clearing:
            out.write(CLEAR_TERMINAL)
        if not cfg.stat:
            out.write(render_top_bar() + "\n\n")
        lines, should_exit = render_cycle(cycle, cfg)
        out.write("\n".join(lines) + "\n")
        out.flush()
        if should_exit:
            monitor.stop()

    monitor.run(cfg.iterations, on_cycle=emit)


class HeaderStats(Static):
    """Header widget showing the local machine summary."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def refresh_stats(self) -> None:
        self.update(render_top_bar())


class InstanceTable(Container):
    """Container for the table of monitored JVMs."""

    DEFAULT_CSS = """
    InstanceTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize InstanceTable."""
        super().__init__(*args, **kwargs)
        self._current_ids: list[int] = []

    def compose(self) -> ComposeResult:
        """Compose the instance table."""
        yield DataTable(id="instance-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#instance-table", DataTable)
        table.cursor_type = "row"
        for column in OVERVIEW_COLUMNS:
            table.add_column(column, key=column.lower())

    def update_rows(self, rows: list[InstanceRow]) -> None:
        """Replace the table content, keeping the already sorted order."""
        table = self.query_one("#instance-table", DataTable)
        table.clear()
        for row in rows:
            table.add_row(*self._cells(row), key=str(row.identity))
        self._current_ids = [row.identity for row in rows]

    @staticmethod
    def _cells(row: InstanceRow) -> tuple[str, ...]:
        name = entry_point_class(row.display_name)
        if row.state is not ConnectionState.ATTACHED:
            return (str(row.identity), name, STATE_MARKERS[row.state].strip("[]"), "", "", "", "", "", "", "", "", "")
        m = row.metrics
        return (
            str(row.identity),
            name,
            to_mb(m.heap_used),
            to_mb(m.heap_max),
            to_mb(m.non_heap_used),
            to_mb(m.non_heap_max),
            f"{m.cpu_load * 100:5.2f}%",
            f"{m.gc_load * 100:5.2f}%",
            m.vm_version[:5],
            m.os_user[:8],
            str(m.thread_count),
            "!D" if m.deadlocks_detected else "",
        )


class DetailPanel(Container):
    """Summary of one JVM followed by its busiest threads."""

    DEFAULT_CSS = """
    DetailPanel {
        height: 1fr;
        border: solid $primary;
    }

    #detail-info {
        height: auto;
    }
    """

    def __init__(self, cfg: Config, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._cfg = cfg

    def compose(self) -> ComposeResult:
        yield Static("Attaching...", id="detail-info", markup=False)
        yield DataTable(id="thread-table")
        yield Static("", id="thread-note")

    def on_mount(self) -> None:
        table = self.query_one("#thread-table", DataTable)
        table.cursor_type = "row"
        for column in ("TID", "NAME", "STATE", "CPU", "TOTALCPU", "BLOCKEDBY"):
            table.add_column(column, key=column.lower())

    def update_detail(self, cycle: DetailCycle) -> None:
        info = self.query_one("#detail-info", Static)
        note = self.query_one("#thread-note", Static)
        table = self.query_one("#thread-table", DataTable)
        table.clear()

        if cycle.row.state is not ConnectionState.ATTACHED:
            lines, _ = render_detail(cycle, self._cfg)
            info.update("\n".join(lines))
            note.update("")
            return

        info.update("\n".join(render_detail_header(cycle.row)))
        if cycle.threads is None:
            note.update("-Thread CPU telemetries are not available on the monitored jvm/platform-")
            return
        width = self._cfg.thread_name_width
        for thread in cycle.threads:
            table.add_row(
                str(thread.tid),
                left_str(thread.name, width),
                thread.state,
                f"{thread.cpu_percent:5.2f}%",
                f"{thread.total_cpu_percent:5.2f}%",
                str(thread.blocked_by) if thread.blocked_by is not None else "",
                key=str(thread.tid),
            )
        note.update(
            f"Note: Only top {self._cfg.thread_limit} threads (according cpu load) are shown!"
            if cycle.truncated
            else ""
        )


class JvmTopApp(App):
    """Main jvmtop application."""

    TITLE = "jvmtop"
    SUB_TITLE = "java monitoring for the command-line"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("s", "sort", "Sort"),
    ]

    def __init__(
        self,
        cfg: Config | None = None,
        monitor: JvmMonitor | None = None,
        update_queue: Queue[Cycle] | None = None,
    ) -> None:
        """
        Initialize the JvmTopApp.

        A given monitor must publish its cycles to ``update_queue``.
        """
        super().__init__()
        self._cfg = cfg or Config()
        self._update_queue: Queue[Cycle] = update_queue if update_queue is not None else Queue()
        self._monitor = monitor or build_monitor(self._cfg, self._update_queue)

    @property
    def monitor(self) -> JvmMonitor:
        return self._monitor

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield HeaderStats(id="header-stats")
        if self._cfg.pid is None:
            yield InstanceTable()
        else:
            yield DetailPanel(self._cfg)
        yield Footer()

    def on_mount(self) -> None:
        """Start the JVM monitor when the app is mounted."""
        self.query_one(HeaderStats).refresh_stats()
        self._monitor.start()
        # Set up a timer to poll the queue for updates
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Check the queue for cycles and refresh the UI."""
        if self._monitor.fatal_error is not None:
            self.exit(return_code=1)
            return

        # Drain the queue to get the most recent cycle
        cycle = None
        while True:
            try:
                cycle = self._update_queue.get_nowait()
            except Empty:
                break

        if cycle is not None:
            self._update_ui(cycle)

    def _update_ui(self, cycle: Cycle) -> None:
        """Update the UI with the new cycle."""
        self.query_one(HeaderStats).refresh_stats()
        if isinstance(cycle, OverviewCycle):
            self.query_one(InstanceTable).update_rows(cycle.rows)
        else:
            self.query_one(DetailPanel).update_detail(cycle)

    def on_unmount(self) -> None:
        """Stop polling when the app goes away."""
        self._monitor.stop()

    def action_sort(self) -> None:
        """Toggle the overview order between CPU load and used heap."""
        keys = list(SortKey)
        current = keys.index(self._monitor.sort_key)
        self._monitor.sort_key = keys[(current + 1) % len(keys)]
        self.notify(f"Sort: {self._monitor.sort_key.value.upper()}")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()


def main(argv: list[str] | None = None) -> int:
    """Entry point for jvmtop."""
    cfg = init_config_from_args(parse_args(argv))
    if cfg.sysinfo:
        print("\n".join(render_sysinfo()))
        return 0
    setup_logging(cfg)

    if cfg.batch:
        monitor = build_monitor(cfg)
        runner = lambda: run_batch(monitor, cfg)  # noqa: E731
    else:
        app = JvmTopApp(cfg)
        monitor = app.monitor
        runner = app.run

    try:
        runner()
    except KeyboardInterrupt:
        pass
    except DiscoveryError as exc:
        monitor.fatal_error = exc
    finally:
        last = monitor.finalize()
        if not cfg.batch and last is not None and monitor.fatal_error is None:
            print("Finish execution ... ")
            print("\n".join(render_cycle(last, cfg)[0]))
            print("done!")

    if monitor.fatal_error is not None:
        print(f"FATAL: cannot discover JVMs: {monitor.fatal_error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
