import collections
import logging

from rich import box
from rich.console import Console
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .Core.CancelToken import CancelToken
from .Core.header import ProxyConfig
from .Core.TrafficStats import TrafficStats, format_bytes


class LogBuffer(logging.Handler):
    """Keeps the most recent log records for the dashboard's log table."""

    def __init__(self, maxlen: int = 10, level=logging.NOTSET):
        super().__init__(level)
        self.records = collections.deque(maxlen=maxlen)

    def emit(self, record):
        try:
            self.records.append((record.levelname, self.format(record)))
        except Exception:
            self.handleError(record)


def build_dashboard(config: ProxyConfig, stats: TrafficStats, log_buffer: LogBuffer = None):
    snap = stats.snapshot()

    status_panel = Panel(
        f"[bold green]🟢 Running[/bold green]\n"
        f"[bold]Uptime:[/bold] {snap['uptime']} sec\n"
        f"[bold]Active Sessions:[/bold] {snap['active_sessions']}\n"
        f"[bold]Total Sessions:[/bold] {snap['total_sessions']}\n"
        f"[bold]Failed Dials:[/bold] {snap['failed_dials']}",
        title="🌐 [bold cyan]Status[/bold cyan]",
        border_style="green",
        padding=(1, 2),
    )

    traffic_panel = Panel(
        f"[bold]↑ App → Spa:[/bold] {format_bytes(snap['bytes_up'])}\n"
        f"[bold]↓ Spa → App:[/bold] {format_bytes(snap['bytes_down'])}\n"
        f"[bold]Backend:[/bold] {escape(str(config.forward_addr))}",
        title="📊 [bold blue]Traffic[/bold blue]",
        border_style="blue",
        padding=(1, 2),
    )

    discovery_panel = Panel(
        f"[bold]Name:[/bold] {escape(config.discovery_name)}\n"
        f"[bold]MAC:[/bold] {escape(config.discovery_mac)}\n"
        f"[bold]Replies:[/bold] {snap['discovery_replies']}\n"
        f"[bold]Dropped:[/bold] {snap['discovery_dropped']}",
        title="📡 [bold yellow]Discovery[/bold yellow]",
        border_style="yellow",
        padding=(1, 2),
    )

    log_table = Table(title="🧾 [bold red]Recent Logs[/bold red]", expand=True, box=box.SIMPLE)
    log_table.add_column("Level", style="bold cyan", justify="center")
    log_table.add_column("Message", style="dim white", justify="left")
    if log_buffer is not None:
        for level, msg in list(log_buffer.records):
            # Log text is shown literally, never parsed as markup.
            log_table.add_row(Text(level), Text(msg))

    grid = Table.grid(expand=True)
    grid.add_row(status_panel, traffic_panel)
    grid.add_row(discovery_panel)
    grid.add_row(log_table)
    return grid


class Dashboard:
    """Full-screen live view, refreshed once per second until the token is cancelled."""

    def __init__(self, config: ProxyConfig, stats: TrafficStats, log_buffer: LogBuffer,
                 console: Console = None):
        self.config = config
        self.stats = stats
        self.log_buffer = log_buffer
        self.console = console

    def render(self):
        return build_dashboard(self.config, self.stats, self.log_buffer)

    def run(self, token: CancelToken, refresh: float = 1.0):
        with Live(self.render(), console=self.console, refresh_per_second=1, screen=True) as live:
            while not token.wait(refresh):
                live.update(self.render())
