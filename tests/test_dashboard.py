import io
import logging
import threading

from rich.console import Console

from balboa_proxy.model.Core.CancelToken import CancelToken
from balboa_proxy.model.Core.header import Address, ProxyConfig
from balboa_proxy.model.Core.TrafficStats import DOWNSTREAM, UPSTREAM, TrafficStats, format_bytes
from balboa_proxy.model.Dashboard import Dashboard, LogBuffer, build_dashboard


def render(renderable) -> str:
    console = Console(file=io.StringIO(), width=120, color_system=None)
    console.print(renderable)
    return console.file.getvalue()


def make_record(message, level=logging.INFO):
    return logging.LogRecord("balboa_proxy.test", level, __file__, 1, message, None, None)


def test_log_buffer_keeps_last_records():
    buffer = LogBuffer()
    for i in range(15):
        buffer.handle(make_record(f"line {i}"))

    assert len(buffer.records) == 10
    assert buffer.records[0] == ("INFO", "line 5")
    assert buffer.records[-1] == ("INFO", "line 14")


def test_dashboard_shows_counters():
    config = ProxyConfig(forward_addr=Address("192.168.1.50", 4257))
    stats = TrafficStats()
    stats.session_opened()
    stats.add_traffic(UPSTREAM, 1024)
    stats.add_traffic(DOWNSTREAM, 10)
    stats.probe_answered()

    output = render(build_dashboard(config, stats))

    assert "Active Sessions:" in output
    assert "BWGSPA" in output
    assert "00-15-27-00-00-00" in output
    assert "1.00 KB" in output
    assert "10.00 bytes" in output
    assert "192.168.1.50:4257" in output


def test_log_lines_render_literally():
    config = ProxyConfig(forward_addr=Address("::1", 4257))
    buffer = LogBuffer()
    buffer.handle(make_record("Forwarding from [::1]:5000 to [bold]x[/bold]", logging.WARNING))

    output = render(build_dashboard(config, TrafficStats(), buffer))

    assert "[::1]:5000" in output
    assert "[bold]x[/bold]" in output
    assert "WARNING" in output


def test_format_bytes():
    assert format_bytes(0) == "0.00 bytes"
    assert format_bytes(1536) == "1.50 KB"
    assert format_bytes(5 * 1024 ** 3) == "5.00 GB"


def test_dashboard_run_stops_with_token():
    config = ProxyConfig(forward_addr=Address("127.0.0.1", 4257))
    console = Console(file=io.StringIO(), width=120)
    dashboard = Dashboard(config, TrafficStats(), LogBuffer(), console=console)
    token = CancelToken()

    thread = threading.Thread(target=dashboard.run, args=(token, 0.05), daemon=True)
    thread.start()
    token.cancel("stop")
    thread.join(3)

    assert not thread.is_alive()
