"""
Command line entry point: parse options, configure logging, run the proxy.
"""
import argparse
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler

from .model.BalboaProxyServer import BalboaProxyServer
from .model.Core.header import (
    DEFAULT_DATA_ADDR,
    DEFAULT_DISCOVERY_MAC,
    DEFAULT_DISCOVERY_NAME,
    DEFAULT_DISCOVERY_PORT,
    DIAL_TIMEOUT,
    POLL_INTERVAL,
    ConfigError,
    ProxyConfig,
    parse_address,
)
from .model.Dashboard import Dashboard, LogBuffer

logger = logging.getLogger("balboa_proxy")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
ENV_PREFIX = "BALBOA_PROXY_"


def _env(name, default=None):
    return os.environ.get(ENV_PREFIX + name, default)


class ProxyArgumentParser(argparse.ArgumentParser):
    """Reports bad option values with exit status 1, like other configuration errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = ProxyArgumentParser(
        prog="balboa-proxy",
        description="Answer Balboa spa discovery probes and relay the app's TCP session to the spa module",
    )
    parser.add_argument("--data-addr", default=_env("DATA_ADDR", DEFAULT_DATA_ADDR),
                        help="Listen address for Balboa app connections")
    parser.add_argument("--discovery-host", default=_env("DISCOVERY_HOST", ""),
                        help="Address to listen on for discovery broadcasts (default: all IPv4)")
    parser.add_argument("--discovery-port", type=int, default=_env("DISCOVERY_PORT", DEFAULT_DISCOVERY_PORT),
                        help="Port to listen for Balboa app discovery broadcasts")
    parser.add_argument("--discovery-name", default=_env("DISCOVERY_NAME", DEFAULT_DISCOVERY_NAME),
                        help="Hostname to report in discovery responses")
    parser.add_argument("--discovery-mac", default=_env("DISCOVERY_MAC", DEFAULT_DISCOVERY_MAC),
                        help="MAC address to report in discovery responses")
    parser.add_argument("--forward-addr", default=_env("FORWARD_ADDR", ""),
                        help="Address of spa module (host:port)")
    parser.add_argument("--forward-proxy", default=_env("FORWARD_PROXY"),
                        help="Reach the spa module through socks5://, socks4:// or http:// proxy")
    parser.add_argument("--discovery-allow", action="append", metavar="CIDR",
                        help="Only answer discovery probes from this network (repeatable)")
    parser.add_argument("--discovery-rate-limit", type=int, default=_env("DISCOVERY_RATE_LIMIT", 0),
                        help="Max discovery replies per source per minute (0: unlimited)")
    parser.add_argument("--poll-interval", type=float, default=_env("POLL_INTERVAL", POLL_INTERVAL),
                        help="Seconds between cancellation checks on idle sockets")
    parser.add_argument("--dial-timeout", type=float, default=_env("DIAL_TIMEOUT", DIAL_TIMEOUT),
                        help="Seconds to wait for the spa module to accept a connection")
    parser.add_argument("--log-level", default=_env("LOG_LEVEL", "INFO"),
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], type=str.upper)
    parser.add_argument("--log-file", default=_env("LOG_FILE"), help="Also write logs to this rotating file")
    parser.add_argument("-d", "--dashboard", action="store_true", help="Show the live console dashboard")
    return parser


def build_config(args) -> ProxyConfig:
    if not args.forward_addr:
        raise ConfigError("--forward-addr must be set")

    allow = args.discovery_allow
    if allow is None:
        allow = [n.strip() for n in _env("DISCOVERY_ALLOW", "").split(",") if n.strip()]

    return ProxyConfig(
        forward_addr=parse_address(args.forward_addr),
        data_addr=parse_address(args.data_addr),
        discovery_host=args.discovery_host,
        discovery_port=args.discovery_port,
        discovery_name=args.discovery_name,
        discovery_mac=args.discovery_mac,
        forward_proxy=args.forward_proxy or None,
        poll_interval=args.poll_interval,
        dial_timeout=args.dial_timeout,
        discovery_allow=tuple(allow),
        discovery_rate_limit=args.discovery_rate_limit,
    )


def setup_logging(level="INFO", log_file=None, console_handler=None):
    """
    Configure the root logger: one console handler (or the dashboard's
    buffer) plus an optional rotating log file.
    """
    handlers = [console_handler or logging.StreamHandler()]
    if log_file:
        handlers.append(RotatingFileHandler(log_file, maxBytes=10_000_000, backupCount=5))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    log_buffer = None
    if args.dashboard:
        log_buffer = LogBuffer()
        log_buffer.setFormatter(logging.Formatter('%(asctime)s %(name)s: %(message)s', '%H:%M:%S'))
    setup_logging(args.log_level, args.log_file, log_buffer)

    try:
        config = build_config(args)
        server = BalboaProxyServer(config)
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 1

    try:
        server.bind()
    except (ConfigError, OSError) as e:
        logger.error(f"Failed to bind listeners: {e}")
        if log_buffer is not None:
            print(f"Failed to bind listeners: {e}", file=sys.stderr)
        return 1

    signal.signal(signal.SIGINT, server.signal_handler)
    signal.signal(signal.SIGTERM, server.signal_handler)

    dashboard_thread = None
    if log_buffer is not None:
        dashboard = Dashboard(config, server.stats, log_buffer)
        dashboard_thread = threading.Thread(target=dashboard.run, args=(server.root,), name="dashboard", daemon=True)
        dashboard_thread.start()

    server.serve_forever()

    if dashboard_thread is not None:
        dashboard_thread.join(2 * config.poll_interval + 1)
    return 0


if __name__ == "__main__":
    sys.exit(main())
