"""
Balboa spa discovery responder and transparent TCP relay.
"""
from .model.BalboaProxyServer import BalboaProxyServer
from .model.Core.header import ConfigError, ProxyConfig, parse_address

__version__ = "1.0.0"
__all__ = ["BalboaProxyServer", "ConfigError", "ProxyConfig", "parse_address"]
