import ipaddress
from typing import Iterable


class SourceFilter:
    """Allow-list of networks permitted to receive discovery replies."""

    def __init__(self, networks: Iterable[str] = ()):
        self.allowed_networks = [ipaddress.ip_network(n, strict=False) for n in networks]

    def check_access(self, source_ip: str) -> bool:
        """Everyone is allowed when no networks are configured."""
        if not self.allowed_networks:
            return True
        try:
            ip = ipaddress.ip_address(source_ip.split("%", 1)[0])
        except ValueError:
            return False
        if ip.version == 6 and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        return any(ip.version == net.version and ip in net for net in self.allowed_networks)
