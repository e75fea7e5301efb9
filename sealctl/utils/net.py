"""IP address helpers."""
import ipaddress
from typing import Iterable, List

from ..errors import ConfigurationError


def parse_ip(value: str) -> str:
    """Return the canonical text form of an IP address.

    Raises:
        ConfigurationError: If ``value`` is not an IP address
    """
    try:
        return str(ipaddress.ip_address(str(value).strip()))
    except ValueError:
        raise ConfigurationError(f"invalid IP address: {value!r}")


def is_ipv6(value: str) -> bool:
    return ipaddress.ip_address(value).version == 6


def check_same_family(ips: Iterable[str]) -> None:
    """All hosts of a cluster must be IPv4, or all IPv6."""
    ips = list(ips)
    families = {ipaddress.ip_address(ip).version for ip in ips}
    if len(families) > 1:
        raise ConfigurationError(
            f"all hosts must be in same ip family, but the host list is mixed with ipv4 and ipv6: {ips}"
        )


def remove_ips(ips: Iterable[str], to_remove: Iterable[str]) -> List[str]:
    """Order-preserving difference of two address lists."""
    dropped = set(to_remove)
    return [ip for ip in ips if ip not in dropped]


def join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def split_ip_list(value: str) -> List[str]:
    """Parse a comma separated CLI list of addresses."""
    if not value:
        return []
    return [parse_ip(item) for item in value.split(",") if item.strip()]
