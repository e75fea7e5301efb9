"""Data models shared by the host execution driver and the lifecycle runtime."""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ConfigurationError
from ..utils.net import check_same_family, is_ipv6


class Role(str, Enum):
    """Host roles in the cluster. A host may hold both."""
    MASTER = 'master'
    NODE = 'node'


# Environment keys exposed to every host
ENV_HOST_IP = 'HostIP'
ENV_HOST_IP_FAMILY = 'HostIPFamily'
ENV_REGISTRY_DOMAIN = 'RegistryDomain'
ENV_REGISTRY_PORT = 'RegistryPort'
ENV_REGISTRY_URL = 'RegistryURL'


@dataclass(frozen=True)
class SSHCredentials:
    """How to reach one host over SSH."""
    user: str = 'root'
    password: Optional[str] = None
    private_key: Optional[str] = None
    passphrase: Optional[str] = None
    port: int = 22

    def validate(self, host: str) -> None:
        if not self.user:
            raise ConfigurationError(f"host {host}: ssh user is required")
        if not self.password and not self.private_key:
            raise ConfigurationError(f"host {host}: either an ssh password or a private key is required")

    def merged_over(self, defaults: "SSHCredentials") -> "SSHCredentials":
        """Fill the empty fields of ``self`` from ``defaults``."""
        return SSHCredentials(
            user=self.user or defaults.user,
            password=self.password or defaults.password,
            private_key=self.private_key or defaults.private_key,
            passphrase=self.passphrase or defaults.passphrase,
            port=self.port or defaults.port,
        )


@dataclass(frozen=True)
class Taint:
    key: str
    value: str = ''
    effect: str = 'NoSchedule'

    VALID_EFFECTS = ('NoSchedule', 'PreferNoSchedule', 'NoExecute')

    @classmethod
    def parse(cls, text: str) -> "Taint":
        """Parse ``key[=value]:Effect``."""
        if ':' not in text:
            raise ConfigurationError(f"invalid taint {text!r}: expected key[=value]:effect")
        key_value, effect = text.rsplit(':', 1)
        key, _, value = key_value.partition('=')
        if not key or effect not in cls.VALID_EFFECTS:
            raise ConfigurationError(f"invalid taint {text!r}")
        return cls(key=key, value=value, effect=effect)

    def __str__(self) -> str:
        if self.value:
            return f"{self.key}={self.value}:{self.effect}"
        return f"{self.key}:{self.effect}"


@dataclass(frozen=True)
class Host:
    """A managed host, identified by its IP address."""
    ip: str
    roles: frozenset = frozenset()
    ssh: SSHCredentials = field(default_factory=SSHCredentials)
    env: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    labels: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    taints: List[Taint] = field(default_factory=list, hash=False, compare=False)

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    def with_roles(self, roles: Iterable[Role]) -> "Host":
        return replace(self, roles=frozenset(roles))


@dataclass
class RegistryConfig:
    domain: str = 'sea.hub'
    port: int = 5000

    @property
    def url(self) -> str:
        return f"{self.domain}:{self.port}"


@dataclass
class ClusterSpec:
    """Fully resolved cluster description consumed by the engine."""
    name: str
    image: str
    hosts: List[Host]
    env: Dict[str, Any] = field(default_factory=dict)
    registry: RegistryConfig = field(default_factory=RegistryConfig)

    def cluster_env(self) -> Dict[str, Any]:
        """Cluster env with registry settings exposed unless already set."""
        env = dict(self.env)
        env.setdefault(ENV_REGISTRY_DOMAIN, self.registry.domain)
        env.setdefault(ENV_REGISTRY_PORT, self.registry.port)
        env.setdefault(ENV_REGISTRY_URL, self.registry.url)
        if self.hosts and is_ipv6(self.hosts[0].ip):
            env.setdefault(ENV_HOST_IP_FAMILY, 'IPv6')
        return env


class Inventory:
    """Current cluster membership and the role index derived from it.

    The first master added is the bootstrap host ("master-zero") and is kept
    as an explicit field. Instances are never mutated in place: membership
    changes return a new inventory, so a failed operation leaves the
    controller's view untouched.
    """

    def __init__(self, hosts: Iterable[Host], primary_master: Optional[str] = None):
        self._hosts: Dict[str, Host] = {}
        for host in hosts:
            if host.ip in self._hosts:
                raise ConfigurationError(f"duplicated host {host.ip}")
            if not host.roles:
                raise ConfigurationError(f"host {host.ip} has no role")
            self._hosts[host.ip] = host
        check_same_family(self._hosts)

        self._roles: Dict[Role, List[str]] = {role: [] for role in Role}
        for host in self._hosts.values():
            for role in Role:
                if host.has_role(role):
                    self._roles[role].append(host.ip)

        masters = self._roles[Role.MASTER]
        if primary_master is None and masters:
            primary_master = masters[0]
        if masters and primary_master not in masters:
            raise ConfigurationError(f"primary master {primary_master} is not a master")
        if not masters:
            primary_master = None
        self.primary_master: Optional[str] = primary_master

    @property
    def hosts(self) -> List[Host]:
        return list(self._hosts.values())

    @property
    def ips(self) -> List[str]:
        return list(self._hosts)

    def get(self, ip: str) -> Host:
        return self._hosts[ip]

    def __contains__(self, ip: str) -> bool:
        return ip in self._hosts

    def __len__(self) -> int:
        return len(self._hosts)

    def by_role(self, role: Role) -> List[str]:
        """Ordered addresses holding ``role``; master-zero first for masters."""
        ips = list(self._roles[role])
        if role is Role.MASTER and self.primary_master:
            ips.remove(self.primary_master)
            ips.insert(0, self.primary_master)
        return ips

    @property
    def masters(self) -> List[str]:
        return self.by_role(Role.MASTER)

    @property
    def workers(self) -> List[str]:
        return self.by_role(Role.NODE)

    @property
    def secondary_masters(self) -> List[str]:
        return self.masters[1:]

    def with_role_added(self, hosts: Iterable[Host], role: Role) -> "Inventory":
        updated = dict(self._hosts)
        for host in hosts:
            current = updated.get(host.ip, host.with_roles(()))
            updated[host.ip] = current.with_roles(set(current.roles) | {role})
        return Inventory(updated.values(), self.primary_master)

    def with_role_removed(self, ips: Iterable[str], role: Role) -> "Inventory":
        updated = dict(self._hosts)
        for ip in ips:
            host = updated.get(ip)
            if host is None:
                continue
            roles = set(host.roles) - {role}
            if roles:
                updated[ip] = host.with_roles(roles)
            else:
                del updated[ip]
        primary = self.primary_master
        remaining_masters = [h.ip for h in updated.values() if h.has_role(Role.MASTER)]
        if primary not in remaining_masters:
            primary = remaining_masters[0] if remaining_masters else None
        return Inventory(updated.values(), primary)
