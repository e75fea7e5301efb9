"""Kubernetes runtime configuration management.

This module handles configuration loading from multiple sources with the following precedence:
1. Explicitly passed parameters
2. Environment variables (``SEALCTL_<SECTION>__<FIELD>``)
3. Configuration files
4. Default values
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sealctl.errors import ConfigurationError

logger = logging.getLogger("sealctl.kubernetes.config")

ENV_PREFIX = "SEALCTL_"
ENV_NESTED_DELIMITER = "__"

# Default configuration paths
DEFAULT_CONFIG_PATHS = [
    Path("/etc/sealctl/config.yaml"),
    Path("~/.config/sealctl/config.yaml"),
    Path("sealctl-config.yaml"),
]


class SSHConfig(BaseModel):
    """SSH connection configuration."""
    connect_timeout: int = Field(default=30, description="SSH connection timeout in seconds")
    command_timeout: int = Field(default=600, description="Default timeout of one remote command in seconds")
    max_workers: int = Field(default=32, description="Maximum number of hosts handled concurrently")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    file: Optional[str] = Field(default=None, description="Path to log file (if None, logs to stderr)")
    max_size_mb: int = Field(default=100, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of backup log files to keep")

    @field_validator('level')
    @classmethod
    def upper_level(cls, v: str) -> str:
        return v.upper()


class ClusterConfig(BaseModel):
    """Cluster-wide kubeadm and load-balancer settings."""
    vip: str = Field(default="10.103.97.2", description="Virtual IP advertised to workers")
    apiserver_domain: str = Field(default="apiserver.cluster.local", description="Control-plane endpoint domain")
    apiserver_port: int = Field(default=6443, description="API server port on every master")
    kubernetes_version: str = Field(default="v1.22.15", description="Kubernetes version passed to kubeadm")
    service_cidr: str = Field(default="10.96.0.0/22", description="Kubernetes service IP range")
    pod_cidr: str = Field(default="100.64.0.0/10", description="Kubernetes pod IP range")
    dns_domain: str = Field(default="cluster.local", description="Cluster DNS domain")
    cert_sans: List[str] = Field(default_factory=list, description="Extra API server certificate SANs")
    cgroup_driver: str = Field(default="systemd", description="Kubelet cgroup driver")
    cri_socket: str = Field(default="/run/containerd/containerd.sock", description="CRI socket used by kubeadm")
    data_dir: str = Field(default="/var/lib/sealer/data", description="Remote base directory of cluster data")
    lvscare_image: str = Field(default="sealer/lvscare:v1.1.3-beta.8", description="Load balancer image (registry prefixed)")
    health_path: str = Field(default="/healthz", description="Backend health check path")
    health_scheme: str = Field(default="https", description="Backend health check scheme")
    ready_timeout: int = Field(default=300, description="Seconds to wait for the control plane or a node to be Ready")

    @field_validator('health_scheme')
    @classmethod
    def check_scheme(cls, v: str) -> str:
        if v not in ("http", "https"):
            raise ValueError("health_scheme must be http or https")
        return v


class InstallerConfig(BaseModel):
    """sealctl runtime configuration."""
    model_config = ConfigDict(extra="ignore")

    ssh: SSHConfig = Field(default_factory=SSHConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'InstallerConfig':
        """Load configuration from file and environment variables.

        Raises:
            ConfigurationError: If an explicit path is missing or a value is invalid
        """
        config_data: Dict[str, Any] = {}

        if config_path:
            config_path = Path(config_path).expanduser().absolute()
            if not config_path.exists():
                raise ConfigurationError(f"config file not found: {config_path}")
            config_data = cls._load_config_file(config_path)
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    logger.debug(f"Loaded config from {path}")
                    break

        _apply_env_overrides(config_data, os.environ)
        try:
            return cls(**config_data)
        except ValidationError as e:
            raise ConfigurationError(f"invalid configuration: {e}")

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"failed to load config from {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"config {path} must be a mapping")
        return data

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.model_dump(exclude_none=True), f, default_flow_style=False, sort_keys=False)


def _apply_env_overrides(config_data: Dict[str, Any], environ) -> None:
    """Fold ``SEALCTL_<SECTION>__<FIELD>`` variables into ``config_data``."""
    sections = InstallerConfig.model_fields
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or ENV_NESTED_DELIMITER not in key:
            continue
        section, _, name = key[len(ENV_PREFIX):].lower().partition(ENV_NESTED_DELIMITER)
        if section not in sections or not name:
            continue
        section_data = config_data.setdefault(section, {})
        if name == "cert_sans":
            section_data[name] = [v.strip() for v in value.split(",") if v.strip()]
        else:
            section_data[name] = value
