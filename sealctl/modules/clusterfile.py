"""Clusterfile loading.

A Clusterfile describes hosts, credentials, env and the registry of one
cluster. Both a flat document and the ``kind: Cluster`` form (``metadata.name``
plus ``spec``) are accepted; in a multi-document file the ``Cluster``
document is used and the others are ignored.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from jsonschema import ValidationError, validate

from ..errors import ConfigurationError
from ..utils.net import check_same_family, parse_ip
from .models import ClusterSpec, Host, RegistryConfig, Role, SSHCredentials, Taint

logger = logging.getLogger("sealctl.clusterfile")

CLUSTER_KIND = "Cluster"
DEFAULT_PRIVATE_KEY = "~/.ssh/id_rsa"

SSH_SCHEMA = {
    "type": "object",
    "properties": {
        "user": {"type": "string"},
        "passwd": {"type": "string"},
        "pk": {"type": "string"},
        "pkPasswd": {"type": "string"},
        "port": {"type": ["integer", "string"]},
    },
}

ENV_SCHEMA = {"type": "array", "items": {"type": "string"}}

CLUSTERFILE_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "image": {"type": "string"},
        "ssh": SSH_SCHEMA,
        "env": ENV_SCHEMA,
        "registry": {
            "type": "object",
            "properties": {
                "domain": {"type": "string"},
                "port": {"type": ["integer", "string"]},
            },
        },
        "hosts": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "ips": {"type": "array", "items": {"type": "string"}, "minItems": 1},
                    "roles": {
                        "type": "array",
                        "items": {"type": "string", "enum": [r.value for r in Role]},
                        "minItems": 1,
                    },
                    "ssh": SSH_SCHEMA,
                    "env": ENV_SCHEMA,
                    "labels": {"type": "object", "additionalProperties": {"type": "string"}},
                    "taints": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["ips", "roles"],
            },
        },
    },
    "required": ["name", "image", "hosts"],
}


def parse_env(items: Optional[List[str]]) -> Dict[str, Any]:
    """Convert ``KEY=VALUE`` strings; ``;`` in a value makes it a list."""
    env: Dict[str, Any] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"invalid env {item!r}: expected KEY=VALUE")
        env[key] = value.split(";") if ";" in value else value
    return env


def parse_ssh(data: Optional[Dict[str, Any]]) -> SSHCredentials:
    data = data or {}
    try:
        port = int(data.get("port") or 0)
    except ValueError:
        raise ConfigurationError(f"invalid ssh port {data.get('port')!r}")
    return SSHCredentials(
        user=data.get("user", ""),
        password=data.get("passwd") or None,
        private_key=data.get("pk") or None,
        passphrase=data.get("pkPasswd") or None,
        port=port,
    )


def _default_ssh(ssh: SSHCredentials) -> SSHCredentials:
    """Cluster level defaults: root, port 22 and ~/.ssh/id_rsa when nothing else is given."""
    private_key = ssh.private_key
    if not ssh.password and not private_key and os.path.exists(os.path.expanduser(DEFAULT_PRIVATE_KEY)):
        private_key = DEFAULT_PRIVATE_KEY
    return SSHCredentials(
        user=ssh.user or "root",
        password=ssh.password,
        private_key=private_key,
        passphrase=ssh.passphrase,
        port=ssh.port or 22,
    )


def _select_cluster_document(documents: List[Any]) -> Dict[str, Any]:
    documents = [d for d in documents if d]
    for doc in documents:
        if isinstance(doc, dict) and doc.get("kind") == CLUSTER_KIND:
            spec = dict(doc.get("spec") or {})
            spec.setdefault("name", (doc.get("metadata") or {}).get("name", ""))
            return spec
        elif isinstance(doc, dict) and "kind" in doc:
            logger.debug(f"Ignoring {doc['kind']} document in Clusterfile")
    if len(documents) == 1 and isinstance(documents[0], dict) and "kind" not in documents[0]:
        return documents[0]
    raise ConfigurationError("Clusterfile contains no Cluster document")


def decode_cluster(data: Dict[str, Any]) -> ClusterSpec:
    """Build a ``ClusterSpec`` from an already loaded Clusterfile mapping.

    Raises:
        ConfigurationError: If the document fails validation
    """
    try:
        validate(instance=data, schema=CLUSTERFILE_SCHEMA)
    except ValidationError as ve:
        raise ConfigurationError(f"invalid Clusterfile: {ve.message}")

    cluster_ssh = _default_ssh(parse_ssh(data.get("ssh")))
    cluster_env = parse_env(data.get("env"))

    hosts: List[Host] = []
    for entry in data["hosts"]:
        ssh = parse_ssh(entry.get("ssh")).merged_over(cluster_ssh)
        env = parse_env(entry.get("env"))
        labels = dict(entry.get("labels") or {})
        taints = [Taint.parse(t) for t in entry.get("taints") or []]
        roles = frozenset(Role(r) for r in entry["roles"])
        for ip in entry["ips"]:
            ip = parse_ip(ip)
            ssh.validate(ip)
            hosts.append(Host(ip=ip, roles=roles, ssh=ssh, env=dict(env), labels=dict(labels), taints=list(taints)))
    check_same_family(h.ip for h in hosts)

    registry = data.get("registry") or {}
    try:
        registry_config = RegistryConfig(
            domain=registry.get("domain") or RegistryConfig.domain,
            port=int(registry.get("port") or RegistryConfig.port),
        )
    except ValueError:
        raise ConfigurationError(f"invalid registry port {registry.get('port')!r}")

    return ClusterSpec(
        name=data["name"],
        image=data["image"],
        hosts=hosts,
        env=cluster_env,
        registry=registry_config,
    )


def load_clusterfile(path: Union[str, Path]) -> ClusterSpec:
    """Read and validate a Clusterfile.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise ConfigurationError(f"Clusterfile not found: {path}")
    try:
        with open(path, "r") as f:
            documents = list(yaml.safe_load_all(f))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse Clusterfile {path}: {e}")

    spec = decode_cluster(_select_cluster_document(documents))
    logger.info(f"Loaded cluster {spec.name} with {len(spec.hosts)} host(s) from {path}")
    return spec
