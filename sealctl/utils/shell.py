"""Builders for the remote shell snippets sealctl sends over SSH."""
import shlex
from typing import Any, Dict

HOST_ALIAS_MARKER = "#hostalias-set-by-sealctl"
HEREDOC_DELIMITER = "SEALCTL_EOF"


def export_env(env: Dict[str, Any]) -> str:
    """Render ``env`` as a chain of ``export`` statements ending in ``&&``.

    List values are joined with spaces.
    """
    if not env:
        return ""
    parts = []
    for key in sorted(env):
        value = env[key]
        if isinstance(value, (list, tuple)):
            value = " ".join(str(v) for v in value)
        parts.append(f"export {key}={shlex.quote(str(value))}")
    return " && ".join(parts) + " && "


def set_host_alias(hostname: str, ip: str, marker: str = HOST_ALIAS_MARKER) -> str:
    """Idempotently map ``hostname`` to ``ip`` in /etc/hosts."""
    return (
        f"sed -i '/{hostname} {marker}$/d' /etc/hosts && "
        f"echo '{ip} {hostname} {marker}' >> /etc/hosts"
    )


def unset_host_alias(marker: str = HOST_ALIAS_MARKER) -> str:
    return f"sed -i '/{marker}$/d' /etc/hosts"


def write_file(path: str, content: str, mode: str = "0644") -> str:
    """Write ``content`` to ``path`` through a quoted heredoc."""
    directory = path.rsplit("/", 1)[0] or "/"
    if not content.endswith("\n"):
        content += "\n"
    return (
        f"mkdir -p {directory} && cat > {path} <<'{HEREDOC_DELIMITER}'\n"
        f"{content}"
        f"{HEREDOC_DELIMITER}\n"
        f"chmod {mode} {path}"
    )
