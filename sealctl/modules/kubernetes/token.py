"""Bootstrap token protocol.

``kubeadm init`` does not print its join credentials in a structured form; it
prints a human readable ``kubeadm join ...`` command followed by an
explanatory sentence starting with "Please note". This module scrapes that
text, so any change in kubeadm's wording shows up here first.
"""
import logging
import re
from typing import List, Optional

from sealctl.errors import TokenParseError
from .models import BootstrapToken

logger = logging.getLogger("sealctl.kubernetes.token")

JOIN_MARKER = "kubeadm join"
JOIN_TERMINATOR = "Please note"

FLAG_TOKEN = "--token"
FLAG_CA_CERT_HASH = "--discovery-token-ca-cert-hash"
FLAG_CERTIFICATE_KEY = "--certificate-key"

# kubeadm certificate keys are 32 bytes hex encoded. The key is cut by
# position, so a longer value is truncated rather than rejected.
CERTIFICATE_KEY_LENGTH = 64
_CERTIFICATE_KEY_LINE = re.compile(r"^[0-9a-f]{64}$")


def _clean(token: str) -> str:
    for noise in ("\t", "\n", "\\"):
        token = token.replace(noise, "")
    return token.strip()


def _tokenize(command: str) -> List[str]:
    tokens = [_clean(t) for t in command.split()]
    return [t for t in tokens if t]


def _flag_values(tokens: List[str], flag: str) -> List[str]:
    """Every value given to ``flag`` as ``--flag value`` or ``--flag=value``."""
    values = []
    for i, token in enumerate(tokens):
        if token == flag and i + 1 < len(tokens) and not tokens[i + 1].startswith("--"):
            values.append(tokens[i + 1])
        elif token.startswith(flag + "="):
            values.append(token[len(flag) + 1:])
    return values


def _truncate_certificate_key(value: str) -> str:
    if len(value) > CERTIFICATE_KEY_LENGTH:
        logger.warning(
            f"certificate key is {len(value)} characters long, keeping the first {CERTIFICATE_KEY_LENGTH}"
        )
    elif len(value) < CERTIFICATE_KEY_LENGTH:
        logger.warning(f"certificate key is only {len(value)} characters long")
    return value[:CERTIFICATE_KEY_LENGTH]


def decode_join_command(command: str) -> BootstrapToken:
    """Decode the arguments of a ``kubeadm join`` command.

    ``command`` may start with ``kubeadm join`` or with the API server
    endpoint that follows it. Flags that are absent leave the matching field
    empty; callers check ``BootstrapToken.is_empty`` before joining.
    """
    command = command.strip()
    if command.startswith(JOIN_MARKER):
        command = command[len(JOIN_MARKER):]
    tokens = _tokenize(command)

    endpoint = tokens[0] if tokens and not tokens[0].startswith("--") else ""
    token_values = _flag_values(tokens, FLAG_TOKEN)
    key_values = _flag_values(tokens, FLAG_CERTIFICATE_KEY)

    return BootstrapToken(
        token=token_values[0] if token_values else "",
        ca_cert_hashes=tuple(_flag_values(tokens, FLAG_CA_CERT_HASH)),
        certificate_key=_truncate_certificate_key(key_values[0]) if key_values else "",
        api_server_endpoint=endpoint,
    )


def decode_bootstrap_output(output: str) -> BootstrapToken:
    """Extract the join credentials from the stdout of ``kubeadm init``.

    Raises:
        TokenParseError: If the output holds no ``kubeadm join`` command
    """
    if JOIN_MARKER not in output:
        raise TokenParseError(f"'{JOIN_MARKER}' not found in bootstrap output")
    join_command = output.split(JOIN_MARKER, 1)[1]
    if JOIN_TERMINATOR in join_command:
        join_command = join_command.split(JOIN_TERMINATOR, 1)[0]
    else:
        logger.warning(f"'{JOIN_TERMINATOR}' not found in bootstrap output, parsing up to the end")

    token = decode_join_command(join_command)
    logger.info(f"Decoded join command: {token}")
    return token


def parse_certificate_key(output: str) -> str:
    """Return the key printed by ``kubeadm init phase upload-certs --upload-certs``.

    Raises:
        TokenParseError: If no line of the output is a certificate key
    """
    key: Optional[str] = None
    for line in output.splitlines():
        line = line.strip()
        if _CERTIFICATE_KEY_LINE.match(line):
            key = line
    if key is None:
        raise TokenParseError("no certificate key found in upload-certs output")
    return key
