"""Control plane and node readiness checks."""
import logging
import time

from sealctl.errors import RemoteExecutionError
from sealctl.modules.infradriver import InfraDriver
from .kubeadm import KUBECTL

logger = logging.getLogger("sealctl.kubernetes.health")


def wait_for_control_plane_ready(driver: InfraDriver, master: str, timeout: int = 300, interval: float = 5) -> bool:
    """Wait for the API server on ``master`` to report healthy.

    Returns:
        bool: True if the control plane is ready, False on timeout
    """
    logger.info(f"Waiting for control plane to be ready on {master}...")
    deadline = time.monotonic() + timeout

    while True:
        try:
            output = driver.cmd_to_string(master, f"{KUBECTL} get --raw=/healthz --request-timeout=5s")
            if output == "ok":
                logger.info("Control plane is ready")
                return True
        except RemoteExecutionError as e:
            logger.debug(f"Control plane not ready yet: {e}")

        if time.monotonic() >= deadline:
            break
        time.sleep(interval)

    logger.error("Timed out waiting for control plane to be ready")
    return False


def node_status(driver: InfraDriver, master: str, node_name: str) -> str:
    """STATUS column of ``kubectl get node``, e.g. ``Ready`` or ``NotReady``."""
    output = driver.cmd_to_string(master, f"{KUBECTL} get node {node_name} --no-headers")
    fields = output.split()
    return fields[1] if len(fields) > 1 else ""


def wait_for_node_ready(driver: InfraDriver, master: str, node_name: str, timeout: int = 300,
                        interval: float = 5) -> bool:
    """Wait until ``node_name`` is Ready, as seen from ``master``.

    A cordoned node (``Ready,SchedulingDisabled``) counts as ready.
    """
    logger.info(f"Waiting for node {node_name} to be Ready...")
    deadline = time.monotonic() + timeout

    while True:
        try:
            status = node_status(driver, master, node_name)
            if status.split(",")[0] == "Ready":
                logger.info(f"Node {node_name} is Ready")
                return True
            logger.debug(f"Node {node_name} is {status or 'unknown'}")
        except RemoteExecutionError as e:
            logger.debug(f"Node {node_name} not ready yet: {e}")

        if time.monotonic() >= deadline:
            break
        time.sleep(interval)

    logger.error(f"Timed out waiting for node {node_name} to be Ready")
    return False
