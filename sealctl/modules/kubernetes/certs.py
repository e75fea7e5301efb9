"""Cluster certificate generation.

Certificates are created on the controller before master-zero is bootstrapped
and shipped to the control plane, so the same PKI can be handed to every
master that joins later.
"""
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import List

from sealctl.errors import ConfigurationError

logger = logging.getLogger("sealctl.kubernetes.certs")


class CertificateGenerator(ABC):
    """Produces the cluster PKI on local disk."""

    @abstractmethod
    def generate(self, pki_dir: str, etcd_dir: str, hostname: str, advertise_address: str,
                 service_cidr: str, dns_domain: str, sans: List[str]) -> None:
        """Write the CA, API server, front proxy, service account and etcd material."""


class KubeadmCertGenerator(CertificateGenerator):
    """Runs ``kubeadm init phase certs all`` on the local machine."""

    def __init__(self, kubeadm: str = "kubeadm"):
        self.kubeadm = kubeadm

    def command(self, pki_dir: str, hostname: str, advertise_address: str, service_cidr: str,
                dns_domain: str, sans: List[str]) -> List[str]:
        extra_sans = list(dict.fromkeys([hostname] + list(sans)))
        return [
            self.kubeadm, "init", "phase", "certs", "all",
            f"--cert-dir={pki_dir}",
            f"--apiserver-advertise-address={advertise_address}",
            f"--service-cidr={service_cidr}",
            f"--service-dns-domain={dns_domain}",
            f"--apiserver-cert-extra-sans={','.join(extra_sans)}",
        ]

    def generate(self, pki_dir: str, etcd_dir: str, hostname: str, advertise_address: str,
                 service_cidr: str, dns_domain: str, sans: List[str]) -> None:
        """Generate every certificate kubeadm needs into ``pki_dir``.

        Existing certificates are kept, so a repeated install reuses the same CA.

        Raises:
            ConfigurationError: If kubeadm is not installed or fails
        """
        if shutil.which(self.kubeadm) is None:
            raise ConfigurationError(f"{self.kubeadm} not found on PATH, needed to generate cluster certificates")
        os.makedirs(pki_dir, exist_ok=True)
        cmd = self.command(pki_dir, hostname, advertise_address, service_cidr, dns_domain, sans)
        logger.info(f"🔐 Generating certificates for {hostname} into {pki_dir}")
        logger.debug(f"💻 Running: {' '.join(cmd)}")
        try:
            subprocess.run(cmd, check=True, text=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except subprocess.CalledProcessError as e:
            raise ConfigurationError(f"certificate generation failed (exit code {e.returncode}): {e.stderr}") from e

        # kubeadm always writes etcd certificates below <pki>/etcd
        generated_etcd = os.path.join(pki_dir, "etcd")
        if os.path.abspath(etcd_dir) != os.path.abspath(generated_etcd):
            shutil.copytree(generated_etcd, etcd_dir, dirs_exist_ok=True)
