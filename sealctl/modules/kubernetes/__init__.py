"""kubeadm based Kubernetes lifecycle runtime."""
