"""sealctl - distributed Kubernetes cluster lifecycle over SSH."""

__version__ = "0.1.0"
