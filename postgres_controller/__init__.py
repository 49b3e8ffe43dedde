"""PostgreSQL custom resource controller for Kubernetes."""

__version__ = "0.2.0"
