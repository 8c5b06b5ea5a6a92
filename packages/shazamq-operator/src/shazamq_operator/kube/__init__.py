"""Kubernetes adapter for the platform protocol."""

from shazamq_operator.kube.client import KubePlatformClient

__all__ = ["KubePlatformClient"]
