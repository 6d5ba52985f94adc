"""Shared resource watches, service health checks and OVN load-balancer and address-set management."""

__version__ = "0.1.0"

__all__ = [
    "objects",
    "kube",
    "healthcheck",
    "factory",
    "ovn_common",
    "loadbalancer",
    "endpoints",
    "controller",
]