"""
Resources Module - Black Box Interface

Purpose: Typed access to the cluster (kubectl, helm) and the compose backend
Interface: get(), apply(), delete(), exec(), logs(), wait_until_ready(),
           port_forward(), http_probe(), helm_*(), compose_*()
Hidden: CLI argv construction, output parsing, process lifecycle

Can be replaced with a Kubernetes API client without touching callers.
"""

from .client import ComposeService, PortForwardSession, ResourceClient, load_manifests
from .runner import CommandRunner

__all__ = [
    "CommandRunner",
    "ComposeService",
    "PortForwardSession",
    "ResourceClient",
    "load_manifests",
]
