"""
Config Module - Black Box Interface

Purpose: Typed settings for a deployment run
Interface: EnvConfigProvider.get_settings(), Settings.with_overrides()
Hidden: Environment parsing, .env loading, validation
"""

from .provider import (
    BackendConfig,
    ClusterConfig,
    ConfigProvider,
    EnvConfigProvider,
    RunConfig,
    Settings,
    WorkloadConfig,
)

__all__ = [
    "BackendConfig",
    "ClusterConfig",
    "ConfigProvider",
    "EnvConfigProvider",
    "RunConfig",
    "Settings",
    "WorkloadConfig",
]
