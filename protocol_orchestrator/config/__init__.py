"""Configuration module for Protocol Orchestrator."""

from protocol_orchestrator.config.settings import (
    Settings,
    UnavailablePolicy,
    get_settings,
    load_settings_from_yaml,
)

__all__ = ["Settings", "UnavailablePolicy", "get_settings", "load_settings_from_yaml"]
