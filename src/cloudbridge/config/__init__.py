"""Configuration for CloudBridge."""

from .settings import CloudBridgeConfig, build_settings, get_config, reload_config, settings

__all__ = ["CloudBridgeConfig", "build_settings", "get_config", "reload_config", "settings"]
