"""Configuration module for the Live Song Request Agent."""

from .settings import Settings, RuntimeSettings, get_settings

__all__ = ["Settings", "RuntimeSettings", "get_settings"]
