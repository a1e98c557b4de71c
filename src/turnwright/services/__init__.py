"""Service layer helpers (settings, secrets)."""

from .settings import Settings, SettingsStore, SecretVault, validate_auth_method

__all__ = ["Settings", "SettingsStore", "SecretVault", "validate_auth_method"]
