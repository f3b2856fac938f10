"""Service layer helpers (settings)."""

from .settings import ChatSettings, SecretVault, SettingsStore, model_context_window

__all__ = [
    "ChatSettings",
    "SecretVault",
    "SettingsStore",
    "model_context_window",
]
