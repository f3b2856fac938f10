"""Chat settings, their on-disk store and the encrypted API key vault."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.budget import DEFAULT_TRIM_DEPTH
from ..ai.client import ClientSettings
from ..ai.dispatch import DEFAULT_MAX_ITERATIONS

__all__ = [
    "ChatSettings",
    "SettingsStore",
    "SecretVault",
    "DEFAULT_CONTEXT_WINDOW",
    "environment_overrides",
    "model_context_window",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".copilot_chat"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_DEFAULT_HISTORY_DIR = _SETTINGS_DIR / "history"
# Version 2 stores the API key encrypted.
_SETTINGS_VERSION = 2
_API_KEY_FIELD = "api_key_ciphertext"

DEFAULT_CONTEXT_WINDOW = 128_000

# Longest prefix wins.
_MODEL_CONTEXT_WINDOWS: Mapping[str, int] = {
    "gpt-3.5-turbo": 16_385,
    "gpt-4": 8_192,
    "gpt-4-turbo": 128_000,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4.1": 1_047_576,
    "gpt-5": 400_000,
    "o1": 200_000,
    "o3": 200_000,
    "o4-mini": 200_000,
    "claude": 200_000,
    "gemini": 1_048_576,
    "mistral-large": 128_000,
    "codestral": 256_000,
}


def model_context_window(model: str) -> int:
    """Return the context window of ``model``, defaulting to 128k tokens."""
    name = (model or "").strip().lower()
    if "/" in name:
        name = name.rsplit("/", 1)[1]
    best = ""
    for prefix in _MODEL_CONTEXT_WINDOWS:
        if name.startswith(prefix) and len(prefix) > len(best):
            best = prefix
    return _MODEL_CONTEXT_WINDOWS[best] if best else DEFAULT_CONTEXT_WINDOW


@dataclass(slots=True)
class ChatSettings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    context_window: int | None = None
    max_tool_iterations: int = DEFAULT_MAX_ITERATIONS
    trim_depth: int = DEFAULT_TRIM_DEPTH
    history_dir: str | None = None
    max_saved_chats: int = 50
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False

    def resolved_context_window(self) -> int:
        """Explicit override if set, else the known window of :attr:`model`."""
        if self.context_window:
            return self.context_window
        return model_context_window(self.model)

    def history_path(self) -> Path:
        return Path(self.history_dir).expanduser() if self.history_dir else _DEFAULT_HISTORY_DIR

    def to_client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            temperature=self.temperature,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.debug_logging,
        )


# -----------------------------------------------------------------------------
# Environment overrides
# -----------------------------------------------------------------------------


def _parse_bool(raw: str) -> bool:
    return raw.lower() in {"1", "true", "yes", "on", "debug"}


_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "COPILOT_CHAT_API_KEY": ("api_key", str),
    "COPILOT_CHAT_BASE_URL": ("base_url", str),
    "COPILOT_CHAT_MODEL": ("model", str),
    "COPILOT_CHAT_ORGANIZATION": ("organization", str),
    "COPILOT_CHAT_HISTORY_DIR": ("history_dir", str),
    "COPILOT_CHAT_DEBUG_LOGGING": ("debug_logging", _parse_bool),
    "COPILOT_CHAT_CONTEXT_WINDOW": ("context_window", int),
    "COPILOT_CHAT_MAX_TOOL_ITERATIONS": ("max_tool_iterations", int),
    "COPILOT_CHAT_MAX_RETRIES": ("max_retries", int),
    "COPILOT_CHAT_REQUEST_TIMEOUT": ("request_timeout", float),
    "COPILOT_CHAT_TEMPERATURE": ("temperature", float),
}


def environment_overrides(environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Collect ``COPILOT_CHAT_*`` overrides, skipping values that do not parse."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for env_name, (field_name, convert) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None:
            continue
        try:
            overrides[field_name] = convert(raw.strip())
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: expected %s", env_name, raw, convert.__name__)
    return overrides


# -----------------------------------------------------------------------------
# Secret vault
# -----------------------------------------------------------------------------


class SecretVault:
    """Encrypts secrets with a Fernet key kept next to the settings file.

    Tokens are stored as ``fernet:<token>``. The key file is created on first
    use with owner-only permissions.
    """

    backend = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.backend}:{token}"

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext of ``token``.

        Raises:
            ValueError: The token belongs to another backend or was produced
                with a different key.
        """
        if not token:
            return ""
        prefix, sep, payload = token.partition(":")
        if not sep:
            payload = token
        elif prefix != self.backend:
            raise ValueError(f"Unsupported secret backend {prefix!r}")
        try:
            return self._cipher().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Secret could not be decrypted with the current key") from exc

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".keytmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        LOGGER.info("Created settings encryption key at %s", path)
        return key


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------


class SettingsStore:
    """Reads and writes :class:`ChatSettings` as JSON.

    The API key never reaches the file in plaintext: it is written as
    ``api_key_ciphertext`` through :class:`SecretVault`. Files written by
    older versions (plaintext ``api_key``) are re-saved encrypted on load.
    """

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> ChatSettings:
        """Load settings; ``overrides`` (e.g. CLI flags) apply first, then the environment."""
        payload = self._read_payload()
        settings, stale = self._from_payload(payload)
        if stale:
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Failed to migrate settings file %s: %s", self._path, exc)

        layered = {key: value for key, value in (overrides or {}).items() if value is not None}
        layered.update(environment_overrides())
        settings = _with_overrides(settings, layered)
        LOGGER.debug(
            "Settings loaded from %s: model=%s base_url=%s api_key=%s",
            self._path,
            settings.model,
            settings.base_url,
            redact_secret(settings.api_key),
        )
        return settings

    def save(self, settings: ChatSettings) -> Path:
        """Write ``settings`` atomically, encrypting the API key."""
        data = asdict(settings)
        api_key = data.pop("api_key")
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _from_payload(self, payload: Mapping[str, Any]) -> tuple[ChatSettings, bool]:
        """Build settings from a file payload; the flag asks for a re-save."""
        if not payload:
            return ChatSettings(), False
        api_key = ""
        legacy_key = payload.get("api_key")
        if payload.get(_API_KEY_FIELD):
            try:
                api_key = self._vault.decrypt(payload[_API_KEY_FIELD])
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt stored API key: %s", exc)
        elif legacy_key:
            LOGGER.info("Encrypting API key stored in plaintext in %s", self._path)
            api_key = str(legacy_key)

        known = {item.name for item in fields(ChatSettings)} - {"api_key"}
        data = {key: value for key, value in payload.items() if key in known}
        try:
            settings = ChatSettings(api_key=api_key, **data)
        except TypeError as exc:
            LOGGER.warning("Settings file %s contained unexpected data: %s", self._path, exc)
            settings = ChatSettings(api_key=api_key)
        stale = bool(legacy_key) or payload.get("version") != _SETTINGS_VERSION
        return settings, stale

    def _read_payload(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}


def _with_overrides(settings: ChatSettings, overrides: Mapping[str, Any]) -> ChatSettings:
    known = {item.name for item in fields(ChatSettings)}
    applicable = {key: value for key, value in overrides.items() if key in known}
    ignored = sorted(set(overrides) - known)
    if ignored:
        LOGGER.debug("Ignoring unknown settings overrides: %s", ignored)
    if not applicable:
        return settings
    LOGGER.debug("Applying settings overrides: %s", sorted(applicable))
    return replace(settings, **applicable)


def redact_secret(value: str | None) -> str:
    """Mask all but the first and last two characters of ``value``."""
    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]
