"""Tests for settings persistence and overrides."""

from __future__ import annotations

import json

import pytest

from copilot_chat.services.settings import (
    DEFAULT_CONTEXT_WINDOW,
    ChatSettings,
    SecretVault,
    SettingsStore,
    environment_overrides,
    model_context_window,
    redact_secret,
)


class TestModelContextWindow:
    @pytest.mark.parametrize(
        ("model", "expected"),
        [
            ("gpt-4o", 128_000),
            ("gpt-4.1-mini", 1_047_576),
            ("openai/gpt-4", 8_192),
            ("claude-3-5-sonnet-latest", 200_000),
            ("my-local-llama", DEFAULT_CONTEXT_WINDOW),
            ("", DEFAULT_CONTEXT_WINDOW),
        ],
    )
    def test_lookup(self, model, expected):
        assert model_context_window(model) == expected

    def test_explicit_window_wins(self):
        assert ChatSettings(model="gpt-4", context_window=32_000).resolved_context_window() == 32_000
        assert ChatSettings(model="gpt-4").resolved_context_window() == 8_192


class TestSettingsStore:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = SettingsStore(tmp_path / "settings.json").load()
        assert settings == ChatSettings()

    def test_save_and_load_round_trip(self, tmp_path):
        store = SettingsStore(tmp_path / "nested" / "settings.json")
        original = ChatSettings(model="gpt-4.1", temperature=0.1, max_tool_iterations=5, history_dir="~/chats")

        path = store.save(original)

        assert json.loads(path.read_text(encoding="utf-8"))["version"] == 2
        assert store.load() == original

    def test_unknown_keys_are_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"version": 1, "model": "o3", "theme": "dark"}), encoding="utf-8")

        assert SettingsStore(path).load().model == "o3"

    def test_invalid_json_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{oops", encoding="utf-8")

        assert SettingsStore(path).load() == ChatSettings()

    def test_cli_overrides(self, tmp_path):
        settings = SettingsStore(tmp_path / "settings.json").load(overrides={"model": "gpt-5", "bogus": 1, "api_key": None})
        assert settings.model == "gpt-5"
        assert settings.api_key == ""

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COPILOT_CHAT_MODEL", "gpt-4o")
        monkeypatch.setenv("COPILOT_CHAT_DEBUG_LOGGING", "yes")
        monkeypatch.setenv("COPILOT_CHAT_CONTEXT_WINDOW", "64000")
        monkeypatch.setenv("COPILOT_CHAT_TEMPERATURE", "not-a-number")

        settings = SettingsStore(tmp_path / "settings.json").load()

        assert settings.model == "gpt-4o"
        assert settings.debug_logging is True
        assert settings.context_window == 64_000
        assert settings.temperature is None


    def test_environment_overrides_beat_cli_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COPILOT_CHAT_MAX_RETRIES", "7")

        settings = SettingsStore(tmp_path / "settings.json").load(overrides={"max_retries": 1, "model": "o3"})

        assert settings.max_retries == 7
        assert settings.model == "o3"


class TestApiKeyEncryption:
    def test_api_key_is_stored_encrypted(self, tmp_path):
        path = tmp_path / "settings.json"
        store = SettingsStore(path)

        store.save(ChatSettings(api_key="sk-live-123456"))

        raw = path.read_text(encoding="utf-8")
        payload = json.loads(raw)
        assert "sk-live-123456" not in raw
        assert "api_key" not in payload
        assert payload["api_key_ciphertext"].startswith("fernet:")
        assert store.vault.key_path == tmp_path / "settings.key"
        assert store.vault.key_path.exists()
        assert SettingsStore(path).load().api_key == "sk-live-123456"

    def test_empty_key_writes_no_ciphertext(self, tmp_path):
        path = SettingsStore(tmp_path / "settings.json").save(ChatSettings())

        assert "api_key_ciphertext" not in json.loads(path.read_text(encoding="utf-8"))

    def test_plaintext_key_is_migrated(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"version": 1, "api_key": "sk-old", "model": "gpt-4o"}), encoding="utf-8")

        settings = SettingsStore(path).load()

        assert settings.api_key == "sk-old"
        assert settings.model == "gpt-4o"
        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["version"] == 2
        assert "api_key" not in payload
        assert payload["api_key_ciphertext"].startswith("fernet:")

    def test_key_from_another_vault_is_dropped(self, tmp_path):
        path = tmp_path / "settings.json"
        SettingsStore(path).save(ChatSettings(api_key="sk-live", model="o3"))
        (tmp_path / "settings.key").unlink()

        settings = SettingsStore(path).load()

        assert settings.api_key == ""
        assert settings.model == "o3"


class TestSecretVault:
    def test_round_trip(self, tmp_path):
        vault = SecretVault(tmp_path / "vault.key")
        token = vault.encrypt("hunter2")

        assert token.startswith("fernet:")
        assert SecretVault(tmp_path / "vault.key").decrypt(token) == "hunter2"
        assert vault.decrypt("") == ""

    def test_unknown_backend_is_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            SecretVault(tmp_path / "vault.key").decrypt("keyring:abc")

    def test_tampered_token_is_rejected(self, tmp_path):
        vault = SecretVault(tmp_path / "vault.key")
        token = vault.encrypt("hunter2")

        with pytest.raises(ValueError):
            vault.decrypt(token[:-4] + "AAAA")


def test_environment_overrides_skip_invalid_values():
    overrides = environment_overrides({"COPILOT_CHAT_MAX_RETRIES": "many", "COPILOT_CHAT_REQUEST_TIMEOUT": "12.5"})
    assert overrides == {"request_timeout": 12.5}


def test_client_settings_mirror_chat_settings():
    settings = ChatSettings(
        base_url="http://localhost:8000/v1",
        api_key="sk-test",
        model="gpt-4o",
        max_retries=5,
        default_headers={"X-Workspace": "demo"},
    )

    client = settings.to_client_settings()

    assert client.base_url == "http://localhost:8000/v1"
    assert client.max_retries == 5
    assert client.default_headers == {"X-Workspace": "demo"}
    assert ChatSettings().to_client_settings().default_headers is None


def test_redact_secret():
    assert redact_secret("sk-abcdef") == "sk*****ef"
    assert redact_secret("abc") == "***"
    assert redact_secret("") == ""
