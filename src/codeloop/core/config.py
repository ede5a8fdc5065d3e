"""Configuration and credential management for codeloop."""

from __future__ import annotations

import base64
import json
import logging
import os
import tomllib
from collections.abc import Callable
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import tomli_w
import typer
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(os.environ.get("CODELOOP_HOME", Path.home() / ".codeloop"))
CONFIG_FILENAME = "config.toml"
CREDENTIALS_FILENAME = "credentials.json"
PROJECT_CONFIG_RELATIVE = Path(".codeloop") / CONFIG_FILENAME
PBKDF_ITERATIONS = 390_000
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"


class ConfigurationError(RuntimeError):
    """Raised when configuration or credential loading fails."""


class CodeLoopConfig(BaseModel):
    """Persisted codeloop configuration settings."""

    config_version: int = 1
    llm_base_url: str = DEFAULT_BASE_URL
    llm_model: str = DEFAULT_MODEL
    llm_context_window: int | None = Field(default=None, gt=0)
    llm_max_output_tokens: int = Field(default=16_384, gt=0)
    llm_timeout_seconds: float = Field(default=120.0, gt=0)
    max_iterations: int = Field(default=25, ge=1)
    min_api_interval_seconds: float = Field(default=2.0, ge=0)
    auto_run_terminal: bool = False
    max_tracked_files: int = Field(default=50, ge=1)
    web_search_api_key: str | None = None


@dataclass
class ConfigContext:
    """Represents an initialized configuration and decrypted secrets."""

    config: CodeLoopConfig
    llm_api_key: str
    passphrase: str | None


class CredentialStore:
    """Encrypts/decrypts API keys using a passphrase-derived key."""

    def __init__(self, credentials_path: Path) -> None:
        self.credentials_path = credentials_path

    def exists(self) -> bool:
        return self.credentials_path.exists()

    def save(self, passphrase: str, api_key: str) -> None:
        salt = os.urandom(16)
        key = self._derive_key(passphrase, salt, PBKDF_ITERATIONS)
        token = Fernet(key).encrypt(api_key.encode("utf-8"))
        payload = {
            "salt": base64.b64encode(salt).decode("ascii"),
            "ciphertext": base64.b64encode(token).decode("ascii"),
            "iterations": PBKDF_ITERATIONS,
        }
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_path.write_text(json.dumps(payload, indent=2))
        try:
            self.credentials_path.chmod(0o600)
        except OSError:  # pragma: no cover - platform dependent
            logger.debug("Could not restrict permissions on %s", self.credentials_path)

    def load(self, passphrase: str) -> str:
        try:
            data = json.loads(self.credentials_path.read_text())
            salt = base64.b64decode(data["salt"])
            ciphertext = base64.b64decode(data["ciphertext"])
            iterations = int(data.get("iterations", PBKDF_ITERATIONS))
        except (OSError, ValueError, KeyError) as exc:
            raise ConfigurationError(f"Unreadable credentials file {self.credentials_path}: {exc}") from exc
        key = self._derive_key(passphrase, salt, iterations)
        try:
            decrypted = Fernet(key).decrypt(ciphertext)
        except InvalidToken as exc:
            raise ConfigurationError("Invalid passphrase for codeloop credentials") from exc
        return decrypted.decode("utf-8")

    @staticmethod
    def _derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


def merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""

    result = deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def project_config_path(workspace_root: Path) -> Path:
    return workspace_root / PROJECT_CONFIG_RELATIVE


class ConfigManager:
    """Handles loading, prompting, and persisting codeloop configuration."""

    def __init__(
        self,
        config_dir: Path | None = None,
        prompt_fn: Callable[..., str] | None = None,
        echo_fn: Callable[[str], None] | None = None,
        project_config_path: Path | None = None,
        override_config_path: Path | None = None,
    ) -> None:
        self.config_dir = config_dir or DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_path = self.config_dir / CONFIG_FILENAME
        self.credentials_path = self.config_dir / CREDENTIALS_FILENAME
        self._credential_store = CredentialStore(self.credentials_path)
        self._prompt = prompt_fn or self._default_prompt
        self._echo = echo_fn or typer.echo
        self.project_config_path = project_config_path
        self.override_config_path = override_config_path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def ensure(
        self,
        *,
        interactive: bool = True,
        llm_base_url: str | None = None,
        llm_model: str | None = None,
        llm_api_key: str | None = None,
        passphrase: str | None = None,
        offline_mode: bool = False,
    ) -> ConfigContext:
        """Ensure configuration and credentials exist; return decrypted context."""

        if offline_mode:
            if not self.config_path.exists():
                self._save_config(CodeLoopConfig())
            self.update_llm_preferences(llm_base_url=llm_base_url, llm_model=llm_model)
            return ConfigContext(config=self.load(), llm_api_key=llm_api_key or "", passphrase=passphrase)

        if self.config_path.exists() and (self._credential_store.exists() or llm_api_key is not None):
            self.update_llm_preferences(llm_base_url=llm_base_url, llm_model=llm_model)
            config = self.load()
            if llm_api_key is not None:
                return ConfigContext(config=config, llm_api_key=llm_api_key, passphrase=passphrase)
            env_key = os.environ.get("CODELOOP_LLM_API_KEY")
            if env_key:
                return ConfigContext(config=config, llm_api_key=env_key, passphrase=passphrase)
            api_key, used_passphrase = self._load_api_key(passphrase=passphrase, interactive=interactive)
            return ConfigContext(config=config, llm_api_key=api_key, passphrase=used_passphrase)

        return self._bootstrap_config(
            interactive=interactive,
            llm_base_url=llm_base_url,
            llm_model=llm_model,
            llm_api_key=llm_api_key,
            passphrase=passphrase,
        )

    def load(self) -> CodeLoopConfig:
        """Return the merged global, project and override configuration."""

        data: dict[str, Any] = self._read_config_dict(self.config_path)
        for extra in (self.project_config_path, self.override_config_path):
            if extra is not None:
                data = merge_dicts(data, self._read_config_dict(extra))
        try:
            return CodeLoopConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

    def update_llm_preferences(
        self,
        *,
        llm_base_url: str | None = None,
        llm_model: str | None = None,
        llm_context_window: int | None = None,
        llm_max_output_tokens: int | None = None,
    ) -> None:
        updates: dict[str, object] = {}
        if llm_base_url is not None:
            updates["llm_base_url"] = llm_base_url
        if llm_model is not None:
            updates["llm_model"] = llm_model
        if llm_context_window is not None:
            updates["llm_context_window"] = int(llm_context_window)
        if llm_max_output_tokens is not None:
            updates["llm_max_output_tokens"] = int(llm_max_output_tokens)
        if updates:
            self._update_base_config(**updates)

    def update_agent_policy(
        self,
        *,
        max_iterations: int | None = None,
        auto_run_terminal: bool | None = None,
        min_api_interval_seconds: float | None = None,
        max_tracked_files: int | None = None,
    ) -> None:
        updates: dict[str, object] = {}
        if max_iterations is not None:
            updates["max_iterations"] = int(max_iterations)
        if auto_run_terminal is not None:
            updates["auto_run_terminal"] = bool(auto_run_terminal)
        if min_api_interval_seconds is not None:
            updates["min_api_interval_seconds"] = float(min_api_interval_seconds)
        if max_tracked_files is not None:
            updates["max_tracked_files"] = int(max_tracked_files)
        if updates:
            self._update_base_config(**updates)

    # ------------------------------------------------------------------
    # Bootstrap flow
    # ------------------------------------------------------------------
    def _bootstrap_config(
        self,
        *,
        interactive: bool,
        llm_base_url: str | None,
        llm_model: str | None,
        llm_api_key: str | None,
        passphrase: str | None,
    ) -> ConfigContext:
        self._echo("\nFirst-time codeloop setup")

        base_url = llm_base_url or os.environ.get("CODELOOP_LLM_BASE_URL") or DEFAULT_BASE_URL
        if interactive:
            base_url = self._prompt("LLM base URL", default=base_url)

        model = llm_model or os.environ.get("CODELOOP_LLM_MODEL") or DEFAULT_MODEL
        if interactive:
            model = self._prompt("LLM model", default=model)

        api_key = llm_api_key or os.environ.get("CODELOOP_LLM_API_KEY")
        if not api_key:
            if not interactive:
                raise ConfigurationError("LLM API key required for non-interactive configuration")
            api_key = self._prompt("Enter LLM API key", hide_input=True)

        passphrase_value = passphrase or os.environ.get("CODELOOP_LLM_PASSPHRASE")
        if not passphrase_value:
            if not interactive:
                raise ConfigurationError("Passphrase required for non-interactive configuration")
            passphrase_value = self._prompt(
                "Create a passphrase to secure your codeloop credentials",
                hide_input=True,
                confirmation_prompt=True,
            )

        self.update_llm_preferences(llm_base_url=base_url, llm_model=model)
        config = self.load()
        self._credential_store.save(passphrase_value, api_key)
        logger.info("Wrote configuration to %s", self.config_path)
        self._echo(f"Configuration saved to {self.config_path}")
        return ConfigContext(config=config, llm_api_key=api_key, passphrase=passphrase_value)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _save_config(self, config: CodeLoopConfig) -> None:
        self.config_path.write_text(tomli_w.dumps(config.model_dump(exclude_none=True)))

    def _update_base_config(self, **updates: object) -> None:
        current = dict(self._read_config_dict(self.config_path))
        current.update(updates)
        try:
            base_config = CodeLoopConfig(**current)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc
        self._save_config(base_config)

    def _read_config_dict(self, path: Path | None) -> dict[str, Any]:
        if path is None or not path.exists():
            return {}
        try:
            return tomllib.loads(path.read_text())
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ConfigurationError(f"Failed to load config from {path}: {exc}") from exc

    def _load_api_key(self, *, passphrase: str | None, interactive: bool) -> tuple[str, str]:
        attempts = 3
        while True:
            pwd = passphrase or os.environ.get("CODELOOP_LLM_PASSPHRASE")
            if not pwd:
                if not interactive:
                    raise ConfigurationError("Passphrase required to decrypt codeloop credentials")
                pwd = self._prompt("Enter codeloop passphrase", hide_input=True)
            try:
                return self._credential_store.load(pwd), pwd
            except ConfigurationError:
                if not interactive:
                    raise
                attempts -= 1
                if attempts <= 0:
                    raise
                self._echo("Invalid passphrase. Please try again.")
                passphrase = None

    @staticmethod
    def _default_prompt(
        message: str,
        *,
        hide_input: bool = False,
        confirmation_prompt: bool = False,
        default: str | None = None,
    ) -> str:
        if default is not None:
            return typer.prompt(message, default=default, hide_input=hide_input, confirmation_prompt=confirmation_prompt)
        return typer.prompt(message, hide_input=hide_input, confirmation_prompt=confirmation_prompt)


__all__ = [
    "CodeLoopConfig",
    "ConfigContext",
    "ConfigManager",
    "ConfigurationError",
    "CredentialStore",
    "merge_dicts",
    "project_config_path",
]
