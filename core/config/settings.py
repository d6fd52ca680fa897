"""
Runtime settings for the execution layer.

Settings come from three layers, later ones winning:
    1. RuntimeSettings defaults
    2. An optional YAML file (argument, or CONDUIT_CONFIG_PATH)
    3. Environment variables

Environment variables:
    CONDUIT_MODEL, CONDUIT_MAX_ATTEMPTS, CONDUIT_BACKOFF_BASE,
    CONDUIT_BACKOFF_MAX, CONDUIT_TOKEN_BUFFER_MS, CONDUIT_HTTP_TIMEOUT,
    CONDUIT_MAX_TOKENS, CONDUIT_ANTHROPIC_VERSION, ANTHROPIC_BASE_URL,
    CLAUDE_CLIENT_DISABLE_SDK=1, CLAUDE_CLIENT_FORCE_HTTP_API=1

The API key is never part of RuntimeSettings; build_runtime_context()
resolves it per process (ANTHROPIC_API_KEY, then OPENROUTER_API_KEY).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping, Optional

import httpx
import yaml
from pydantic import BaseModel, Field, ValidationError

from core.exceptions import ConfigurationError
from core.runtime.adapters import BackendAdapter, HTTPAdapter, SDKAdapter
from core.runtime.retry import RetryPolicy
from core.runtime.runner import Runner
from core.runtime.token_cache import (
    DEFAULT_EXPIRY_BUFFER_MS,
    TokenCache,
    TokenGenerator,
)
from core.runtime.types import RuntimeContext

CONFIG_PATH_ENV = "CONDUIT_CONFIG_PATH"

# env var -> settings field
_ENV_FIELDS = {
    "CONDUIT_MODEL": "model",
    "CONDUIT_MAX_ATTEMPTS": "max_attempts",
    "CONDUIT_BACKOFF_BASE": "backoff_base_seconds",
    "CONDUIT_BACKOFF_MAX": "backoff_max_seconds",
    "CONDUIT_TOKEN_BUFFER_MS": "token_expiry_buffer_ms",
    "CONDUIT_HTTP_TIMEOUT": "http_timeout_seconds",
    "CONDUIT_MAX_TOKENS": "max_tokens",
    "CONDUIT_ANTHROPIC_VERSION": "anthropic_version",
    "ANTHROPIC_BASE_URL": "anthropic_base_url",
}

# Feature flags are on only when set to exactly "1".
_ENV_FLAGS = {
    "CLAUDE_CLIENT_DISABLE_SDK": "disable_sdk",
    "CLAUDE_CLIENT_FORCE_HTTP_API": "force_http_api",
}

_API_KEY_ENVS = ("ANTHROPIC_API_KEY", "OPENROUTER_API_KEY")


class RuntimeSettings(BaseModel):
    """Validated settings for the Runner, its adapters and the token cache."""

    model: str = Field("claude-sonnet-4", min_length=1)
    max_attempts: int = Field(3, ge=1, le=10)
    backoff_base_seconds: float = Field(1.0, ge=0)
    backoff_max_seconds: float = Field(30.0, ge=0)
    token_expiry_buffer_ms: float = Field(DEFAULT_EXPIRY_BUFFER_MS, ge=0)
    http_timeout_seconds: float = Field(120.0, gt=0)
    max_tokens: int = Field(4096, ge=1)
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    disable_sdk: bool = False
    force_http_api: bool = False

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base_seconds,
            max_delay=self.backoff_max_seconds,
        )


# ─── Loading ──────────────────────────────────────────────────────────


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Config not found: {path}", config_path=str(path)
        )
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            f"Config is not valid YAML: {path}", config_path=str(path)
        ) from exc

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Config must be a mapping: {path}", config_path=str(path)
        )
    return raw


def load_settings(
    config_path: Optional[str | Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RuntimeSettings:
    """
    Build RuntimeSettings from defaults, YAML and the environment.

    Args:
        config_path: YAML file to read. Falls back to CONDUIT_CONFIG_PATH;
                     no file is read when neither is set.
        environ: Environment to read (defaults to os.environ).

    Raises:
        ConfigurationError: unreadable file or invalid values.
    """
    env = os.environ if environ is None else environ
    path = config_path or env.get(CONFIG_PATH_ENV)

    raw: dict[str, Any] = _read_yaml(Path(path)) if path else {}

    for var, field_name in _ENV_FIELDS.items():
        value = env.get(var)
        if value is not None and value.strip() != "":
            raw[field_name] = value.strip()
    for var, field_name in _ENV_FLAGS.items():
        if env.get(var) == "1":
            raw[field_name] = True

    try:
        return RuntimeSettings(**raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        setting = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid setting '{setting}': {first.get('msg')}",
            setting=setting or None,
            config_path=str(path) if path else None,
            details={"errors": exc.errors(include_url=False)},
        ) from exc


# ─── Runtime Construction ─────────────────────────────────────────────


def _running_as_root() -> bool:
    getuid = getattr(os, "getuid", None)
    return getuid is not None and getuid() == 0


def resolve_api_key(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    env = os.environ if environ is None else environ
    for var in _API_KEY_ENVS:
        value = env.get(var)
        if value:
            return value
    return None


def build_runtime_context(
    settings: RuntimeSettings,
    api_key: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    *,
    model: Optional[str] = None,
    workspace_path: Optional[str] = None,
    credential_key: Optional[str] = None,
    running_as_root: Optional[bool] = None,
    require_api_key: bool = True,
) -> RuntimeContext:
    """
    Assemble the per-run RuntimeContext.

    Raises:
        ConfigurationError: no API key could be resolved and no
            credential_key was given ("anthropic_api_key_missing").
            Skipped when require_api_key is False (inspection only).
    """
    env = dict(os.environ if environ is None else environ)
    key = api_key or resolve_api_key(env)
    if require_api_key and not key and not credential_key:
        raise ConfigurationError("anthropic_api_key_missing", setting="api_key")

    return RuntimeContext(
        api_key=key or "",
        model=model or settings.model,
        environment=env,
        disable_sdk=settings.disable_sdk,
        force_http_api=settings.force_http_api,
        running_as_root=(
            _running_as_root() if running_as_root is None else running_as_root
        ),
        workspace_path=workspace_path,
        credential_key=credential_key,
    )


def build_adapters(
    settings: RuntimeSettings,
    client: Optional[httpx.AsyncClient] = None,
) -> list[BackendAdapter]:
    return [
        SDKAdapter(),
        HTTPAdapter(
            base_url=settings.anthropic_base_url,
            api_version=settings.anthropic_version,
            timeout=settings.http_timeout_seconds,
            max_tokens=settings.max_tokens,
            client=client,
        ),
    ]


def build_token_cache(settings: RuntimeSettings, generator: TokenGenerator) -> TokenCache:
    return TokenCache(generator, expiry_buffer_ms=settings.token_expiry_buffer_ms)


def build_runner(
    settings: RuntimeSettings,
    token_cache: Optional[TokenCache] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Runner:
    """Wire a Runner from settings. Pass the process-wide TokenCache, if any."""
    return Runner(
        build_adapters(settings, client=client),
        retry_policy=settings.retry_policy(),
        token_cache=token_cache,
    )
