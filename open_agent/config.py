"""Settings via pydantic-settings with OPEN_AGENT_ env prefix.

Settings is the process-wide configuration read from the environment (and
an optional .env file). AgentOptions is what a single Session is built
from; it can be derived from Settings or constructed directly in code.
"""

from __future__ import annotations

import logging
import os
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from open_agent.api.framer import MalformedLinePolicy
from open_agent.api.tools import Tool
from open_agent.hooks import Hooks
from open_agent.retry import RetryPolicy

BASE_URL_ENV = "OPEN_AGENT_BASE_URL"
MODEL_ENV = "OPEN_AGENT_MODEL"


class Provider(StrEnum):
    """Local OpenAI-compatible servers with well-known default ports."""

    LMSTUDIO = "lmstudio"
    OLLAMA = "ollama"
    LLAMACPP = "llamacpp"
    VLLM = "vllm"

    @property
    def default_url(self) -> str:
        return _PROVIDER_URLS[self]

    @classmethod
    def parse(cls, name: str) -> Provider:
        """Lenient name parsing: case-insensitive, accepts common spellings."""
        key = name.strip().lower().replace("-", "").replace("_", "").replace(".", "")
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown provider: {name}") from None


_PROVIDER_URLS = {
    Provider.LMSTUDIO: "http://localhost:1234/v1",
    Provider.OLLAMA: "http://localhost:11434/v1",
    Provider.LLAMACPP: "http://localhost:8080/v1",
    Provider.VLLM: "http://localhost:8000/v1",
}


def get_base_url(provider: Provider | str | None = None, fallback: str | None = None) -> str:
    """Resolve the endpoint URL.

    Priority: OPEN_AGENT_BASE_URL, then the provider default, then
    ``fallback``, then the LM Studio default.
    """
    env_url = os.environ.get(BASE_URL_ENV)
    if env_url:
        return env_url
    if provider is not None:
        if isinstance(provider, str) and not isinstance(provider, Provider):
            provider = Provider.parse(provider)
        return provider.default_url
    return fallback or Provider.LMSTUDIO.default_url


def get_model(fallback: str | None = None, prefer_env: bool = True) -> str | None:
    """Resolve the model name, optionally letting OPEN_AGENT_MODEL win."""
    if prefer_env:
        env_model = os.environ.get(MODEL_ENV)
        if env_model:
            return env_model
    return fallback


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OPEN_AGENT_", env_file=".env", extra="ignore")

    # Endpoint
    model: str = ""
    base_url: str = ""
    provider: Provider | None = None
    api_key: str = "not-needed"
    timeout: float = 60.0

    # Sampling
    system_prompt: str = ""
    max_tokens: int = 4096
    temperature: float = 0.7
    top_p: float | None = None

    # Tool loop
    auto_execute_tools: bool = False
    max_tool_iterations: int = 5

    # Retry (opening a stream only)
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay: float = 60.0
    retry_jitter: float = 0.1

    # Multiplexing
    max_concurrent_sessions: int = 4

    malformed_line_policy: MalformedLinePolicy = MalformedLinePolicy.SKIP
    log_level: str = "info"

    @field_validator("provider", mode="before")
    @classmethod
    def _parse_provider(cls, v: Any) -> Any:
        if isinstance(v, str) and not isinstance(v, Provider):
            return Provider.parse(v) if v.strip() else None
        return v

    @model_validator(mode="after")
    def _validate_ranges(self) -> Settings:
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"temperature must be between 0 and 2, got {self.temperature}")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.max_tool_iterations < 1:
            raise ValueError("max_tool_iterations must be >= 1")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if self.max_concurrent_sessions < 1:
            raise ValueError("max_concurrent_sessions must be >= 1")
        return self

    @property
    def resolved_base_url(self) -> str:
        return self.base_url or get_base_url(self.provider)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )


class AgentOptions(BaseModel):
    """Construction options for one Session.

    Tools and hooks are live objects, so arbitrary types are allowed.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: str
    base_url: str
    system_prompt: str = ""
    api_key: str = "not-needed"
    max_tokens: int = Field(4096, gt=0)
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    top_p: float | None = Field(None, ge=0.0, le=1.0)
    timeout: float = Field(60.0, gt=0.0)
    tools: list[Tool] = Field(default_factory=list)
    hooks: Hooks = Field(default_factory=Hooks)
    auto_execute_tools: bool = False
    max_tool_iterations: int = Field(5, ge=1)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    malformed_line_policy: MalformedLinePolicy = MalformedLinePolicy.SKIP

    @field_validator("model")
    @classmethod
    def _model_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("model cannot be empty")
        return v

    @field_validator("base_url")
    @classmethod
    def _base_url_http(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> AgentOptions:
        """Build options from Settings; keyword arguments win over settings."""
        settings = settings or Settings()
        values: dict[str, Any] = {
            "model": settings.model,
            "base_url": settings.resolved_base_url,
            "system_prompt": settings.system_prompt,
            "api_key": settings.api_key,
            "max_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "timeout": settings.timeout,
            "auto_execute_tools": settings.auto_execute_tools,
            "max_tool_iterations": settings.max_tool_iterations,
            "retry": settings.retry_policy,
            "malformed_line_policy": settings.malformed_line_policy,
        }
        values.update(overrides)
        return cls(**values)


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
