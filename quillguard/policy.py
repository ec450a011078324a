"""Policy loading and validation for quillguard."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .exceptions import BadPolicy


class EndpointPolicy(BaseModel):
    max_requests: int
    window_ms: int

    @model_validator(mode="after")
    def validate_values(self) -> "EndpointPolicy":
        if self.max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        return self


def _default_categories() -> dict[str, EndpointPolicy]:
    return {
        "default": EndpointPolicy(max_requests=100, window_ms=15 * 60 * 1000),
        "auth": EndpointPolicy(max_requests=5, window_ms=15 * 60 * 1000),
        "upload": EndpointPolicy(max_requests=10, window_ms=60 * 1000),
        "admin": EndpointPolicy(max_requests=20, window_ms=60 * 1000),
        "comments": EndpointPolicy(max_requests=30, window_ms=60 * 1000),
    }


class RateLimitSettings(BaseModel):
    categories: dict[str, EndpointPolicy] = Field(default_factory=_default_categories)
    max_entries: int = 10_000
    evict_fraction: float = 0.2
    sweep_interval_sec: float = 60.0

    @model_validator(mode="after")
    def validate_values(self) -> "RateLimitSettings":
        if self.max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if not 0 < self.evict_fraction <= 1:
            raise ValueError("evict_fraction must be in (0, 1]")
        if self.sweep_interval_sec < 0:
            raise ValueError("sweep_interval_sec must not be negative")
        # Unknown categories fall back to "default", so it must always exist.
        if "default" not in self.categories:
            self.categories["default"] = _default_categories()["default"]
        return self

    def for_category(self, category: str) -> EndpointPolicy:
        return self.categories.get(category) or self.categories["default"]


class OriginSettings(BaseModel):
    allowed_origins: list[str] = Field(
        default_factory=lambda: [
            "https://casadosescritores.com.br",
            "https://www.casadosescritores.com.br",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )
    allowed_content_types: list[str] = Field(
        default_factory=lambda: [
            "application/json",
            "multipart/form-data",
            "application/x-www-form-urlencoded",
        ]
    )
    protected_methods: list[str] = Field(default_factory=lambda: ["POST", "PUT", "DELETE", "PATCH"])
    body_methods: list[str] = Field(default_factory=lambda: ["POST", "PUT", "PATCH"])

    @field_validator("allowed_origins")
    @classmethod
    def normalize_origins(cls, value: list[str]) -> list[str]:
        return [origin.rstrip("/") for origin in value]

    @field_validator("protected_methods", "body_methods")
    @classmethod
    def upper_methods(cls, value: list[str]) -> list[str]:
        return [method.upper() for method in value]


class HeaderSettings(BaseModel):
    security: dict[str, str] = Field(
        default_factory=lambda: {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    extra: dict[str, str] = Field(default_factory=dict)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    output: Literal["stderr", "file"] = "stderr"
    file_path: str = "quillguard-security.log"
    rotate_bytes: int = 10_485_760
    structured: bool | None = None
    queue: bool = False


class MessageSettings(BaseModel):
    rate_limited: str = "Muitas requisições. Tente novamente mais tarde."
    csrf_blocked: str = "Requisição bloqueada por proteção CSRF"
    content_type_blocked: str = "Tipo de conteúdo não permitido"


class RouteRule(BaseModel):
    prefix: str
    category: str = "default"
    operation: str | None = None


class Policy(BaseModel):
    version: int = 1
    environment: Literal["production", "development"] = Field(
        default_factory=lambda: "production"
        if os.environ.get("QUILLGUARD_ENV", "").lower() == "production"
        else "development"
    )
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    origins: OriginSettings = Field(default_factory=OriginSettings)
    headers: HeaderSettings = Field(default_factory=HeaderSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    messages: MessageSettings = Field(default_factory=MessageSettings)
    routes: list[RouteRule] = Field(default_factory=list)
    protected_prefixes: list[str] = Field(default_factory=lambda: ["/api"])

    @model_validator(mode="after")
    def resolve_log_format(self) -> "Policy":
        if self.logging.structured is None:
            self.logging.structured = self.environment == "production"
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Policy":
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise BadPolicy(message=str(exc), details={"errors": exc.errors(include_url=False)}) from exc

    def route_for(self, path: str) -> RouteRule:
        """Return the most specific route rule matching ``path``."""

        best: RouteRule | None = None
        for rule in self.routes:
            if path.startswith(rule.prefix) and (best is None or len(rule.prefix) > len(best.prefix)):
                best = rule
        return best or RouteRule(prefix="", category="default")

    def is_protected(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.protected_prefixes)


def load_policy(path: str | Path) -> Policy:
    """Load a policy from a YAML file."""

    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise BadPolicy(message=f"Failed to read policy: {exc}") from exc
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise BadPolicy(message=f"Failed to parse policy YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise BadPolicy(message="Policy YAML must be a mapping")
    return Policy.from_dict(data)
