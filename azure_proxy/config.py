"""Configuration helpers for the Azure reasoning proxy."""
from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_API_VERSION = "2025-04-01-preview"
DEFAULT_REQUEST_TIMEOUT = 600.0


class ConfigurationError(RuntimeError):
    """Raised when the Azure backend target is missing or incomplete."""


@dataclass
class ProxySettings:
    """Runtime configuration values for the proxy service."""

    host: str | None = None
    port: int | None = None
    azure_endpoint: str | None = None
    azure_api_key: str | None = None
    azure_deployment: str | None = None
    azure_api_version: str = DEFAULT_API_VERSION
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    debug_sse_enabled: bool = False
    debug_sse_path: str | None = None
    tokenizer_encoding: str | None = None

    @classmethod
    def from_env(cls) -> "ProxySettings":
        """Read backend settings from AZURE_OPENAI_* environment variables."""

        timeout_raw = os.getenv("PROXY_REQUEST_TIMEOUT", "").strip()
        try:
            timeout = float(timeout_raw) if timeout_raw else DEFAULT_REQUEST_TIMEOUT
        except ValueError as exc:
            raise ConfigurationError(
                f"PROXY_REQUEST_TIMEOUT must be a number, got {timeout_raw!r}"
            ) from exc

        return cls(
            azure_endpoint=os.getenv("AZURE_OPENAI_ENDPOINT") or None,
            azure_api_key=os.getenv("AZURE_OPENAI_API_KEY") or None,
            azure_deployment=os.getenv("AZURE_OPENAI_DEPLOYMENT") or None,
            azure_api_version=os.getenv("AZURE_OPENAI_API_VERSION") or DEFAULT_API_VERSION,
            request_timeout=timeout,
            debug_sse_path=os.getenv("PROXY_DEBUG_SSE_PATH") or None,
            tokenizer_encoding=os.getenv("PROXY_TOKENIZER_ENCODING") or None,
        )

    def validate(self) -> None:
        missing = [
            name
            for name, value in (
                ("AZURE_OPENAI_ENDPOINT", self.azure_endpoint),
                ("AZURE_OPENAI_API_KEY", self.azure_api_key),
                ("AZURE_OPENAI_DEPLOYMENT", self.azure_deployment),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise ConfigurationError(f"Missing {', '.join(missing)}.")

    def responses_url(self) -> str:
        """Return the Azure Responses API endpoint for the configured resource."""

        if not self.azure_endpoint or not self.azure_endpoint.strip():
            raise ConfigurationError("Missing AZURE_OPENAI_ENDPOINT.")
        base = self.azure_endpoint.strip().rstrip("/")
        return f"{base}/openai/responses?api-version={self.azure_api_version}"
