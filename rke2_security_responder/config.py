"""Application configuration and settings."""

from __future__ import annotations

import os
from enum import Enum

from pydantic import BaseModel, Field, field_validator


DEFAULT_ENDPOINT = "https://security-responder.rke2.io/v1/check"
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2.0
DEFAULT_KUBECTL_TIMEOUT = 30
DEFAULT_RUN_TIMEOUT = 300.0

ENV_MODE = "SECURITY_RESPONDER_MODE"
ENV_ENDPOINT = "SECURITY_RESPONDER_ENDPOINT"
ENV_DISABLE = "DISABLE_SECURITY_RESPONDER_CHECK"


class CollectionMode(str, Enum):
    """How much detail the collector records."""

    RECOMMENDED = "recommended"
    MINIMAL = "minimal"


def _env_disabled() -> bool:
    return os.environ.get(ENV_DISABLE, "").strip().lower() == "true"


class Settings(BaseModel):
    """Runtime settings resolved from env vars and CLI flags."""

    mode: CollectionMode = Field(
        default_factory=lambda: os.environ.get(ENV_MODE, "") or CollectionMode.RECOMMENDED,
        description="recommended | minimal",
        validate_default=True,
    )
    endpoint: str = Field(
        default_factory=lambda: os.environ.get(ENV_ENDPOINT, "").strip() or DEFAULT_ENDPOINT,
        description="URL the fact-set is POSTed to.",
        validate_default=True,
    )
    disabled: bool = Field(
        default_factory=_env_disabled,
        description="Skip collection and delivery entirely.",
    )

    # ── Cluster access ───────────────────────────────────────────────
    kubeconfig: str = Field(
        default="",
        description="Path to kubeconfig file. Empty = in-cluster / kubectl default.",
    )
    kube_context: str = Field(
        default="",
        description="Kubernetes context to use. Empty = current context.",
    )
    kubectl_timeout: int = DEFAULT_KUBECTL_TIMEOUT

    # ── Delivery ─────────────────────────────────────────────────────
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    retry_delay: float = Field(default=DEFAULT_RETRY_DELAY, ge=0)

    # Behaviour
    verbose: bool = False
    dry_run: bool = False
    run_timeout: float | None = DEFAULT_RUN_TIMEOUT

    @field_validator("endpoint")
    @classmethod
    def _strip_endpoint(cls, value: str) -> str:
        # Values mounted from ConfigMaps and Secrets often end in a newline.
        value = value.strip()
        if not value:
            raise ValueError("endpoint must not be empty")
        return value

    @field_validator("mode", mode="before")
    @classmethod
    def _normalise_mode(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip().lower()
            if value not in {m.value for m in CollectionMode}:
                raise ValueError(
                    f"unknown collection mode {value!r}; expected 'recommended' or 'minimal'"
                )
        return value
