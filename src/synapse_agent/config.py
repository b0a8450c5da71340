"""Configuration models for the diagnostic orchestrator."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field


class GenerationParams(BaseModel):
    """Sampling parameters passed to every candidate model."""

    max_output_tokens: int = Field(default=4096, ge=1)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    top_p: float = Field(default=0.95, gt=0.0, le=1.0)
    top_k: int | None = Field(default=None, ge=1)
    repetition_penalty: float | None = Field(default=None, gt=0.0)


class InvokerConfig(BaseModel):
    """Configures the retry/fallback policy of the model invoker."""

    max_attempts: int = Field(default=2, ge=1)
    backoff_seconds: float = Field(default=1.0, ge=0.0)
    call_timeout_seconds: float = Field(default=120.0, gt=0.0)


class CacheConfig(BaseModel):
    """Configures adapter session and catalog caches."""

    session_ttl_seconds: float = Field(default=3600.0, gt=0.0)
    catalog_ttl_seconds: float | None = Field(default=None, gt=0.0)


class AdapterSettings(BaseModel):
    """Credentials and endpoints for the external knowledge sources."""

    radiopaedia_api_key: str | None = None
    radiopaedia_base_url: str = "https://radiopaedia.org/api/v1"
    imaios_api_key: str | None = None
    imaios_base_url: str = "https://www.imaios.com/en/api/v2"
    openi_base_url: str = "https://openi.nlm.nih.gov/api"
    tcia_base_url: str = "https://services.cancerimagingarchive.net/services/v4/TCIA"
    xnat_host: str | None = None
    xnat_user: str | None = None
    xnat_password: str | None = None
    http_timeout_seconds: float = Field(default=15.0, gt=0.0)

    @classmethod
    def from_env(cls) -> "AdapterSettings":
        return cls(
            radiopaedia_api_key=os.getenv("RADIOPAEDIA_API_KEY") or None,
            imaios_api_key=os.getenv("IMAIOS_API_KEY") or None,
            xnat_host=(os.getenv("XNAT_HOST") or "").rstrip("/") or None,
            xnat_user=os.getenv("XNAT_USER") or None,
            xnat_password=os.getenv("XNAT_PASS") or None,
        )


class ModelSettings(BaseModel):
    """Model candidates for diagnosis (pro-first) and chat (flash-first)."""

    diagnosis_models: list[str] = Field(
        default_factory=lambda: ["gpt-4o", "gpt-4o-mini"], min_length=1
    )
    chat_models: list[str] = Field(
        default_factory=lambda: ["gpt-4o-mini", "gpt-4o"], min_length=1
    )
    max_tool_rounds: int = Field(default=8, ge=1)

    @classmethod
    def from_env(cls) -> "ModelSettings":
        primary = os.getenv("SYNAPSE_PRIMARY_MODEL")
        fallback = os.getenv("SYNAPSE_FALLBACK_MODEL")
        if not primary and not fallback:
            return cls()
        default = cls()
        primary = primary or default.diagnosis_models[0]
        fallback = fallback or default.diagnosis_models[-1]
        return cls(diagnosis_models=[primary, fallback], chat_models=[fallback, primary])
