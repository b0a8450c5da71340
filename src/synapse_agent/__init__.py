"""Synapse diagnostic agent package."""

from .config import AdapterSettings, CacheConfig, GenerationParams, InvokerConfig, ModelSettings

__all__ = [
    "AdapterSettings",
    "CacheConfig",
    "GenerationParams",
    "InvokerConfig",
    "ModelSettings",
]
