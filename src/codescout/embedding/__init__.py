"""Embedding providers."""

from codescout.config.models import EmbeddingConfig
from codescout.core.errors import ConfigurationError
from codescout.embedding.base import EmbeddingProvider, InputType
from codescout.embedding.local import FastEmbedProvider
from codescout.embedding.remote import HttpEmbeddingProvider


def create_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Build the provider selected by ``config.backend``."""
    if config.backend == "fastembed":
        return FastEmbedProvider(
            config.model,
            batch_size=config.batch_size,
            max_text_chars=config.max_text_chars,
        )
    if config.backend == "http":
        if not config.api_base:
            raise ConfigurationError.invalid_value(
                "embedding.api_base", config.api_base, "required for the http backend"
            )
        return HttpEmbeddingProvider(
            api_base=config.api_base,
            model=config.model,
            api_key=config.api_key,
            batch_size=config.batch_size,
            timeout_sec=config.timeout_sec,
            max_retries=config.max_retries,
            max_text_chars=config.max_text_chars,
        )
    raise ConfigurationError.invalid_value("embedding.backend", config.backend, "unknown backend")


__all__ = [
    "EmbeddingProvider",
    "FastEmbedProvider",
    "HttpEmbeddingProvider",
    "InputType",
    "create_embedding_provider",
]
