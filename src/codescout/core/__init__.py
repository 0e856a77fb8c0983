"""Core module exports."""

from codescout.core.cancellation import CancellationToken, run_cancellable
from codescout.core.errors import (
    CancellationError,
    CodeScoutError,
    ConfigurationError,
    ErrorCode,
    IndexUnavailableError,
    InternalError,
    ResourceExhaustedError,
    SearchExhaustedError,
    TransientProviderError,
)
from codescout.core.logging import (
    clear_correlation_id,
    configure_logging,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)
from codescout.core.tokens import ApproxTokenizer, Tokenizer

__all__ = [
    # Errors
    "CodeScoutError",
    "ConfigurationError",
    "ErrorCode",
    "TransientProviderError",
    "IndexUnavailableError",
    "CancellationError",
    "ResourceExhaustedError",
    "SearchExhaustedError",
    "InternalError",
    # Logging
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "set_correlation_id",
    # Cancellation
    "CancellationToken",
    "run_cancellable",
    # Tokens
    "ApproxTokenizer",
    "Tokenizer",
]
