"""
Plotline Custom Exceptions

Custom exception classes for error handling throughout the Plotline pipeline.
"""


class PlotlineError(Exception):
    """Base exception for all Plotline errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(PlotlineError):
    """Raised when there's an issue with configuration."""
    pass


class MissingConfigError(ConfigurationError):
    """Raised when a required configuration is missing."""
    pass


class InvalidConfigError(ConfigurationError):
    """Raised when a configuration value is invalid."""
    pass


# =============================================================================
# CHUNKING ERRORS
# =============================================================================

class ChunkingError(PlotlineError):
    """Raised when the chunker receives degenerate input or settings."""
    pass


# =============================================================================
# LLM ERRORS
# =============================================================================

class LLMError(PlotlineError):
    """Base exception for LLM-related errors."""
    pass


class GenerationFailure(LLMError):
    """Raised when a generation call fails, times out or returns bad output."""

    def __init__(self, reason: str, details: dict = None):
        super().__init__(f"Generation failed: {reason}", details)
        self.reason = reason


class LLMProviderError(GenerationFailure):
    """Raised when there's an issue with an LLM provider."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"provider '{provider}' error: {reason}", {"provider": provider})
        self.provider = provider


# =============================================================================
# MERGE ERRORS
# =============================================================================

class ResolutionInconsistency(PlotlineError):
    """Raised on a dangling relation or non-canonical entity reference."""

    def __init__(self, chunk_index: int, reason: str):
        message = f"Chunk {chunk_index}: {reason}"
        super().__init__(message, {"chunk_index": chunk_index, "reason": reason})
        self.chunk_index = chunk_index
        self.reason = reason


# =============================================================================
# CONCURRENCY ERRORS
# =============================================================================

class ConcurrencyAbort(PlotlineError):
    """Raised when a task fails under the fail-fast policy."""

    def __init__(self, index: int, cause: BaseException):
        message = f"Task {index} failed, batch aborted: {cause}"
        super().__init__(message, {"index": index, "cause": type(cause).__name__})
        self.index = index
        self.cause = cause


# =============================================================================
# PIPELINE ERRORS
# =============================================================================

class PipelineError(PlotlineError):
    """Base exception for pipeline errors."""
    pass


class PipelineStageError(PipelineError):
    """Raised when a specific pipeline stage fails."""

    def __init__(self, stage_name: str, reason: str):
        message = f"Pipeline stage '{stage_name}' failed: {reason}"
        super().__init__(message, {"stage": stage_name, "reason": reason})
