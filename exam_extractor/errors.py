"""
Error Taxonomy
==============
Exceptions raised by the extraction core.

Terminal (surfaced to the caller as a failed request):
    - OcrUnavailableError: every OCR backend was exhausted
    - ExtractionFailedError: the LLM retry budget was exhausted

Retry-triggering (handled inside the structured extractor):
    - JsonParseError: all JSON repair stages failed
    - EmptyLlmResponseError: the completion carried no text
"""

from __future__ import annotations

from typing import Optional


class ExtractorError(Exception):
    """Base class for all extraction core errors."""


class OcrUnavailableError(ExtractorError):
    """
    Raised when neither the primary nor the fallback OCR backend
    produced a result.

    Attributes:
        errors: Last error message per attempted backend, in attempt order.
    """

    def __init__(self, errors: dict[str, str]):
        self.errors = dict(errors)
        details = "; ".join(
            f"{service}: {message}" for service, message in self.errors.items()
        )
        super().__init__(f"All OCR services failed ({details})")


class JsonParseError(ExtractorError):
    """Raised when text cannot be turned into a JSON object."""

    def __init__(self, message: str, excerpt: str = ""):
        self.excerpt = excerpt
        super().__init__(message)


class EmptyLlmResponseError(ExtractorError):
    """Raised when the chat completion returned no content."""


class ExtractionFailedError(ExtractorError):
    """Raised when every structured extraction attempt failed."""

    def __init__(self, attempts: int, last_error: Optional[Exception]):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Structured extraction failed after {attempts} attempts: "
            f"{last_error}"
        )
