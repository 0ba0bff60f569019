"""
Structured Extractor
====================
Drives the LLM call that turns cleaned OCR text into the raw exam
structure, with a bounded retry loop around call + JSON repair.

Retry policy:
    - Up to max_attempts calls in total (default 3)
    - content_retry_delay (1s) after an empty or unparseable completion
    - api_retry_delay (2s) after a transport/API failure
    - ExtractionFailedError once the budget is spent
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from .errors import EmptyLlmResponseError, ExtractionFailedError, JsonParseError
from .text_repair import parse_json_safely

logger = logging.getLogger(__name__)


class StructuredExtractor:
    """
    Converts OCR text into a raw structure using a chat-completion client.

    The client only needs ``complete(system_prompt, user_text,
    temperature=..., max_tokens=...) -> Optional[str]``.
    """

    def __init__(
        self,
        llm_client,
        temperature: float = 0.1,
        max_tokens: int = 8000,
        max_attempts: int = 3,
        content_retry_delay: float = 1.0,
        api_retry_delay: float = 2.0,
    ):
        self.llm_client = llm_client
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_attempts = max(1, max_attempts)
        self.content_retry_delay = content_retry_delay
        self.api_retry_delay = api_retry_delay

    def extract(
        self,
        ocr_text: str,
        system_prompt: str,
        context: str = "LLM",
    ) -> dict:
        """
        Produce the raw structure for the given OCR text.

        Args:
            ocr_text: Concatenated, cleaned OCR text of all pages.
            system_prompt: Section-specific instructions for the model.
            context: Label for logs and error messages.

        Returns:
            The parsed JSON object, ready for post-processing.

        Raises:
            ExtractionFailedError: If every attempt failed.
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            logger.info(f"{context} attempt {attempt}/{self.max_attempts}")

            try:
                structure = self._attempt(ocr_text, system_prompt, context, attempt)
                logger.info("Successfully parsed JSON structure")
                return structure
            except (EmptyLlmResponseError, JsonParseError) as e:
                last_error = e
                logger.error(f"{context} response unusable (attempt {attempt}): {e}")
                delay = self.content_retry_delay
            except Exception as e:
                last_error = e
                logger.error(f"{context} API error (attempt {attempt}): {e}")
                delay = self.api_retry_delay

            if attempt < self.max_attempts:
                time.sleep(delay)

        raise ExtractionFailedError(self.max_attempts, last_error)

    def _attempt(
        self,
        ocr_text: str,
        system_prompt: str,
        context: str,
        attempt: int,
    ) -> dict:
        raw_response = self.llm_client.complete(
            system_prompt,
            ocr_text,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        if not raw_response or not raw_response.strip():
            raise EmptyLlmResponseError(f"Empty response from {context}")

        logger.info(f"Raw {context} response length: {len(raw_response)}")
        logger.debug(f"Raw {context} response preview: {raw_response[:200]}...")

        return parse_json_safely(raw_response, f"{context} attempt {attempt}")
