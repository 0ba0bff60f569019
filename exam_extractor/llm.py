"""
LLM Client
==========
Thin wrapper around the OpenAI chat-completion API.

The rest of the package only depends on ``complete()``, so any object
with the same signature can be injected in its place.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from openai import OpenAI

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"


class ChatCompletionClient:
    """Sends one system prompt plus one user message, returns the text."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        client: Optional[OpenAI] = None,
    ):
        self.model = model
        self.client = client or OpenAI(
            api_key=api_key or os.getenv("OPENAI_API_KEY")
        )

    def complete(
        self,
        system_prompt: str,
        user_text: str,
        temperature: float = 0.1,
        max_tokens: int = 8000,
    ) -> Optional[str]:
        """
        Run one chat completion.

        Returns:
            The first choice's content, or None when the model returned
            nothing.
        """
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_text},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )

        if not completion.choices:
            return None
        content = completion.choices[0].message.content
        logger.debug(
            f"{self.model} returned {len(content or '')} characters"
        )
        return content
