"""
Prompt Templates
================
Loads the section-specific system prompt given to the LLM.

Prompts live as plain text files named ``<section>-prompt.txt``. The
package ships defaults under ``exam_extractor/prompts/``; point
``PROMPTS_DIR`` elsewhere to override them.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_PROMPTS_DIR = Path(__file__).parent / "prompts"


class PromptProvider:
    """Reads system prompts from a directory of text files."""

    def __init__(self, prompts_dir: Optional[str] = None):
        self.prompts_dir = Path(prompts_dir) if prompts_dir else DEFAULT_PROMPTS_DIR

    def prompt_path(self, section: str) -> Path:
        return self.prompts_dir / f"{section.lower()}-prompt.txt"

    def get_prompt(self, section: str) -> str:
        """
        Return the prompt for a section, stripped of surrounding whitespace.

        Raises:
            FileNotFoundError: If no prompt file exists for the section.
        """
        path = self.prompt_path(section)
        if not path.exists():
            raise FileNotFoundError(f"Prompt template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        logger.debug(f"Loaded {section} prompt ({len(content)} chars)")
        return content
