"""
Text Repair
===========
Cleans raw OCR text and repairs malformed JSON returned by the LLM.

Both helpers are pure: no I/O, no shared state.

JSON parsing falls through four stages and only gives up after all of
them failed:
    1. Direct json.loads
    2. Structural cleanup (fences, unquoted keys, trailing commas,
       control characters, raw newlines inside strings)
    3. json_repair
    4. First balanced {...} span, then structural cleanup
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from json_repair import repair_json

from .errors import JsonParseError

logger = logging.getLogger(__name__)

MAX_EXCERPT_LENGTH = 200
_MAX_CLEAN_PASSES = 10

# ─── OCR Cleanup Patterns ─────────────────────────────────────────────────────

# Running headers, page counters and test-series boilerplate
BOILERPLATE_PATTERNS = [
    re.compile(r"\bPage\s*\d+", re.IGNORECASE),
    re.compile(r"\bCambridge\s*IELTS(?:\s*\d+)?\b", re.IGNORECASE),
    re.compile(r"\bIELTS\s*\d+", re.IGNORECASE),
    re.compile(r"\bTest\s*\d+", re.IGNORECASE),
]

PIPE_PATTERN = re.compile(r"\s*\|\s*")
UNDERSCORE_PATTERN = re.compile(r"_+")
LONG_DASH_RUN_PATTERN = re.compile(r"—{2,}")

# "12 . " -> "12. " (decimals such as 3.5 are left alone)
DIGIT_NUMBERING_PATTERN = re.compile(r"(\d+)\s*\.(?!\d)\s*")
# Standalone "l." / "I." read instead of "1."
ONE_NUMBERING_PATTERN = re.compile(r"(?<![A-Za-z0-9])[lI]\.(?=\s|$)")
# Standalone "O." read instead of "0."
ZERO_NUMBERING_PATTERN = re.compile(r"(?<![A-Za-z0-9])O\.(?=\s|$)")

HYPHEN_LINEBREAK_PATTERN = re.compile(r"([A-Za-z])-[ \t]*\r?\n\s*([A-Za-z])")
LINEBREAK_PATTERN = re.compile(r"[\r\n]+")

LOWER_UPPER_PATTERN = re.compile(r"([a-z])([A-Z])")
DIGIT_UPPER_PATTERN = re.compile(r"([0-9])([A-Z])")
LETTER_DIGIT_PATTERN = re.compile(r"([A-Za-z])([0-9])")
SENTENCE_PATTERN = re.compile(r"([.?!])([A-Z])")

DASH_PATTERN = re.compile(r"\s*[-–—]\s*")
WHITESPACE_PATTERN = re.compile(r"\s+")

# ─── JSON Cleanup Patterns ────────────────────────────────────────────────────

CODE_FENCE_PATTERN = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
UNQUOTED_KEY_PATTERN = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")
LEADING_UNQUOTED_KEY_PATTERN = re.compile(r"^(\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")
TRAILING_COMMA_PATTERN = re.compile(r",\s*([}\]])")
CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")


# ─── OCR Text ─────────────────────────────────────────────────────────────────


def clean_ocr_text(text: str) -> str:
    """
    Normalize raw OCR output into a single clean line of text.

    Strips headers and page numbers, removes glyph noise, repairs list
    numbering and hyphenation, merges line breaks and normalizes dashes
    and spacing. Idempotent: clean_ocr_text(clean_ocr_text(x)) equals
    clean_ocr_text(x).
    """
    if not text:
        return ""

    # Removing one artifact can expose another, so repeat until stable.
    cleaned = text
    for _ in range(_MAX_CLEAN_PASSES):
        next_pass = _clean_ocr_pass(cleaned)
        if next_pass == cleaned:
            break
        cleaned = next_pass
    return cleaned


def _clean_ocr_pass(text: str) -> str:
    # Noise glyphs
    text = PIPE_PATTERN.sub(" ", text)
    text = UNDERSCORE_PATTERN.sub(" ", text)
    text = LONG_DASH_RUN_PATTERN.sub(" ", text)

    # Headers, footers, page counters
    for pattern in BOILERPLATE_PATTERNS:
        text = pattern.sub(" ", text)

    # List numbering
    text = DIGIT_NUMBERING_PATTERN.sub(r"\1. ", text)
    text = ONE_NUMBERING_PATTERN.sub("1.", text)
    text = ZERO_NUMBERING_PATTERN.sub("0.", text)

    # Words split across lines, then all line breaks
    text = HYPHEN_LINEBREAK_PATTERN.sub(r"\1\2", text)
    text = LINEBREAK_PATTERN.sub(" ", text)

    # Missing spaces at case and digit boundaries
    text = LOWER_UPPER_PATTERN.sub(r"\1 \2", text)
    text = DIGIT_UPPER_PATTERN.sub(r"\1 \2", text)
    text = LETTER_DIGIT_PATTERN.sub(r"\1 \2", text)
    text = SENTENCE_PATTERN.sub(r"\1 \2", text)

    text = DASH_PATTERN.sub(" - ", text)

    return WHITESPACE_PATTERN.sub(" ", text).strip()


# ─── JSON ─────────────────────────────────────────────────────────────────────


def clean_json_string(raw: str) -> str:
    """
    Apply structural fixes for the usual LLM JSON mistakes.

    Raises:
        ValueError: If raw is not a non-empty string.
    """
    if not raw or not isinstance(raw, str):
        raise ValueError("Invalid JSON string provided")

    cleaned = CODE_FENCE_PATTERN.sub("", raw)
    cleaned = UNQUOTED_KEY_PATTERN.sub(r'\1"\2":', cleaned)
    cleaned = LEADING_UNQUOTED_KEY_PATTERN.sub(r'\1"\2":', cleaned)
    cleaned = TRAILING_COMMA_PATTERN.sub(r"\1", cleaned)
    cleaned = CONTROL_CHAR_PATTERN.sub("", cleaned)
    cleaned = _escape_newlines_in_strings(cleaned)
    return cleaned.strip()


def parse_json_safely(raw_text: Optional[str], context: str = "JSON") -> dict:
    """
    Parse LLM output into a JSON object, repairing it if needed.

    Args:
        raw_text: Text that should contain a JSON object.
        context: Label used in log lines and error messages.

    Returns:
        The parsed object.

    Raises:
        JsonParseError: If every repair stage failed. The message carries
            an excerpt of at most 200 characters of the offending text.
    """
    if not raw_text or not raw_text.strip():
        raise JsonParseError(f"Empty {context} response received")

    # ── Stage 1: as-is ────────────────────────────────────────────────
    try:
        return _load_object(raw_text)
    except ValueError as e:
        logger.warning(f"Initial JSON parse failed for {context}: {e}")

    # ── Stage 2: structural cleanup ───────────────────────────────────
    try:
        logger.debug(f"Attempting to parse cleaned JSON for {context}")
        return _load_object(clean_json_string(raw_text))
    except ValueError as e:
        logger.warning(f"Cleaned JSON parse failed for {context}: {e}")

    # ── Stage 3: json_repair ──────────────────────────────────────────
    try:
        logger.debug(f"Attempting JSON repair for {context}")
        repaired = repair_json(raw_text, return_objects=True)
        if not isinstance(repaired, dict) or not repaired:
            raise ValueError(
                f"repair produced {type(repaired).__name__}, not an object"
            )
        return repaired
    except Exception as e:
        logger.warning(f"JSON repair failed for {context}: {e}")

    # ── Stage 4: embedded object ──────────────────────────────────────
    embedded = extract_json_object(raw_text)
    if embedded is not None:
        try:
            logger.debug(f"Attempting to parse extracted JSON for {context}")
            return _load_object(clean_json_string(embedded))
        except ValueError as e:
            logger.warning(f"Extracted JSON parse failed for {context}: {e}")

    excerpt = truncate_excerpt(raw_text)
    raise JsonParseError(
        f"Failed to parse {context} JSON after all repair attempts. "
        f"Raw response: {excerpt}",
        excerpt=excerpt,
    )


def extract_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} span in text.

    Falls back to the span between the first '{' and the last '}' when
    braces never balance. Returns None when text has no '{'.
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]

    end = text.rfind("}")
    if end > start:
        return text[start:end + 1]
    return None


def truncate_excerpt(text: str, limit: int = MAX_EXCERPT_LENGTH) -> str:
    """Shorten text to at most limit characters for error messages."""
    if len(text) <= limit:
        return text
    return text[:limit - 3] + "..."


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _load_object(text: str) -> dict:
    """json.loads that only accepts an object. Raises ValueError otherwise."""
    value: Any = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError(f"Expected a JSON object, got {type(value).__name__}")
    return value


def _escape_newlines_in_strings(text: str) -> str:
    """Escape raw line breaks and tabs that sit inside string literals."""
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                out.append("\\n")
                continue
            elif ch == "\r":
                out.append("\\r")
                continue
            elif ch == "\t":
                out.append("\\t")
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)
