"""
Test Suite for Structured Extraction
====================================
LLM retry loop, chat-completion wrapper, and prompt loading.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from exam_extractor.errors import ExtractionFailedError, JsonParseError
from exam_extractor.extractor import StructuredExtractor
from exam_extractor.llm import ChatCompletionClient
from exam_extractor.prompts import PromptProvider

VALID_JSON = '{"test": "1", "section": "Listening", "parts": []}'


@pytest.fixture
def llm():
    return MagicMock()


@pytest.fixture
def mock_sleep():
    with patch("exam_extractor.extractor.time.sleep") as sleep:
        yield sleep


# ═══════════════════════════════════════════════════════════════════════════════
# STRUCTURED EXTRACTOR
# ═══════════════════════════════════════════════════════════════════════════════


class TestStructuredExtractor:
    """Test the call-and-parse retry loop."""

    def test_first_attempt_succeeds(self, llm, mock_sleep):
        llm.complete.return_value = VALID_JSON
        extractor = StructuredExtractor(llm)

        structure = extractor.extract("ocr text", "system prompt")

        assert structure["section"] == "Listening"
        llm.complete.assert_called_once_with(
            "system prompt", "ocr text", temperature=0.1, max_tokens=8000
        )
        mock_sleep.assert_not_called()

    def test_repairs_fenced_response(self, llm, mock_sleep):
        llm.complete.return_value = f"```json\n{VALID_JSON}\n```"
        assert StructuredExtractor(llm).extract("t", "p")["test"] == "1"

    def test_empty_response_retries_with_content_delay(self, llm, mock_sleep):
        llm.complete.side_effect = ["", "   ", VALID_JSON]
        extractor = StructuredExtractor(llm)

        structure = extractor.extract("t", "p")

        assert structure["test"] == "1"
        assert llm.complete.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 1.0]

    def test_api_error_uses_api_delay(self, llm, mock_sleep):
        llm.complete.side_effect = [ConnectionError("reset"), VALID_JSON]

        StructuredExtractor(llm).extract("t", "p")

        mock_sleep.assert_called_once_with(2.0)

    def test_exhaustion_raises(self, llm, mock_sleep):
        with patch("exam_extractor.text_repair.repair_json", return_value=""):
            llm.complete.return_value = "Sorry, I cannot read this scan."
            extractor = StructuredExtractor(llm, max_attempts=3)

            with pytest.raises(ExtractionFailedError) as exc_info:
                extractor.extract("t", "p", context="Reading")

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, JsonParseError)
        assert llm.complete.call_count == 3
        # No sleep after the final attempt
        assert mock_sleep.call_count == 2

    def test_mixed_failures(self, llm, mock_sleep):
        llm.complete.side_effect = [TimeoutError("slow"), None, VALID_JSON]

        StructuredExtractor(llm).extract("t", "p")

        assert [c.args[0] for c in mock_sleep.call_args_list] == [2.0, 1.0]


# ═══════════════════════════════════════════════════════════════════════════════
# CHAT COMPLETION CLIENT
# ═══════════════════════════════════════════════════════════════════════════════


class TestChatCompletionClient:
    """Test the OpenAI wrapper with an injected SDK client."""

    def _sdk(self, choices):
        sdk = MagicMock()
        sdk.chat.completions.create.return_value = SimpleNamespace(choices=choices)
        return sdk

    def test_returns_first_choice_content(self):
        message = SimpleNamespace(content='{"a": 1}')
        sdk = self._sdk([SimpleNamespace(message=message)])
        client = ChatCompletionClient(model="gpt-4o", client=sdk)

        assert client.complete("sys", "user", temperature=0.1, max_tokens=10) == '{"a": 1}'

        kwargs = sdk.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "user"},
        ]
        assert kwargs["temperature"] == 0.1
        assert kwargs["max_tokens"] == 10

    def test_no_choices(self):
        client = ChatCompletionClient(client=self._sdk([]))
        assert client.complete("sys", "user") is None


# ═══════════════════════════════════════════════════════════════════════════════
# PROMPTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestPromptProvider:
    """Test prompt file lookup."""

    @pytest.mark.parametrize("section", ["listening", "reading", "writing"])
    def test_packaged_prompts_exist(self, section):
        prompt = PromptProvider().get_prompt(section)
        assert prompt
        assert prompt == prompt.strip()

    def test_section_name_is_case_insensitive(self, tmp_path):
        (tmp_path / "listening-prompt.txt").write_text("  Extract it.  \n")
        assert PromptProvider(str(tmp_path)).get_prompt("Listening") == "Extract it."

    def test_missing_prompt(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            PromptProvider(str(tmp_path)).get_prompt("reading")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
