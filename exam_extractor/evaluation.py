"""
Writing Evaluation
==================
Scores a candidate's Writing answer against the four IELTS band
criteria with a short LLM call, and normalizes the reply for the UI.

Task 1 answers are judged as academic reports, Task 2 answers as essays.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from .errors import EmptyLlmResponseError
from .models import WritingEvaluation
from .text_repair import parse_json_safely

logger = logging.getLogger(__name__)

EVALUATION_MODEL = "gpt-4o-mini"

_SCORING_RULES = """Score each criterion from 0.0 to 9.0; half bands are allowed.
overallScore is the mean of the four criteria rounded to the nearest 0.5.
Be strict and realistic: never score above what a human examiner would give.
Reply with JSON only, no Markdown and no commentary.
Highlight excerpts are 5 to 10 words copied exactly from the answer.
Suggestions are short and actionable."""

TASK1_SYSTEM_PROMPT = f"""You are an IELTS Academic Writing Task 1 examiner applying the British Council band descriptors:
- Task Achievement: accurate description of the data, key features, comparisons and trends
- Coherence and Cohesion: paragraphing, logical flow, linking devices
- Lexical Resource: vocabulary range, collocation, register
- Grammatical Range and Accuracy: sentence variety, tenses, agreement, punctuation

{_SCORING_RULES}"""

TASK2_SYSTEM_PROMPT = f"""You are an IELTS Writing Task 2 examiner applying the British Council band descriptors:
- Task Response
- Coherence and Cohesion
- Lexical Resource
- Grammatical Range and Accuracy

Highlight types:
- "grammar": tenses, articles, agreement, prepositions, sentence structure
- "coherence": paragraphing, ordering, linking words
- "vocabulary": overused words, wrong collocations, informal phrases

{_SCORING_RULES}"""

RESPONSE_SCHEMA = """{
  "overallScore": number,
  "criteria": {
    "taskAchievement": number,
    "coherenceAndCohesion": number,
    "lexicalResource": number,
    "grammaticalRangeAndAccuracy": number
  },
  "highlights": [
    {"type": "grammar" | "coherence" | "vocabulary", "excerpt": string, "suggestion": string}
  ],
  "summary": string,
  "statistics": {
    "wordCount": number,
    "uniqueWordCount": number,
    "overusedWords": [string],
    "topicRelevance": number
  }
}"""


def build_user_prompt(text: str, task_label: str) -> str:
    return (
        f"Evaluate the following IELTS Writing {task_label} answer.\n\n"
        f"Return ONLY this JSON structure:\n{RESPONSE_SCHEMA}\n\n"
        f"Essay:\n{text}"
    )


def normalize_evaluation(parsed: dict[str, Any]) -> dict[str, Any]:
    """
    Map the model's reply onto the keys the UI reads.

    Highlights become {type, text, suggestion} with ``text`` falling back
    to ``excerpt``; statistics gain ``topicRelevancePercentage`` from
    ``topicRelevance`` when it is missing.
    """
    normalized = dict(parsed)

    highlights = normalized.get("highlights")
    if isinstance(highlights, list):
        normalized["highlights"] = [
            {
                "type": h.get("type") or "",
                "text": h.get("text") or h.get("excerpt") or "",
                "suggestion": h.get("suggestion") or "",
            }
            for h in highlights
            if isinstance(h, dict)
        ]

    statistics = normalized.get("statistics")
    if isinstance(statistics, dict):
        statistics = dict(statistics)
        if statistics.get("topicRelevancePercentage") is None:
            statistics["topicRelevancePercentage"] = statistics.get("topicRelevance")
        normalized["statistics"] = statistics

    return normalized


class WritingEvaluator:
    """Examiner-style evaluation of Writing answers."""

    def __init__(
        self,
        llm_client,
        temperature: float = 0.2,
        max_tokens: int = 900,
        max_attempts: int = 2,
        retry_delay: float = 0.5,
    ):
        self.llm_client = llm_client
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    def evaluate(self, text: str, task_type: str = "task2") -> WritingEvaluation:
        """
        Evaluate one answer.

        Args:
            text: The candidate's answer.
            task_type: "task1" for a report, anything else for an essay.

        Raises:
            ValueError: If text is empty.
            Exception: The last error once every attempt failed.
        """
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Missing text")

        if task_type == "task1":
            system_prompt, task_label = TASK1_SYSTEM_PROMPT, "Task 1"
        else:
            system_prompt, task_label = TASK2_SYSTEM_PROMPT, "Task 2"
        user_prompt = build_user_prompt(text, task_label)

        for attempt in range(1, self.max_attempts + 1):
            try:
                content = self.llm_client.complete(
                    system_prompt,
                    user_prompt,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                )
                if not content or not content.strip():
                    raise EmptyLlmResponseError("Empty response")
                parsed = parse_json_safely(content, "Writing Evaluation")
                break
            except Exception as e:
                logger.warning(f"Writing evaluation attempt {attempt} failed: {e}")
                if attempt >= self.max_attempts:
                    raise
                time.sleep(self.retry_delay)

        evaluation = WritingEvaluation.model_validate(normalize_evaluation(parsed))
        logger.info(
            f"Writing {task_label} evaluated: overall {evaluation.overall_score}"
        )
        return evaluation
