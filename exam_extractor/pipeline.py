"""
Post-Processing Pipeline
========================
Eight deterministic stages that turn the LLM's raw structure into a
schema-consistent exam document.

    1. merge_duplicate_parts       Parts split across pages become one
    2. apply_structural_defaults   Every required field gets a value
    3. inject_image_objects        Map image before the first map question
    4. materialize_inline_images   base64 payloads become stored files
    5. link_matching_questions     Divider variants copied onto matching
    6. standardize_question_ids    En/em dashes become hyphens
    7. enforce_question_numbering  number/questionId recomputed per part
    8. validate_required_fields    Reports what is still missing

Stages take a document and return a new one; the input is never
modified. Stages 1-7 never raise on malformed input. Stage 8 reports
gaps instead of raising, so a human editor can finish the job.
"""

from __future__ import annotations

import base64
import binascii
import copy
import logging
import re
import time
from typing import Any, Iterable, Optional, Union

from .models import (
    InputType,
    QuestionType,
    Section,
    UploadedImage,
    ValidationResult,
)

logger = logging.getLogger(__name__)

QUESTIONS_PER_PART = 10

NON_QUESTION_TYPES = frozenset({QuestionType.DIVIDER.value, QuestionType.IMAGE.value})

INPUT_TYPE_BY_QUESTION_TYPE = {
    QuestionType.FORM_FILL.value: InputType.TEXT.value,
    QuestionType.MULTIPLE_CHOICE.value: InputType.RADIO.value,
    QuestionType.MULTI_SELECT.value: InputType.CHECKBOX.value,
    QuestionType.MATCHING.value: InputType.DRAG.value,
    QuestionType.MAP_LABELLING.value: InputType.TEXT.value,
    QuestionType.SHORT_ANSWER.value: InputType.TEXT.value,
    QuestionType.SENTENCE_COMPLETION.value: InputType.TEXT.value,
}

ANSWER_CONSTRAINTS_BY_QUESTION_TYPE = {
    QuestionType.FORM_FILL.value: "ONE WORD AND/OR A NUMBER",
    QuestionType.MULTIPLE_CHOICE.value: "CHOOSE THE CORRECT LETTER A, B OR C",
    QuestionType.MULTI_SELECT.value: "CHOOSE TWO LETTERS A-E",
    QuestionType.MATCHING.value: "CHOOSE FROM THE BOX A-H",
    QuestionType.MAP_LABELLING.value: "LABEL FROM MAP A-H",
    QuestionType.SHORT_ANSWER.value: "NO MORE THAN THREE WORDS",
    QuestionType.SENTENCE_COMPLETION.value: "ONE WORD ONLY",
}

DEFAULT_INPUT_TYPE = InputType.TEXT.value
DEFAULT_ANSWER_CONSTRAINTS = "ONE WORD AND/OR A NUMBER"

MAP_ID_PREFIX = Section.LISTENING.value.lower()

BLANK_MARKERS = ("____", "...", "…")
DASH_VARIANTS_PATTERN = re.compile(r"[–—]")
DATA_URI_PREFIX_PATTERN = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)


# ─── Type Inference ───────────────────────────────────────────────────────────


def detect_question_type(question: dict, part_instructions: str = "") -> str:
    """
    Guess a question's type from its text and instructions.

    Rules, first match wins:
        blank marker in text + map/diagram/label     -> map-labelling
        blank marker in text + form/notes/table      -> form-fill
        blank marker in text                         -> sentence-completion
        has options + "choose two"/"choose three"    -> multi-select
        has options                                  -> multiple-choice
        has draggable variants or "match"            -> matching
        "short answer" or "no more than"             -> short-answer
        anything else                                -> form-fill

    Instructions are the question's own followed by its part's.
    """
    text = str(question.get("text") or question.get("questionText") or "").lower()
    instructions = " ".join(
        str(value) for value in (question.get("instructions"), part_instructions)
        if value
    ).lower()

    if any(marker in text for marker in BLANK_MARKERS):
        if _mentions(instructions, "map", "diagram", "label"):
            return QuestionType.MAP_LABELLING.value
        if _mentions(instructions, "form", "notes", "table"):
            return QuestionType.FORM_FILL.value
        return QuestionType.SENTENCE_COMPLETION.value

    if question.get("textList") or question.get("options"):
        if _mentions(instructions, "choose two", "choose three"):
            return QuestionType.MULTI_SELECT.value
        return QuestionType.MULTIPLE_CHOICE.value

    if question.get("draggableVariants") or "match" in instructions:
        return QuestionType.MATCHING.value

    if _mentions(instructions, "short answer", "no more than"):
        return QuestionType.SHORT_ANSWER.value

    return QuestionType.FORM_FILL.value


def input_type_for(question_type: str) -> str:
    return INPUT_TYPE_BY_QUESTION_TYPE.get(question_type, DEFAULT_INPUT_TYPE)


def answer_constraints_for(question_type: str) -> str:
    return ANSWER_CONSTRAINTS_BY_QUESTION_TYPE.get(
        question_type, DEFAULT_ANSWER_CONSTRAINTS
    )


# ─── Stage 1: Merge Duplicate Parts ───────────────────────────────────────────


def merge_duplicate_parts(structure: Any) -> dict:
    """
    Merge parts that share a part number, keeping question order.

    Numbered parts come out sorted ascending. Parts without a usable
    number stay separate and follow the numbered ones. A bare list is
    taken as the document's parts.
    """
    document = _as_document(structure)
    parts = document.get("parts")
    if not isinstance(parts, list):
        return document

    numbered: dict[int, dict] = {}
    unnumbered: list[dict] = []

    for part in parts:
        if not isinstance(part, dict):
            logger.warning(f"Dropping malformed part: {part!r}")
            continue

        questions = part.get("questions")
        questions = list(questions) if isinstance(questions, list) else []
        number = _coerce_part_number(part.get("part"))

        if number is None:
            unnumbered.append({**part, "questions": questions})
        elif number in numbered:
            logger.info(f"Merging duplicate part {number}")
            numbered[number]["questions"].extend(questions)
        else:
            numbered[number] = {**part, "part": number, "questions": questions}

    document["parts"] = [numbered[n] for n in sorted(numbered)] + unnumbered
    return document


# ─── Stage 2: Structural Defaults ─────────────────────────────────────────────


def apply_structural_defaults(
    structure: Any,
    default_section: str = Section.LISTENING.value,
) -> dict:
    """
    Fill every missing document, part and question field.

    A part without a usable number gets its position, or the next number
    after it that no other part uses. A question whose type is not a
    string has it inferred.
    """
    document = _as_document(structure)

    if not document.get("test"):
        document["test"] = "1"
    if not document.get("section"):
        document["section"] = default_section
    if not isinstance(document.get("parts"), list):
        document["parts"] = []

    prefix = _id_prefix(document)
    test = document["test"]
    parts: list[dict] = []
    taken = {
        number
        for number in (
            _coerce_part_number(p.get("part")) for p in _dict_items(document["parts"])
        )
        if number is not None
    }

    for index, part in enumerate(document["parts"]):
        if not isinstance(part, dict):
            logger.warning(f"Dropping malformed part at index {index}")
            continue

        part_number = _coerce_part_number(part.get("part"))
        if part_number is None:
            part_number = index + 1
            while part_number in taken:
                part_number += 1
            taken.add(part_number)
        part["part"] = part_number

        if not part.get("instructions"):
            part["instructions"] = f"Part {part_number} instructions"
        if not part.get("questionsRange"):
            start = (part_number - 1) * QUESTIONS_PER_PART + 1
            end = part_number * QUESTIONS_PER_PART
            part["questionsRange"] = f"{start}-{end}"
        if not isinstance(part.get("questions"), list):
            part["questions"] = []

        questions: list[dict] = []
        for q_index, question in enumerate(
            q for q in part["questions"] if isinstance(q, dict)
        ):
            _apply_question_defaults(
                question, q_index, part_number, part["instructions"], prefix, test
            )
            questions.append(question)
        part["questions"] = questions
        parts.append(part)

    document["parts"] = parts
    return document


def _apply_question_defaults(
    question: dict,
    q_index: int,
    part_number: int,
    part_instructions: str,
    prefix: str,
    test: Any,
):
    if not question.get("questionId"):
        question["questionId"] = f"{prefix}-{test}-{part_number}-{q_index + 1}"
    if not _question_type(question):
        question["type"] = detect_question_type(question, part_instructions)

    question_type = question["type"]
    if question_type in NON_QUESTION_TYPES:
        return

    if not question.get("number"):
        question["number"] = (part_number - 1) * QUESTIONS_PER_PART + q_index + 1
    if not question.get("inputType"):
        question["inputType"] = input_type_for(question_type)
    if not question.get("answerConstraints"):
        question["answerConstraints"] = answer_constraints_for(question_type)
    if question.get("isInteractive") is None:
        question["isInteractive"] = True

    answer = question.get("answer")
    if isinstance(answer, dict):
        answer.setdefault("correct", "")
        answer.setdefault("accepted", [])
    elif isinstance(answer, str) and answer:
        question["answer"] = {"correct": answer, "accepted": []}
    else:
        question["answer"] = {"correct": "", "accepted": []}


# ─── Stage 3: Image Injection ─────────────────────────────────────────────────


def inject_image_objects(
    structure: Any,
    uploaded_images: Iterable[Union[UploadedImage, dict]],
) -> dict:
    """
    Insert the first map image before each part's first map-labelling
    question, unless an image question already precedes it. The image's
    id is always listening-<test>-<part>-map.
    """
    document = _as_document(structure)
    map_url = _first_map_url(uploaded_images)
    if map_url is None or not isinstance(document.get("parts"), list):
        return document

    for part in _dict_items(document["parts"]):
        questions = part.get("questions")
        if not isinstance(questions, list):
            continue

        new_questions: list = []
        for question in questions:
            if (
                isinstance(question, dict)
                and _question_type(question) == QuestionType.MAP_LABELLING.value
                and not any(
                    _question_type(q) == QuestionType.IMAGE.value
                    for q in _dict_items(new_questions)
                )
            ):
                new_questions.append({
                    "type": QuestionType.IMAGE.value,
                    "questionId": (
                        f"{MAP_ID_PREFIX}-{document.get('test')}-{part.get('part')}-map"
                    ),
                    "url": map_url,
                    "headline": "Map",
                })
                logger.info(f"Injected map image into part {part.get('part')}")
            new_questions.append(question)
        part["questions"] = new_questions

    return document


# ─── Stage 4: Inline Images ───────────────────────────────────────────────────


def materialize_inline_images(structure: Any, storage=None) -> dict:
    """
    Store base64 payloads of image questions and replace them with URLs.

    A payload that cannot be decoded or stored stays in place.
    """
    document = _as_document(structure)

    for part in _dict_items(document.get("parts")):
        for question in _dict_items(part.get("questions")):
            if _question_type(question) != QuestionType.IMAGE.value:
                continue
            payload = question.get("base64")
            if not payload:
                continue
            if storage is None:
                logger.warning(
                    f"No image storage configured, keeping base64 payload "
                    f"for {question.get('questionId')}"
                )
                continue

            try:
                data = DATA_URI_PREFIX_PATTERN.sub("", str(payload))
                image_bytes = base64.b64decode("".join(data.split()), validate=True)
                if not image_bytes:
                    raise ValueError("empty image payload")
                name = question.get("questionId") or f"image-{int(time.time() * 1000)}"
                filename = f"{name}.png"
                question["url"] = storage.store_bytes(image_bytes, filename)
                del question["base64"]
                logger.info(f"Processed base64 image: {filename}")
            except (binascii.Error, ValueError, OSError) as e:
                logger.error(
                    f"Failed to process base64 image "
                    f"{question.get('questionId')}: {e}"
                )

    return document


# ─── Stage 5: Matching Linkage ────────────────────────────────────────────────


def link_matching_questions(structure: Any) -> dict:
    """Copy each part's divider draggableVariants onto its matching questions."""
    document = _as_document(structure)

    for part in _dict_items(document.get("parts")):
        questions = _dict_items(part.get("questions"))
        divider = next(
            (
                q for q in questions
                if _question_type(q) == QuestionType.DIVIDER.value
                and isinstance(q.get("draggableVariants"), list)
                and q["draggableVariants"]
            ),
            None,
        )
        if divider is None:
            continue

        variants = divider["draggableVariants"]
        for question in questions:
            if _question_type(question) == QuestionType.MATCHING.value:
                question["draggableVariants"] = list(variants)

    return document


# ─── Stage 6: Dash Normalization ──────────────────────────────────────────────


def standardize_question_ids(structure: Any) -> dict:
    """Replace en/em dashes in questionId and numberRange with '-'."""
    document = _as_document(structure)

    for part in _dict_items(document.get("parts")):
        for question in _dict_items(part.get("questions")):
            for key in ("questionId", "numberRange"):
                value = question.get(key)
                if isinstance(value, str):
                    question[key] = DASH_VARIANTS_PATTERN.sub("-", value)

    return document


# ─── Stage 7: Numbering ───────────────────────────────────────────────────────


def enforce_question_numbering(structure: Any) -> dict:
    """
    Recompute numbers from position: part_index * 10 + question_index + 1.

    Both indices are 0-based positions in the document, dividers and
    images included. questionId is rebuilt to end in the new number.
    """
    document = _as_document(structure)
    prefix = _id_prefix(document)

    parts = document.get("parts")
    if not isinstance(parts, list):
        return document

    for part_index, part in enumerate(parts):
        if not isinstance(part, dict) or not isinstance(part.get("questions"), list):
            continue
        for question_index, question in enumerate(part["questions"]):
            if (
                not isinstance(question, dict)
                or _question_type(question) in NON_QUESTION_TYPES
            ):
                continue
            expected = part_index * QUESTIONS_PER_PART + question_index + 1
            question["number"] = expected
            if question.get("questionId"):
                question["questionId"] = (
                    f"{prefix}-{document.get('test')}-{part.get('part')}-{expected}"
                )

    return document


# ─── Stage 8: Validation ──────────────────────────────────────────────────────


def validate_required_fields(structure: Any) -> ValidationResult:
    """
    Collect an error line for every required field that is still missing.

    Divider and image questions are not checked.
    """
    errors: list[str] = []
    document = structure if isinstance(structure, dict) else {}

    if not document.get("test"):
        errors.append("Missing test number")
    if not document.get("section"):
        errors.append("Missing section name")

    parts = document.get("parts")
    if not isinstance(parts, list):
        errors.append("Missing or invalid parts array")
        parts = []

    for part_index, part in enumerate(parts):
        if not isinstance(part, dict):
            errors.append(f"Part {part_index}: Invalid part object")
            continue
        if not part.get("part"):
            errors.append(f"Part {part_index}: Missing part number")
        if not part.get("instructions"):
            errors.append(f"Part {part_index}: Missing instructions")
        if not part.get("questionsRange"):
            errors.append(f"Part {part_index}: Missing questionsRange")

        questions = part.get("questions")
        if not isinstance(questions, list):
            errors.append(f"Part {part_index}: Missing or invalid questions array")
            continue

        for question_index, question in enumerate(questions):
            where = f"Part {part_index}, Question {question_index}"
            if not isinstance(question, dict):
                errors.append(f"{where}: Invalid question object")
                continue
            if _question_type(question) in NON_QUESTION_TYPES:
                continue

            if not question.get("questionId"):
                errors.append(f"{where}: Missing questionId")
            if not question.get("number"):
                errors.append(f"{where}: Missing number")
            if not _question_type(question):
                errors.append(f"{where}: Missing type")
            if not question.get("inputType"):
                errors.append(f"{where}: Missing inputType")
            if question.get("isInteractive") is None:
                errors.append(f"{where}: Missing isInteractive")
            if not isinstance(question.get("answer"), dict):
                errors.append(f"{where}: Missing answer object")

    if errors:
        logger.warning(f"Validation found {len(errors)} problem(s)")
        for error in errors:
            logger.warning(f"  • {error}")
    else:
        logger.info("All required fields validated")

    return ValidationResult(valid=not errors, errors=errors)


# ─── Pipeline ─────────────────────────────────────────────────────────────────


class PostProcessor:
    """
    Runs the eight stages in order.

    Writing papers skip matching linkage and renumbering: tasks keep the
    numbers the paper gives them.
    """

    def __init__(self, storage=None):
        self.storage = storage

    def run(
        self,
        structure: Any,
        section: Union[Section, str] = Section.LISTENING,
        uploaded_images: Optional[Iterable[Union[UploadedImage, dict]]] = None,
    ) -> tuple[dict, ValidationResult]:
        """
        Returns:
            (document, validation). The document is returned even when
            validation failed.
        """
        section = Section.parse(section)
        logger.info(f"Starting post-processing pipeline ({section.value})")

        document = merge_duplicate_parts(structure)
        document = apply_structural_defaults(document, default_section=section.value)
        document = inject_image_objects(document, uploaded_images or [])
        document = materialize_inline_images(document, self.storage)
        if section != Section.WRITING:
            document = link_matching_questions(document)
        document = standardize_question_ids(document)
        if section != Section.WRITING:
            document = enforce_question_numbering(document)
        validation = validate_required_fields(document)

        question_count = sum(
            1
            for part in _dict_items(document["parts"])
            for q in _dict_items(part.get("questions"))
            if _question_type(q) not in NON_QUESTION_TYPES
        )
        logger.info(
            f"Post-processing complete: {len(document['parts'])} parts, "
            f"{question_count} questions, valid={validation.valid}"
        )
        return document, validation


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _as_document(structure: Any) -> dict:
    """Deep copy of structure as a document dict."""
    if isinstance(structure, dict):
        return copy.deepcopy(structure)
    if isinstance(structure, list):
        return {"parts": copy.deepcopy(structure)}
    return {}


def _dict_items(values: Any) -> list[dict]:
    """The dict entries of a list. Anything that is not a list has none."""
    if not isinstance(values, list):
        return []
    return [value for value in values if isinstance(value, dict)]


def _question_type(question: dict) -> str:
    """The question's type, or "" when the LLM gave something other than a string."""
    value = question.get("type")
    return value if isinstance(value, str) else ""


def _id_prefix(document: dict) -> str:
    return str(document.get("section") or Section.LISTENING.value).strip().lower()


def _coerce_part_number(value: Any) -> Optional[int]:
    """Positive int from an int, integral float or digit string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
        return number if number > 0 else None
    return None


def _first_map_url(
    uploaded_images: Iterable[Union[UploadedImage, dict]],
) -> Optional[str]:
    for image in uploaded_images:
        if isinstance(image, UploadedImage):
            if image.is_map:
                return image.url
        elif isinstance(image, dict) and image.get("isMap"):
            return image.get("url")
    return None


def _mentions(text: str, *phrases: str) -> bool:
    return any(phrase in text for phrase in phrases)
