"""
Data Models
===========
Pydantic models for OCR results, uploaded images, validation reports
and the extraction response handed back to the caller.

The exam document itself stays a plain dict: it is untrusted LLM output
until the post-processing pipeline has repaired it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ─── Enums ────────────────────────────────────────────────────────────────────


class Section(str, Enum):
    """Exam paper section."""
    LISTENING = "Listening"
    READING = "Reading"
    WRITING = "Writing"

    @classmethod
    def parse(cls, value: str) -> "Section":
        """Accept 'listening', 'Listening', 'LISTENING'."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValueError(f"Unknown section: {value}")

    @property
    def slug(self) -> str:
        return self.value.lower()


class QuestionType(str, Enum):
    """Question variants produced by the LLM."""
    FORM_FILL = "form-fill"
    MULTIPLE_CHOICE = "multiple-choice"
    MULTI_SELECT = "multi-select"
    MATCHING = "matching"
    MAP_LABELLING = "map-labelling"
    SHORT_ANSWER = "short-answer"
    SENTENCE_COMPLETION = "sentence-completion"
    DIVIDER = "divider"
    IMAGE = "image"


class InputType(str, Enum):
    """Widget used by the exam frontend to collect an answer."""
    TEXT = "text"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    DRAG = "drag"


class OcrServiceName(str, Enum):
    """Configured OCR backends."""
    DOCTR = "doctr"
    TESSERACT = "tesseract"


# ─── OCR ──────────────────────────────────────────────────────────────────────


class OcrResult(BaseModel):
    """Text extracted from a single page image."""
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    processing_time: int = Field(
        default=0,
        description="Wall time of the extraction call in milliseconds",
    )
    service: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def character_count(self) -> int:
        return len(self.text)


class BackendStatus(BaseModel):
    """Availability of a single OCR backend."""
    available: bool
    url: Optional[str] = None
    version: Optional[str] = None


class OcrServiceStatus(BaseModel):
    """Snapshot of the OCR gateway for health dashboards."""
    primary_service: str
    fallback_service: str
    doctr_url: str
    services: dict[str, BackendStatus]
    configuration: dict[str, Any] = Field(default_factory=dict)


# ─── Images ───────────────────────────────────────────────────────────────────


class UploadedImage(BaseModel):
    """A page image persisted for this request."""
    model_config = ConfigDict(populate_by_name=True)

    url: str
    filename: str
    is_map: bool = Field(default=False, alias="isMap")


# ─── Validation / Result ──────────────────────────────────────────────────────


class ValidationResult(BaseModel):
    """Outcome of the final required-field validation stage."""
    valid: bool = True
    errors: list[str] = Field(default_factory=list)


class ExtractionResult(BaseModel):
    """
    Complete output of an extraction request.
    This is the top-level JSON structure returned to the caller.
    """
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    structure: Optional[dict[str, Any]] = None
    uploaded_images: list[UploadedImage] = Field(
        default_factory=list, alias="uploadedImages"
    )
    validation: Optional[ValidationResult] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "ExtractionResult":
        return cls(success=False, error=error)

    def to_response(self) -> dict[str, Any]:
        """Serialize to the wire shape consumed by grading and rendering."""
        if not self.success:
            return {"success": False, "error": self.error or "Unknown error"}

        response: dict[str, Any] = {
            "success": True,
            "structure": self.structure,
            "uploadedImages": [
                img.model_dump(by_alias=True) for img in self.uploaded_images
            ],
        }
        if self.validation is not None:
            response["validation"] = self.validation.model_dump()
        return response


# ─── Writing Evaluation ───────────────────────────────────────────────────────


class EvaluationHighlight(BaseModel):
    """A short excerpt of the essay with an examiner suggestion."""
    type: str = ""
    text: str = ""
    suggestion: str = ""


class WritingEvaluation(BaseModel):
    """Examiner-style evaluation of a Writing task response."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    overall_score: Optional[float] = Field(default=None, alias="overallScore")
    criteria: dict[str, Any] = Field(default_factory=dict)
    highlights: list[EvaluationHighlight] = Field(default_factory=list)
    summary: str = ""
    statistics: dict[str, Any] = Field(default_factory=dict)
