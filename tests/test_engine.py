"""
Test Suite for Extraction Engine
================================
PDF rasterization, configuration, and the full request flow with the
OCR and LLM collaborators mocked.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import fitz  # PyMuPDF
import pytest

from exam_extractor.engine import ExtractionEngine, ExtractorConfig
from exam_extractor.errors import ExtractionFailedError, OcrUnavailableError
from exam_extractor.models import OcrResult, Section, UploadedImage
from exam_extractor.rasterizer import PdfRasterizer
from exam_extractor.storage import ImageStorage

RAW_STRUCTURE = {
    "test": "9",
    "section": "Listening",
    "parts": [{
        "part": 1,
        "instructions": "Label the map below.",
        "questions": [{"text": "Gift shop ____"}, {"text": "Toilets ____"}],
    }],
}

MAP_IMAGE = UploadedImage(url="http://localhost:3001/uploads/m.png", filename="m.png", is_map=True)


@pytest.fixture
def pdf_file(tmp_path):
    path = tmp_path / "listening.pdf"
    with fitz.open() as doc:
        for text in ("SECTION 1 Questions 1-10", "Label the map below"):
            page = doc.new_page(width=200, height=200)
            page.insert_text((20, 40), text, fontsize=8)
        doc.save(str(path))
    return str(path)


@pytest.fixture
def storage(tmp_path):
    store = ImageStorage(str(tmp_path / "uploads"))
    store.init_storage()
    return store


@pytest.fixture
def engine(tmp_path, storage):
    rasterizer = MagicMock()
    rasterizer.rasterize.return_value = [
        str(tmp_path / "page-1.png"),
        str(tmp_path / "page-2.png"),
    ]

    ocr_gateway = MagicMock()
    ocr_gateway.extract_text.side_effect = [
        OcrResult(text="Page 1\nSECTION 1", confidence=0.9, service="docTR"),
        OcrResult(text="Label the\nmap below", confidence=0.8, service="docTR"),
    ]

    structured_extractor = MagicMock()
    structured_extractor.extract.return_value = RAW_STRUCTURE

    prompt_provider = MagicMock()
    prompt_provider.get_prompt.return_value = "LISTENING PROMPT"

    image_processor = MagicMock()
    image_processor.process.return_value = [MAP_IMAGE]

    return ExtractionEngine(
        ocr_gateway=ocr_gateway,
        structured_extractor=structured_extractor,
        prompt_provider=prompt_provider,
        storage=storage,
        rasterizer=rasterizer,
        image_processor=image_processor,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# RASTERIZER
# ═══════════════════════════════════════════════════════════════════════════════


class TestPdfRasterizer:
    """Test page rendering with PyMuPDF."""

    def test_page_count(self, pdf_file):
        assert PdfRasterizer().get_page_count(pdf_file) == 2

    def test_renders_every_page(self, pdf_file, tmp_path):
        out = tmp_path / "pages"
        paths = PdfRasterizer(dpi=72).rasterize(pdf_file, str(out))

        assert [p.rsplit("/", 1)[-1] for p in paths] == ["page-1.png", "page-2.png"]
        for path in paths:
            assert (out / path.rsplit("/", 1)[-1]).exists()

    def test_page_range(self, pdf_file, tmp_path):
        paths = PdfRasterizer(dpi=72).rasterize(pdf_file, str(tmp_path), page_range=(2, 5))
        assert len(paths) == 1
        assert paths[0].endswith("page-2.png")

    def test_progress_callback(self, pdf_file, tmp_path):
        callback = MagicMock()
        PdfRasterizer(dpi=72).rasterize(pdf_file, str(tmp_path), progress_callback=callback)
        callback.assert_called_with(2, 2)

    def test_invalid_pdf(self, tmp_path):
        broken = tmp_path / "broken.pdf"
        broken.write_bytes(b"not a pdf")
        with pytest.raises(RuntimeError):
            PdfRasterizer().rasterize(str(broken), str(tmp_path / "out"))


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════


class TestExtractorConfig:
    """Test environment-driven configuration."""

    def test_defaults(self):
        config = ExtractorConfig()
        assert config.ocr_service == "doctr"
        assert config.ocr_fallback_service == "tesseract"
        assert config.openai_model == "gpt-4o"
        assert config.image_dpi == 400
        assert config.llm_max_attempts == 3

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("OCR_SERVICE", "Tesseract")
        monkeypatch.setenv("DOCTR_URL", "http://ocr:9000")
        monkeypatch.setenv("OPENAI_MODEL", "gpt-4o-2024-08-06")
        monkeypatch.setenv("PUBLIC_BASE_URL", "https://exams.example.com")
        monkeypatch.delenv("PROMPTS_DIR", raising=False)

        with patch("exam_extractor.engine.load_dotenv"):
            config = ExtractorConfig.from_env()

        assert config.ocr_service == "tesseract"
        assert config.doctr_url == "http://ocr:9000"
        assert config.openai_model == "gpt-4o-2024-08-06"
        assert config.public_base_url == "https://exams.example.com"
        assert config.prompts_dir is None

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("OCR_SERVICE", "doctr")

        with patch("exam_extractor.engine.load_dotenv"):
            config = ExtractorConfig.from_env(ocr_service="tesseract", doctr_url=None)

        assert config.ocr_service == "tesseract"
        assert config.doctr_url


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════


class TestExtractionEngine:
    """Test the PDF-to-document request flow."""

    def test_success(self, engine, pdf_file, storage):
        progress = MagicMock()

        result = engine.process_pdf(
            pdf_file, "listening", test_id="t9", progress_callback=progress
        )

        assert result.success is True
        assert result.validation.valid is True
        questions = result.structure["parts"][0]["questions"]
        assert [q["type"] for q in questions] == ["image", "map-labelling", "map-labelling"]
        assert questions[0]["url"] == MAP_IMAGE.url

        # Each page OCR'd exactly once, its raw text handed to image processing
        assert engine.ocr_gateway.extract_text.call_count == 2
        pages, test_id = engine.image_processor.process.call_args.args
        assert [text for _, text in pages] == ["Page 1\nSECTION 1", "Label the\nmap below"]
        assert test_id == "t9"

        # Cleaned page texts joined by a blank line
        ocr_text, prompt = engine.structured_extractor.extract.call_args.args[:2]
        assert ocr_text == "SECTION 1\n\nLabel the map below"
        assert prompt == "LISTENING PROMPT"
        engine.prompt_provider.get_prompt.assert_called_once_with("listening")

        progress.assert_called_with(2, 2)
        assert list(storage.temp_root.iterdir()) == []

    def test_response_shape(self, engine, pdf_file):
        response = engine.process_pdf(pdf_file, Section.LISTENING).to_response()

        assert set(response) == {"success", "structure", "uploadedImages", "validation"}
        assert response["uploadedImages"] == [
            {"url": MAP_IMAGE.url, "filename": "m.png", "isMap": True}
        ]
        assert response["validation"] == {"valid": True, "errors": []}

    def test_generated_test_id(self, engine, pdf_file):
        engine.process_pdf(pdf_file, "reading")
        _, test_id = engine.image_processor.process.call_args.args
        assert test_id.startswith("reading-")

    def test_ocr_unavailable(self, engine, pdf_file, storage):
        engine.ocr_gateway.extract_text.side_effect = OcrUnavailableError(
            {"doctr": "down", "tesseract": "missing"}
        )

        result = engine.process_pdf(pdf_file, "listening")

        assert result.success is False
        assert "All OCR services failed" in result.error
        assert result.to_response() == {"success": False, "error": result.error}
        engine.structured_extractor.extract.assert_not_called()
        assert list(storage.temp_root.iterdir()) == []

    def test_extraction_failed(self, engine, pdf_file, storage):
        engine.structured_extractor.extract.side_effect = ExtractionFailedError(
            3, ValueError("bad json")
        )

        result = engine.process_pdf(pdf_file, "listening")

        assert result.success is False
        assert "after 3 attempts" in result.error
        assert list(storage.temp_root.iterdir()) == []

    def test_unreadable_pdf(self, engine, pdf_file):
        engine.rasterizer.rasterize.side_effect = RuntimeError("Cannot open PDF")
        result = engine.process_pdf(pdf_file, "listening")
        assert result.success is False
        assert result.error == "Cannot open PDF"

    def test_missing_prompt(self, engine, pdf_file):
        engine.prompt_provider.get_prompt.side_effect = FileNotFoundError("no prompt")
        assert engine.process_pdf(pdf_file, "writing").success is False

    def test_no_text(self, engine, pdf_file):
        engine.ocr_gateway.extract_text.side_effect = None
        engine.ocr_gateway.extract_text.return_value = OcrResult(
            text="Page 1", confidence=0.1, service="Tesseract"
        )

        result = engine.process_pdf(pdf_file, "listening")

        assert result.success is False
        engine.structured_extractor.extract.assert_not_called()

    def test_caller_errors_raise(self, engine, tmp_path, pdf_file):
        with pytest.raises(FileNotFoundError):
            engine.process_pdf(str(tmp_path / "missing.pdf"), "listening")
        with pytest.raises(ValueError):
            engine.process_pdf(pdf_file, "speaking")

    def test_writing_keeps_numbers(self, engine, pdf_file):
        engine.structured_extractor.extract.return_value = {
            "test": "2",
            "parts": [{"part": 1, "questions": [{"type": "short-answer", "number": 1}]}],
        }

        result = engine.process_pdf(pdf_file, "writing")

        assert result.structure["section"] == "Writing"
        assert result.structure["parts"][0]["questions"][0]["number"] == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
