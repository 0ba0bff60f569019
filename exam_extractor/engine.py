"""
Extraction Engine
=================
Main orchestrator that turns one exam PDF into a validated exam document.

Usage:
    engine = ExtractionEngine.from_config(ExtractorConfig.from_env())
    result = engine.process_pdf("path/to/listening.pdf", "listening")
    # result is an ExtractionResult; result.to_response() is the wire shape

Architecture:
    PDF → PdfRasterizer → page images → OcrGateway (per page) →
    cleaned text → StructuredExtractor (prompt + LLM) → raw structure →
    PostProcessor (8 stages) → ExtractionResult
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

from .errors import ExtractorError
from .evaluation import EVALUATION_MODEL, WritingEvaluator
from .extractor import StructuredExtractor
from .images import PageImageProcessor
from .llm import DEFAULT_MODEL, ChatCompletionClient
from .models import ExtractionResult, Section
from .ocr import DEFAULT_DOCTR_URL, OcrGateway
from .pipeline import PostProcessor
from .prompts import PromptProvider
from .rasterizer import PdfRasterizer
from .storage import DEFAULT_PUBLIC_BASE_URL, ImageStorage
from .text_repair import clean_ocr_text

logger = logging.getLogger(__name__)


@dataclass
class ExtractorConfig:
    """Configuration for the extraction engine."""

    # OCR
    ocr_service: str = "doctr"
    ocr_fallback_service: Optional[str] = "tesseract"
    doctr_url: str = DEFAULT_DOCTR_URL
    ocr_timeout: float = 30.0
    ocr_max_retries: int = 2
    ocr_retry_delay: float = 1.0
    tesseract_language: str = "eng"

    # LLM
    openai_api_key: Optional[str] = None
    openai_model: str = DEFAULT_MODEL
    evaluation_model: str = EVALUATION_MODEL
    llm_temperature: float = 0.1
    llm_max_tokens: int = 8000
    llm_max_attempts: int = 3

    # Storage
    uploads_dir: str = "uploads"
    public_base_url: str = DEFAULT_PUBLIC_BASE_URL
    prompts_dir: Optional[str] = None

    # Rasterization
    image_dpi: int = 400
    page_range: Optional[tuple[int, int]] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides) -> "ExtractorConfig":
        """
        Build a config from environment variables (and a .env file).

        Keyword overrides win over the environment.
        """
        load_dotenv(env_file)

        values = {
            "ocr_service": os.getenv("OCR_SERVICE", cls.ocr_service).lower(),
            "doctr_url": os.getenv("DOCTR_URL", cls.doctr_url),
            "openai_api_key": os.getenv("OPENAI_API_KEY"),
            "openai_model": os.getenv("OPENAI_MODEL", cls.openai_model),
            "public_base_url": os.getenv("PUBLIC_BASE_URL", cls.public_base_url),
            "uploads_dir": os.getenv("UPLOADS_DIR", cls.uploads_dir),
            "prompts_dir": os.getenv("PROMPTS_DIR") or None,
            "log_level": os.getenv("LOG_LEVEL", cls.log_level),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ExtractionEngine:
    """
    PDF-to-exam-document engine.

    Orchestrates the full request:
        1. Rasterization (one PNG per page)
        2. OCR of every page (docTR with Tesseract fallback)
        3. Page image classification and storage
        4. Structured extraction (LLM + JSON repair)
        5. Post-processing and validation

    Collaborators are injected; the engine holds no per-request state,
    so one instance can serve concurrent requests.
    """

    def __init__(
        self,
        ocr_gateway: OcrGateway,
        structured_extractor: StructuredExtractor,
        prompt_provider: PromptProvider,
        storage: ImageStorage,
        rasterizer: Optional[PdfRasterizer] = None,
        image_processor: Optional[PageImageProcessor] = None,
        post_processor: Optional[PostProcessor] = None,
        config: Optional[ExtractorConfig] = None,
    ):
        self.config = config or ExtractorConfig()
        self.ocr_gateway = ocr_gateway
        self.structured_extractor = structured_extractor
        self.prompt_provider = prompt_provider
        self.storage = storage
        self.rasterizer = rasterizer or PdfRasterizer(dpi=self.config.image_dpi)
        self.image_processor = image_processor or PageImageProcessor(storage)
        self.post_processor = post_processor or PostProcessor(storage)

    @classmethod
    def from_config(cls, config: Optional[ExtractorConfig] = None) -> "ExtractionEngine":
        """Wire the concrete OCR, LLM and storage collaborators."""
        config = config or ExtractorConfig.from_env()
        setup_logging(config.log_level, config.log_file)

        storage = ImageStorage(config.uploads_dir, config.public_base_url)
        storage.init_storage()

        ocr_gateway = OcrGateway.from_settings(
            primary_service=config.ocr_service,
            fallback_service=config.ocr_fallback_service,
            doctr_url=config.doctr_url,
            timeout=config.ocr_timeout,
            max_retries=config.ocr_max_retries,
            retry_delay=config.ocr_retry_delay,
            tesseract_language=config.tesseract_language,
        )
        llm_client = ChatCompletionClient(
            model=config.openai_model, api_key=config.openai_api_key
        )
        structured_extractor = StructuredExtractor(
            llm_client,
            temperature=config.llm_temperature,
            max_tokens=config.llm_max_tokens,
            max_attempts=config.llm_max_attempts,
        )

        return cls(
            ocr_gateway=ocr_gateway,
            structured_extractor=structured_extractor,
            prompt_provider=PromptProvider(config.prompts_dir),
            storage=storage,
            config=config,
        )

    def create_evaluator(self) -> WritingEvaluator:
        """Writing evaluator sharing this engine's API credentials."""
        return WritingEvaluator(
            ChatCompletionClient(
                model=self.config.evaluation_model,
                api_key=self.config.openai_api_key,
            )
        )

    def process_pdf(
        self,
        pdf_path: str,
        section: Union[Section, str],
        test_id: Optional[str] = None,
        progress_callback: Optional[callable] = None,
    ) -> ExtractionResult:
        """
        Extract a structured exam document from a PDF.

        Args:
            pdf_path: Path to the uploaded PDF.
            section: Listening, Reading or Writing.
            test_id: Prefix for stored image names. Generated if omitted.
            progress_callback: Callback(page_num, total_pages) called after
                each page is OCR'd.

        Returns:
            ExtractionResult. OCR, LLM and rendering failures produce a
            result with success=False instead of raising.

        Raises:
            FileNotFoundError: If the PDF does not exist.
            ValueError: If the section is unknown.
        """
        section = Section.parse(section)
        pdf_path = os.path.abspath(pdf_path)
        if not os.path.exists(pdf_path):
            raise FileNotFoundError(f"PDF not found: {pdf_path}")

        test_id = test_id or f"{section.slug}-{int(time.time() * 1000)}"
        start_time = time.time()
        logger.info(f"Starting {section.value} extraction of: {pdf_path}")

        temp_dir = self.storage.make_temp_dir()
        try:
            # ── Step 1: Rasterize ─────────────────────────────────────────
            logger.info("Phase 1: Rasterization")
            page_paths = self.rasterizer.rasterize(
                pdf_path, str(temp_dir), page_range=self.config.page_range
            )

            # ── Step 2: OCR every page once ───────────────────────────────
            logger.info(f"Phase 2: OCR of {len(page_paths)} page(s)")
            pages: list[tuple[str, str]] = []
            cleaned_texts: list[str] = []
            for page_num, page_path in enumerate(page_paths, start=1):
                ocr_result = self.ocr_gateway.extract_text(page_path)
                pages.append((page_path, ocr_result.text))
                cleaned = clean_ocr_text(ocr_result.text)
                if cleaned:
                    cleaned_texts.append(cleaned)
                logger.info(
                    f"Page {page_num}: {ocr_result.character_count} chars "
                    f"via {ocr_result.service}"
                )
                if progress_callback:
                    progress_callback(page_num, len(page_paths))

            # ── Step 3: Page images ───────────────────────────────────────
            logger.info("Phase 3: Page image processing")
            uploaded_images = self.image_processor.process(pages, test_id)

            combined_text = "\n\n".join(cleaned_texts)
            if not combined_text:
                return ExtractionResult.failure("No text could be extracted from the PDF")

            # ── Step 4: Structured extraction ─────────────────────────────
            logger.info("Phase 4: Structured extraction")
            system_prompt = self.prompt_provider.get_prompt(section.slug)
            raw_structure = self.structured_extractor.extract(
                combined_text, system_prompt, context=f"{section.value} extraction"
            )

            # ── Step 5: Post-processing ───────────────────────────────────
            logger.info("Phase 5: Post-processing")
            structure, validation = self.post_processor.run(
                raw_structure, section, uploaded_images
            )

        except ExtractorError as e:
            logger.error(f"{section.value} extraction failed: {e}")
            return ExtractionResult.failure(str(e))
        except (RuntimeError, OSError) as e:
            logger.error(f"{section.value} extraction failed: {e}")
            return ExtractionResult.failure(str(e))
        finally:
            self.storage.remove_dir(Path(temp_dir))

        elapsed = time.time() - start_time
        logger.info(
            f"Extraction complete in {elapsed:.2f}s: "
            f"{len(structure.get('parts', []))} parts, "
            f"{len(uploaded_images)} images"
        )

        return ExtractionResult(
            success=True,
            structure=structure,
            uploaded_images=uploaded_images,
            validation=validation,
        )


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure the package logger: console always, file optionally."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    package_logger = logging.getLogger("exam_extractor")
    package_logger.setLevel(level)

    if not package_logger.handlers:
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        package_logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)
