"""
OCR Gateway
===========
Two interchangeable OCR backends behind one retry/fallback policy.

    - DocTRBackend: remote docTR FastAPI service (health-checked per use)
    - TesseractBackend: local Tesseract via pytesseract (always available)

Policy (OcrGateway.extract_text):
    1. Try the primary backend up to max_retries times, 1s apart.
       A remote primary that reports unhealthy is abandoned at once.
    2. If a distinct fallback is configured, try it once.
    3. Raise OcrUnavailableError carrying the last error of each backend.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Optional

import pytesseract
import requests
from PIL import Image

from .errors import OcrUnavailableError
from .models import BackendStatus, OcrResult, OcrServiceName, OcrServiceStatus

logger = logging.getLogger(__name__)

DEFAULT_DOCTR_URL = "http://localhost:8001"
HEALTH_CHECK_TIMEOUT = 5.0


# ─── Backends ─────────────────────────────────────────────────────────────────


class DocTRBackend:
    """Client for the remote docTR OCR service."""

    name = OcrServiceName.DOCTR.value
    label = "docTR"
    remote = True

    def __init__(
        self,
        base_url: str = DEFAULT_DOCTR_URL,
        timeout: float = 30.0,
        health_timeout: float = HEALTH_CHECK_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.session = session or requests.Session()

    def is_healthy(self) -> bool:
        """GET /health. Any transport error counts as unhealthy."""
        try:
            response = self.session.get(
                f"{self.base_url}/health", timeout=self.health_timeout
            )
            if response.status_code != 200:
                return False
            return response.json().get("status") == "healthy"
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"docTR service health check failed: {e}")
            return False

    def extract_text(self, image_path: str) -> OcrResult:
        if not os.path.exists(image_path):
            raise FileNotFoundError(f"Image file not found: {image_path}")

        start_time = time.time()
        logger.info(f"docTR: Processing {Path(image_path).name}")

        with open(image_path, "rb") as f:
            response = self.session.post(
                f"{self.base_url}/ocr",
                files={"file": (Path(image_path).name, f)},
                timeout=self.timeout,
            )
        response.raise_for_status()
        data = response.json()

        if not data.get("success"):
            raise RuntimeError("docTR service returned unsuccessful response")

        processing_time = int((time.time() - start_time) * 1000)
        confidence = _clamp_confidence(data.get("confidence", 0.0))
        text = data.get("text") or ""

        logger.info(
            f"docTR: Extracted {data.get('character_count', len(text))} "
            f"characters in {processing_time}ms (confidence: {confidence:.2f})"
        )

        return OcrResult(
            text=text,
            confidence=confidence,
            processing_time=processing_time,
            service=self.label,
            metadata=data.get("processing_info") or {},
        )


class TesseractBackend:
    """In-process Tesseract engine."""

    name = OcrServiceName.TESSERACT.value
    label = "Tesseract"
    remote = False

    def __init__(self, language: str = "eng", config: str = "--oem 3 --psm 6"):
        self.language = language
        self.config = config

    def is_healthy(self) -> bool:
        return True

    def version(self) -> Optional[str]:
        try:
            return str(pytesseract.get_tesseract_version())
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            logger.warning(f"Tesseract version unavailable: {e}")
            return None

    def extract_text(self, image_path: str) -> OcrResult:
        if not os.path.exists(image_path):
            raise FileNotFoundError(f"Image file not found: {image_path}")

        start_time = time.time()
        logger.info(f"Tesseract: Processing {Path(image_path).name}")

        with Image.open(image_path) as image:
            data = pytesseract.image_to_data(
                image,
                lang=self.language,
                config=self.config,
                output_type=pytesseract.Output.DICT,
            )

        text, confidence = _assemble_tesseract_words(data)
        processing_time = int((time.time() - start_time) * 1000)

        logger.info(
            f"Tesseract: Extracted {len(text)} characters in "
            f"{processing_time}ms (confidence: {confidence:.2f})"
        )

        return OcrResult(
            text=text,
            confidence=confidence,
            processing_time=processing_time,
            service=self.label,
            metadata={
                "model": "tesseract",
                "language": self.language,
                "filename": Path(image_path).name,
                "file_size": os.path.getsize(image_path),
            },
        )


# ─── Gateway ──────────────────────────────────────────────────────────────────


class OcrGateway:
    """
    Selects an OCR backend per call with health-checked fallback.

    Backends are stateless, so one gateway can serve concurrent requests.
    """

    def __init__(
        self,
        backends: dict[str, Any],
        primary_service: str = OcrServiceName.DOCTR.value,
        fallback_service: Optional[str] = OcrServiceName.TESSERACT.value,
        max_retries: int = 2,
        retry_delay: float = 1.0,
    ):
        self.backends = backends
        self.primary_service = primary_service.lower()
        self.fallback_service = fallback_service.lower() if fallback_service else None
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

        for service in (self.primary_service, self.fallback_service):
            if service and service not in self.backends:
                raise ValueError(f"Unknown OCR service: {service}")

        logger.info(
            f"OCR gateway initialized with primary: {self.primary_service}, "
            f"fallback: {self.fallback_service}"
        )

    @classmethod
    def from_settings(
        cls,
        primary_service: str = OcrServiceName.DOCTR.value,
        fallback_service: Optional[str] = OcrServiceName.TESSERACT.value,
        doctr_url: str = DEFAULT_DOCTR_URL,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        tesseract_language: str = "eng",
    ) -> "OcrGateway":
        backends = {
            OcrServiceName.DOCTR.value: DocTRBackend(doctr_url, timeout=timeout),
            OcrServiceName.TESSERACT.value: TesseractBackend(
                language=tesseract_language
            ),
        }
        return cls(
            backends,
            primary_service=primary_service,
            fallback_service=fallback_service,
            max_retries=max_retries,
            retry_delay=retry_delay,
        )

    def extract_text(self, image_path: str) -> OcrResult:
        """
        Extract text from one image with retry and fallback.

        Raises:
            OcrUnavailableError: If every attempted backend failed.
        """
        errors: dict[str, str] = {}
        primary = self.backends[self.primary_service]

        for attempt in range(1, self.max_retries + 1):
            if primary.remote and not primary.is_healthy():
                errors[primary.name] = f"{primary.label} service is unhealthy"
                logger.warning(
                    f"{primary.label} is unhealthy, skipping remaining attempts"
                )
                break

            try:
                return primary.extract_text(image_path)
            except Exception as e:
                errors[primary.name] = str(e)
                logger.warning(
                    f"OCR attempt {attempt} failed with "
                    f"{self.primary_service}: {e}"
                )
                if attempt < self.max_retries:
                    logger.info(f"Retrying in {self.retry_delay:g} second(s)...")
                    time.sleep(self.retry_delay)

        if self.fallback_service and self.fallback_service != self.primary_service:
            fallback = self.backends[self.fallback_service]
            logger.info(f"Falling back to {self.fallback_service}")

            if fallback.remote and not fallback.is_healthy():
                errors[fallback.name] = (
                    f"{fallback.label} fallback service is also unhealthy"
                )
            else:
                try:
                    return fallback.extract_text(image_path)
                except Exception as e:
                    errors[fallback.name] = str(e)
                    logger.error(
                        f"Fallback service {self.fallback_service} "
                        f"also failed: {e}"
                    )

        raise OcrUnavailableError(errors)

    def extract_text_batch(self, image_paths: list[str]) -> list[dict[str, Any]]:
        """
        Extract text from several images, one at a time.

        A failing image is recorded and does not stop the batch.
        """
        results: list[dict[str, Any]] = []

        for index, image_path in enumerate(image_paths):
            logger.info(
                f"Processing image {index + 1}/{len(image_paths)}: "
                f"{Path(image_path).name}"
            )
            try:
                result = self.extract_text(image_path)
                results.append({
                    "index": index,
                    "image_path": image_path,
                    "success": True,
                    "result": result,
                })
            except OcrUnavailableError as e:
                logger.error(f"Failed to process image {index + 1}: {e}")
                results.append({
                    "index": index,
                    "image_path": image_path,
                    "success": False,
                    "error": str(e),
                })

        successful = sum(1 for r in results if r["success"])
        logger.info(
            f"Batch processing complete: {successful}/{len(image_paths)} "
            f"images processed successfully"
        )
        return results

    def get_service_status(self) -> OcrServiceStatus:
        """Report configuration and backend reachability."""
        services: dict[str, BackendStatus] = {}
        doctr_url = ""
        timeout = None

        doctr = self.backends.get(OcrServiceName.DOCTR.value)
        if doctr is not None:
            doctr_url = doctr.base_url
            timeout = doctr.timeout
            services[doctr.label] = BackendStatus(
                available=doctr.is_healthy(),
                url=doctr.base_url,
            )

        tesseract = self.backends.get(OcrServiceName.TESSERACT.value)
        if tesseract is not None:
            services[tesseract.label] = BackendStatus(
                available=True,
                version=tesseract.version(),
            )

        return OcrServiceStatus(
            primary_service=self.primary_service,
            fallback_service=self.fallback_service or "",
            doctr_url=doctr_url,
            services=services,
            configuration={
                "timeout": timeout,
                "max_retries": self.max_retries,
                "retry_delay": self.retry_delay,
            },
        )


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _assemble_tesseract_words(data: dict[str, list]) -> tuple[str, float]:
    """Rebuild line text from image_to_data output and average confidence."""
    lines: dict[tuple, list[str]] = {}
    confidences: list[float] = []

    for i, word in enumerate(data.get("text", [])):
        word = (word or "").strip()
        if not word:
            continue
        key = (
            data["block_num"][i],
            data["par_num"][i],
            data["line_num"][i],
        )
        lines.setdefault(key, []).append(word)
        conf = float(data["conf"][i])
        if conf >= 0:
            confidences.append(conf)

    text = "\n".join(" ".join(words) for words in lines.values())
    if not confidences:
        return text, 0.0
    return text, _clamp_confidence(sum(confidences) / len(confidences) / 100)


def _clamp_confidence(value: Any) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(1.0, max(0.0, value))
