"""
PDF Rasterizer
==============
Renders PDF pages to PNG images using PyMuPDF (fitz), one file per page,
ready for OCR.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)


class PdfRasterizer:
    """
    Renders every page of a PDF at a fixed resolution.

    Output files are named ``page-<n>.png`` (1-indexed). Callers should
    rely on the returned list for page order, not on a directory sort.
    """

    def __init__(self, dpi: int = 400, image_format: str = "png"):
        self.dpi = dpi
        self.image_format = image_format

    def get_page_count(self, pdf_path: str) -> int:
        """Get total number of pages in the PDF."""
        with fitz.open(pdf_path) as doc:
            return doc.page_count

    def rasterize(
        self,
        pdf_path: str,
        output_dir: str,
        page_range: Optional[tuple[int, int]] = None,
        progress_callback: Optional[callable] = None,
    ) -> list[str]:
        """
        Render pages to image files.

        Args:
            pdf_path: Path to the PDF file.
            output_dir: Directory that receives the page images.
            page_range: Optional (start, end) range (1-indexed, inclusive).
            progress_callback: Optional callable(current, total).

        Returns:
            Image paths in page order.

        Raises:
            RuntimeError: If the PDF cannot be opened or has no pages.
        """
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        image_paths: list[str] = []

        try:
            doc = fitz.open(pdf_path)
        except Exception as e:
            raise RuntimeError(f"Cannot open PDF {pdf_path}: {e}") from e

        with doc:
            total_pages = doc.page_count
            if total_pages == 0:
                raise RuntimeError(f"PDF has no pages: {pdf_path}")

            start_page = 1
            end_page = total_pages
            if page_range:
                start_page = max(1, page_range[0])
                end_page = min(total_pages, page_range[1])

            logger.info(
                f"Rasterizing {pdf_path} at {self.dpi} dpi "
                f"(pages {start_page} to {end_page})"
            )

            for page_idx in range(start_page - 1, end_page):
                page_num = page_idx + 1
                pixmap = doc[page_idx].get_pixmap(dpi=self.dpi)
                image_path = out / f"page-{page_num}.{self.image_format}"
                pixmap.save(str(image_path))
                image_paths.append(str(image_path))

                if progress_callback:
                    progress_callback(page_num, end_page)

        logger.info(f"Rendered {len(image_paths)} page image(s)")
        return image_paths
