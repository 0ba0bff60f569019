"""
Page Image Processing
=====================
Decides which page images show a map or diagram, crops them, and
stores every page image for the request.

Map detection is a keyword heuristic over the page's OCR text: any
keyword from MAP_KEYWORDS (case-insensitive substring) flags the page.
Cropping keeps the centred 80% x 60% region of the page.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from PIL import Image

from .models import UploadedImage

logger = logging.getLogger(__name__)

MAP_KEYWORDS = (
    "map", "plan", "diagram", "layout", "floor plan", "museum", "building",
    "entrance", "exit", "reception", "café", "cafe", "shop", "gallery",
    "room", "north", "south", "east", "west", "stairs", "lift", "elevator",
    "parking", "garden", "path", "route", "direction", "location",
)

CROP_WIDTH_RATIO = 0.8
CROP_HEIGHT_RATIO = 0.6


def classify_as_map(ocr_text: str, keywords: tuple[str, ...] = MAP_KEYWORDS) -> bool:
    """True when the OCR text mentions any map/diagram keyword."""
    if not ocr_text:
        return False
    lower_text = ocr_text.lower()
    return any(keyword in lower_text for keyword in keywords)


def crop_box(width: int, height: int) -> tuple[int, int, int, int]:
    """(left, top, right, bottom) of the centred crop region."""
    crop_width = int(width * CROP_WIDTH_RATIO)
    crop_height = int(height * CROP_HEIGHT_RATIO)
    left = (width - crop_width) // 2
    top = (height - crop_height) // 2
    return left, top, left + crop_width, top + crop_height


def crop_map_region(image_path: str, output_path: Optional[str] = None) -> str:
    """
    Crop an image to the region where a map usually sits.

    Returns:
        Path of the cropped PNG, or image_path unchanged when cropping
        failed for any reason.
    """
    if output_path is None:
        source = Path(image_path)
        output_path = str(
            source.with_name(f"cropped-{source.stem}-{uuid.uuid4().hex[:8]}.png")
        )

    try:
        with Image.open(image_path) as image:
            box = crop_box(*image.size)
            if box[2] <= box[0] or box[3] <= box[1]:
                raise ValueError(f"Image too small to crop: {image.size}")
            image.crop(box).save(output_path, format="PNG")
        return output_path
    except Exception as e:
        logger.error(f"Error cropping image {image_path}: {e}")
        return image_path


class PageImageProcessor:
    """
    Classifies, crops and stores the page images of one request.

    Each page is independent: a failure on one page is logged and the
    page is left out of the result.
    """

    def __init__(self, storage):
        self.storage = storage

    def process(
        self,
        pages: list[tuple[str, str]],
        test_id: str,
    ) -> list[UploadedImage]:
        """
        Args:
            pages: (image_path, ocr_text) per page, in page order.
            test_id: Prefix for stored file names.

        Returns:
            One UploadedImage per page that was stored successfully.
        """
        uploaded: list[UploadedImage] = []

        for image_path, ocr_text in pages:
            processed_path = image_path
            try:
                is_map = classify_as_map(ocr_text)
                if is_map:
                    processed_path = crop_map_region(image_path)

                filename = f"{test_id}-{uuid.uuid4()}.png"
                url = self.storage.store_file(processed_path, filename)
                uploaded.append(
                    UploadedImage(url=url, filename=filename, is_map=is_map)
                )
                logger.info(
                    f"Stored page image {Path(image_path).name} "
                    f"as {filename} (map: {is_map})"
                )
            except Exception as e:
                logger.error(f"Error processing image {image_path}: {e}")
            finally:
                if processed_path != image_path and os.path.exists(processed_path):
                    os.unlink(processed_path)

        return uploaded
