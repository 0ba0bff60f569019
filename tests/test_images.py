"""
Test Suite for Image Handling
=============================
Map classification, cropping, page image storage, and the filesystem
image store.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from exam_extractor.images import (
    PageImageProcessor,
    classify_as_map,
    crop_box,
    crop_map_region,
)
from exam_extractor.storage import ImageStorage


@pytest.fixture
def page_png(tmp_path) -> str:
    path = tmp_path / "page-1.png"
    Image.new("RGB", (1000, 500), "white").save(path)
    return str(path)


@pytest.fixture
def storage(tmp_path) -> ImageStorage:
    store = ImageStorage(str(tmp_path / "uploads"), "http://localhost:3001/")
    store.init_storage()
    return store


# ═══════════════════════════════════════════════════════════════════════════════
# CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════════════


class TestClassifyAsMap:
    """Test the keyword heuristic."""

    @pytest.mark.parametrize("text", [
        "Label the MAP below",
        "Plan of the museum",
        "Go past the Reception and turn left",
        "The Café is next to the car park",
        "Take the lift to the second floor",
    ])
    def test_map_pages(self, text):
        assert classify_as_map(text) is True

    @pytest.mark.parametrize("text", ["", None, "Complete the form below. Name: Age:"])
    def test_non_map_pages(self, text):
        assert classify_as_map(text) is False


# ═══════════════════════════════════════════════════════════════════════════════
# CROPPING
# ═══════════════════════════════════════════════════════════════════════════════


class TestCropMapRegion:
    """Test the centred crop."""

    def test_crop_box(self):
        assert crop_box(1000, 500) == (100, 100, 900, 400)

    def test_crops_to_centre(self, page_png, tmp_path):
        output = str(tmp_path / "cropped.png")

        result = crop_map_region(page_png, output)

        assert result == output
        with Image.open(result) as cropped:
            assert cropped.size == (800, 300)

    def test_default_output_name(self, page_png):
        result = crop_map_region(page_png)
        assert Path(result).name.startswith("cropped-page-1-")
        assert Path(result).exists()

    def test_failure_returns_original(self, tmp_path):
        broken = tmp_path / "broken.png"
        broken.write_bytes(b"not an image")
        assert crop_map_region(str(broken)) == str(broken)

    def test_tiny_image_returns_original(self, tmp_path):
        tiny = tmp_path / "tiny.png"
        Image.new("RGB", (1, 1)).save(tiny)
        assert crop_map_region(str(tiny)) == str(tiny)


# ═══════════════════════════════════════════════════════════════════════════════
# PAGE IMAGE PROCESSOR
# ═══════════════════════════════════════════════════════════════════════════════


class TestPageImageProcessor:
    """Test per-page classify/crop/store."""

    def test_stores_every_page(self, tmp_path, storage):
        pages = []
        for n, text in enumerate(["Complete the form", "Label the map below"], start=1):
            path = tmp_path / f"page-{n}.png"
            Image.new("RGB", (200, 100), "white").save(path)
            pages.append((str(path), text))

        uploaded = PageImageProcessor(storage).process(pages, "listening-42")

        assert [img.is_map for img in uploaded] == [False, True]
        for image in uploaded:
            assert image.filename.startswith("listening-42-")
            assert image.filename.endswith(".png")
            assert image.url == f"http://localhost:3001/uploads/{image.filename}"
            assert (storage.uploads_dir / image.filename).exists()

        with Image.open(storage.uploads_dir / uploaded[1].filename) as stored_map:
            assert stored_map.size == (160, 60)
        # Temporary crop removed
        assert not list(tmp_path.glob("cropped-*"))

    def test_failed_page_skipped(self, page_png):
        storage = MagicMock()
        storage.store_file.side_effect = [OSError("disk full"), "http://u/ok.png"]

        uploaded = PageImageProcessor(storage).process(
            [(page_png, "form"), (page_png, "form")], "t"
        )

        assert len(uploaded) == 1
        assert uploaded[0].url == "http://u/ok.png"

    def test_wire_shape(self, page_png):
        storage = MagicMock()
        storage.store_file.return_value = "http://u/a.png"

        with patch("exam_extractor.images.uuid.uuid4", return_value="fixed"):
            uploaded = PageImageProcessor(storage).process([(page_png, "")], "reading-1")

        assert uploaded[0].model_dump(by_alias=True) == {
            "url": "http://u/a.png",
            "filename": "reading-1-fixed.png",
            "isMap": False,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# STORAGE
# ═══════════════════════════════════════════════════════════════════════════════


class TestImageStorage:
    """Test the filesystem store."""

    def test_url_for(self, storage):
        assert storage.url_for("a.png") == "http://localhost:3001/uploads/a.png"

    def test_store_bytes(self, storage):
        url = storage.store_bytes(b"data", "q 1/../evil.png")
        assert url == "http://localhost:3001/uploads/evil.png"
        assert (storage.uploads_dir / "evil.png").read_bytes() == b"data"

    def test_store_file_and_resolve(self, storage, page_png):
        url = storage.store_file(page_png, "stored.png")
        assert url.endswith("/uploads/stored.png")
        assert storage.resolve("stored.png") is not None
        assert storage.resolve("missing.png") is None

    def test_temp_dirs(self, storage):
        temp_dir = storage.make_temp_dir()
        (temp_dir / "page-1.png").write_bytes(b"x")
        assert temp_dir.parent == storage.temp_root

        storage.remove_dir(temp_dir)

        assert not temp_dir.exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
