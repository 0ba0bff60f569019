"""
Filesystem Image Storage
========================
Persists page images and inline (base64) images, and hands out the
public URL each stored file is served under.

Directory Layout:
    uploads/
    ├── <filename>.png     # Stored images, served at /uploads/<filename>
    └── tmp/
        └── pdf-<ms>/      # Per-request rasterized pages (removed after use)
"""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_PUBLIC_BASE_URL = "http://localhost:3001"


class ImageStorage:
    """Stores images under uploads_dir and maps them to public URLs."""

    def __init__(
        self,
        uploads_dir: str = "uploads",
        public_base_url: str = DEFAULT_PUBLIC_BASE_URL,
    ):
        self.uploads_dir = Path(uploads_dir).absolute()
        self.public_base_url = public_base_url.rstrip("/")
        self.temp_root = self.uploads_dir / "tmp"

    def init_storage(self):
        """Ensure all required directories exist."""
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.temp_root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Storage initialized: {self.uploads_dir}")

    def url_for(self, filename: str) -> str:
        return f"{self.public_base_url}/uploads/{filename}"

    # ─── Images ───────────────────────────────────────────────────────────

    def store_file(self, source_path: str, filename: Optional[str] = None) -> str:
        """
        Copy an image into the uploads folder.
        Returns the public URL of the stored copy.
        """
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        fname = _sanitize_name(filename or Path(source_path).name)
        dest = self.uploads_dir / fname

        if Path(source_path).resolve() != dest.resolve():
            shutil.copy2(source_path, dest)

        logger.info(f"Image stored: {fname}")
        return self.url_for(fname)

    def store_bytes(self, data: bytes, filename: str) -> str:
        """Write raw image bytes to the uploads folder. Returns the URL."""
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        fname = _sanitize_name(filename)
        dest = self.uploads_dir / fname
        dest.write_bytes(data)
        logger.info(f"Image written: {fname} ({len(data)} bytes)")
        return self.url_for(fname)

    def resolve(self, filename: str) -> Optional[Path]:
        """Absolute path of a stored file, or None if it does not exist."""
        path = self.uploads_dir / Path(filename).name
        return path if path.exists() else None

    # ─── Temporary Files ──────────────────────────────────────────────────

    def make_temp_dir(self, prefix: str = "pdf") -> Path:
        """Create a fresh per-request working directory."""
        stamp = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        temp_dir = self.temp_root / f"{prefix}-{stamp}"
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir

    def remove_dir(self, path: Path):
        """Remove a working directory and everything in it."""
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
            logger.debug(f"Removed temporary directory: {path}")


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _sanitize_name(name: str) -> str:
    """Sanitize a file name for filesystem and URL use."""
    return "".join(
        c if c.isalnum() or c in "-_." else "_"
        for c in Path(name).name
    ).strip()[:150]
