"""File-backed storage for images uploaded with inference requests.

Every image-bearing request stores its decoded image as a PNG under a
generated unique filename so that the UI can reference it later at
``/images/{filename}``.

Storage rules:

- filenames are ``<uuid4 hex>.png`` and are never reused
- lookups only accept a bare filename that resolves directly inside the
  images directory (no separators, no hidden files, no traversal)
- files older than the retention window are purged at startup and whenever a
  new image is saved; a retention of ``0`` keeps everything
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from pathlib import Path

from PIL import Image

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class ImageStore:
    """PNG files in a single directory, addressed by filename."""

    def __init__(self, images_dir: Path, retention_hours: float = 0.0) -> None:
        self.images_dir = images_dir
        self.retention_hours = retention_hours
        self.images_dir.mkdir(parents=True, exist_ok=True)

    def save_png(self, image: Image.Image) -> str:
        """Persist ``image`` as PNG and return its generated filename."""
        self.purge_expired()

        filename = f"{uuid.uuid4().hex}.png"
        image.save(self.images_dir / filename, format="PNG")
        logger.debug("Stored image %s (%dx%d).", filename, image.width, image.height)
        return filename

    def resolve(self, filename: str) -> Path | None:
        """Return the path of a stored image, or ``None``.

        ``None`` is returned both for names that do not exist and for names
        rejected by the sanitization rules, so callers cannot tell the two
        apart.

        Args:
            filename: Name taken from the request path.

        Returns:
            Absolute path of an existing file directly inside the images
            directory, or ``None``.
        """
        if (
            not filename
            or "/" in filename
            or "\\" in filename
            or "\x00" in filename
            or filename.startswith(".")
        ):
            logger.warning("Rejected image filename: %r", filename)
            return None

        try:
            root = self.images_dir.resolve()
            path = (root / filename).resolve()
        except (ValueError, OSError) as exc:
            logger.warning("Invalid image path %r: %s", filename, exc)
            return None

        # Security: the file must live directly in the images root.
        if path.parent != root:
            logger.warning("Path traversal attempt detected: %s", path)
            return None

        if not path.is_file():
            return None
        return path

    @staticmethod
    def iter_chunks(path: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        with open(path, "rb") as handle:
            while True:
                chunk = handle.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    @staticmethod
    def url_for(filename: str) -> str:
        return f"/images/{filename}"

    def purge_expired(self, now: float | None = None) -> int:
        """Delete stored PNGs older than the retention window.

        Args:
            now: Reference timestamp; defaults to the current time.

        Returns:
            Number of files deleted.
        """
        if self.retention_hours <= 0:
            return 0

        cutoff = (time.time() if now is None else now) - self.retention_hours * 3600
        removed = 0
        for path in self.images_dir.glob("*.png"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.error("Failed to purge image %s: %s", path.name, exc)

        if removed:
            logger.info("Purged %d expired image(s) from %s.", removed, self.images_dir)
        return removed
