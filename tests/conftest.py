"""
Pytest configuration for imgdir2pdf tests.

Provides fixtures that build small image directories with Pillow.
"""

from __future__ import annotations

import random
from pathlib import Path

import pytest
from PIL import Image

# =============================================================================
# Helpers
# =============================================================================


FORMATS = {
    ".png": "PNG",
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
    ".gif": "GIF",
}


def make_image(path: Path, size: tuple[int, int], color: str = "blue") -> Path:
    """Write a solid-color image, picking the format from the suffix."""
    img = Image.new("RGB", size, color=color)
    img.save(path, FORMATS[path.suffix.lower()])
    return path


def make_truncated_image(path: Path, size: tuple[int, int] = (300, 300), keep: int = 2000) -> Path:
    """
    Write a noise image and cut it after `keep` bytes.

    The header stays intact, so only loading the pixel data fails.
    """
    width, height = size
    noise = random.Random(0).randbytes(width * height * 3)
    Image.frombytes("RGB", size, noise).save(path, FORMATS[path.suffix.lower()])
    path.write_bytes(path.read_bytes()[:keep])
    return path


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep config lookup away from the developer's own config files."""
    monkeypatch.delenv("IMGDIR2PDF_CONFIG", raising=False)
    monkeypatch.setattr("imgdir2pdf.user_config_dir", lambda app: str(tmp_path / "user-config"))
    monkeypatch.setattr("imgdir2pdf.site_config_dir", lambda app: str(tmp_path / "site-config"))


@pytest.fixture
def photos_dir(tmp_path: Path) -> Path:
    """A directory of mixed images in non-sorted creation order, plus noise."""
    photos = tmp_path / "photos"
    photos.mkdir()

    make_image(photos / "page10.png", (100, 200), "red")
    make_image(photos / "page2.jpg", (200, 100), "green")
    make_image(photos / "page1.gif", (100, 100), "blue")
    make_image(photos / "cover.jpeg", (210, 297), "white")

    (photos / "notes.txt").write_text("not an image")
    (photos / "README").write_text("no extension")
    (photos / "nested.png").mkdir()

    return photos
