from __future__ import annotations

import os
import re
import time
from pathlib import Path

from lab_lending.services.errors import ValidationError


BASE_DIR = Path(__file__).resolve().parent.parent
UPLOADS_DIR = Path(os.environ.get("UPLOADS_DIR") or BASE_DIR / "static" / "uploads")
UPLOADS_URL_PREFIX = "/uploads"
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(raw: str | None, fallback: str) -> str:
    name = _UNSAFE_CHARS.sub("_", Path(raw or "").name).strip("._")
    return name or fallback


def save_material_image(material_id: str | None, filename: str | None, content: bytes, content_type: str | None) -> str:
    """Store an uploaded image under ``materials/`` and return its URL."""
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("Unsupported file type. Please upload an image (jpg, png, webp, gif).")
    if not content:
        raise ValidationError("The uploaded image is empty.")

    # New materials have no id yet, so the upload time stands in for it.
    prefix = _safe_name(material_id, "") or str(int(time.time() * 1000))
    stored_name = f"{prefix}_{_safe_name(filename, 'image')}"

    target_dir = UPLOADS_DIR / "materials"
    target_dir.mkdir(parents=True, exist_ok=True)
    with (target_dir / stored_name).open("wb") as output:
        output.write(content)
    return f"{UPLOADS_URL_PREFIX}/materials/{stored_name}"
