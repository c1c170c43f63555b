"""Curated preset images a shopper can pick instead of uploading a photo."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from shared.models import PresetImage

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}


def name_from_filename(filename: str) -> str:
    """``1-male-alex.jpg`` -> ``Male Alex``."""

    stem = re.sub(r"^\d+[-_]", "", Path(filename).stem)
    words = re.sub(r"[-_]", " ", stem).split()
    return " ".join(word.capitalize() for word in words)


def gender_from_filename(filename: str) -> Optional[str]:
    lower = filename.lower()
    if "female" in lower:
        return "female"
    if "male" in lower:
        return "male"
    if "unisex" in lower or "neutral" in lower:
        return "unisex"
    return None


def preset_id_from_filename(filename: str) -> str:
    return re.sub(r"[^a-z0-9-]", "-", Path(filename).stem.lower())[:64]


class PresetCatalog:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, preset_image_id: str) -> Optional[PresetImage]:
        return self.session.get(PresetImage, preset_image_id)

    def get_active(self, preset_image_id: str) -> Optional[PresetImage]:
        preset = self.get(preset_image_id)
        if preset is None or not preset.is_active:
            return None
        return preset

    def list_active(self) -> List[PresetImage]:
        stmt = (
            select(PresetImage)
            .where(PresetImage.is_active.is_(True))
            .order_by(PresetImage.sort_order.asc(), PresetImage.id.asc())
        )
        return list(self.session.scalars(stmt))

    def seed_from_directory(self, directory: Path, url_prefix: str) -> List[PresetImage]:
        """Register every supported image in ``directory``; existing ids are updated.

        ``url_prefix`` is where the files are publicly served from. The generator
        fetches preset images over HTTP, so the prefix should be an absolute URL.
        """

        directory = Path(directory)
        if not directory.is_dir():
            logger.warning("Preset directory %s does not exist", directory)
            return []

        files = sorted(
            path for path in directory.iterdir() if path.suffix.lower() in SUPPORTED_EXTENSIONS
        )
        seeded: List[PresetImage] = []
        for index, path in enumerate(files):
            preset_id = preset_id_from_filename(path.name)
            preset = self.get(preset_id)
            if preset is None:
                preset = PresetImage(id=preset_id)
                self.session.add(preset)
            preset.name = name_from_filename(path.name)
            preset.gender = gender_from_filename(path.name)
            preset.image_url = f"{url_prefix.rstrip('/')}/{path.name}"
            preset.sort_order = index
            preset.is_active = True
            seeded.append(preset)
        self.session.commit()
        logger.info("Seeded %s preset images from %s", len(seeded), directory)
        return seeded
