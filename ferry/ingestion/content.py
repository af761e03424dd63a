"""
Content hashing, classification and validation for ingested files, plus the
archive/quarantine moves shared by the folder watcher and upload processor.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from ferry.core.errors import FerryError
from ferry.core.types import ContentType

logger = logging.getLogger("Ferry.Content")

STRUCTURED_EXTENSIONS = {".json"}
BINARY_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".gif"}

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

PathLike = Union[str, Path]


def compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(8192)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def classify(name: str) -> ContentType:
    """Extension-based classification; unknown extensions are OTHER."""
    extension = os.path.splitext(name)[1].lower()
    if extension in STRUCTURED_EXTENSIONS:
        return ContentType.STRUCTURED
    if extension in BINARY_EXTENSIONS:
        return ContentType.BINARY
    return ContentType.OTHER


def is_valid_structured(data: bytes) -> bool:
    try:
        json.loads(data.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError):
        return False
    return True


def is_allowed_binary(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in BINARY_EXTENSIONS


def validate(content_type: ContentType, path: Path) -> bool:
    """
    Check that a file's content matches its classification.

    Structured files must parse as JSON; binary files must carry an
    allow-listed extension; everything else passes.
    """
    if content_type == ContentType.STRUCTURED:
        return is_valid_structured(path.read_bytes())
    if content_type == ContentType.BINARY:
        return is_allowed_binary(path.name)
    return True


def safe_file_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


def normalize_folder_path(folder_path: Optional[str], create_if_missing: bool = True) -> Path:
    """Absolute form of ``folder_path``, creating it when allowed."""
    if folder_path is None or folder_path.strip() == "":
        raise ValueError("Folder path cannot be empty")
    normalized = Path(folder_path).expanduser().resolve()
    if not normalized.is_dir():
        if not create_if_missing:
            raise FileNotFoundError(f"Folder path does not exist: {normalized}")
        try:
            normalized.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FileNotFoundError(f"Failed to create folder path {normalized}: {exc}") from exc
    return normalized


def move_to_archive(
    source: PathLike,
    directory: PathLike,
    relative_root: Optional[PathLike] = None,
    *,
    now: Optional[datetime] = None,
) -> Path:
    """
    Move ``source`` into ``directory`` under a timestamp-prefixed name.

    When ``source`` lives below ``relative_root`` its sub-folders are
    recreated under ``directory``.
    """
    source_path = Path(source)
    target_dir = Path(directory)
    if relative_root is not None:
        try:
            relative_parent = source_path.resolve().parent.relative_to(Path(relative_root).resolve())
        except ValueError:
            relative_parent = None
        if relative_parent is not None and str(relative_parent) not in ("", "."):
            target_dir = target_dir / relative_parent

    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    destination = target_dir / f"{stamp}_{source_path.name}"
    counter = 1
    while destination.exists():
        destination = target_dir / f"{stamp}_{counter}_{source_path.name}"
        counter += 1

    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source_path), str(destination))
    except OSError as exc:
        raise FerryError(f"Failed to archive file {source_path}: {exc}") from exc
    logger.debug("Moved %s to %s", source_path, destination)
    return destination
