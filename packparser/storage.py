"""
Filesystem Storage Manager
===========================
Manages job working areas, original uploads and permanent media.

Directory Layout (under the data dir, default ``<project>/data``):
    jobs/
    └── {job_id}/
        ├── input/       # uploaded document
        ├── working/     # scratch space for extraction
        ├── assets/      # media extracted from the document
        └── output/      # debug snapshots (extracted.json, parse_result.json)
    packages/
    └── {package_id}/original.{ext}
    media/
    └── packages/{package_id}/   # permanent media after a successful import
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Project root: one level up from /packparser/ package
_PROJECT_ROOT = Path(__file__).parent.parent.absolute()

JOB_SUBDIRS = ("input", "working", "assets", "output")

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".svg", ".tiff"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".ogg", ".m4a"}
VIDEO_EXTENSIONS = {".mp4", ".webm", ".mov"}
MEDIA_EXTENSIONS = IMAGE_EXTENSIONS | AUDIO_EXTENSIONS | VIDEO_EXTENSIONS


def get_data_dir(data_dir: str = None) -> Path:
    """Return the configured data directory."""
    return Path(
        data_dir or os.environ.get("PACKPARSER_DATA_DIR", _PROJECT_ROOT / "data")
    )


def init_storage(data_dir: str = None):
    """Ensure all top-level directories exist."""
    root = get_data_dir(data_dir)
    for name in ("jobs", "packages", "media"):
        (root / name).mkdir(parents=True, exist_ok=True)
    logger.info(f"Storage initialized: {root}")


def is_allowed_media(extension: str) -> bool:
    """Check an extension (with or without dot) against the media allow-list."""
    extension = extension.lower()
    if not extension.startswith("."):
        extension = "." + extension
    return extension in MEDIA_EXTENSIONS


def media_kind(extension: str) -> Optional[str]:
    extension = extension.lower()
    if extension in IMAGE_EXTENSIONS:
        return "image"
    if extension in AUDIO_EXTENSIONS:
        return "audio"
    if extension in VIDEO_EXTENSIONS:
        return "video"
    return None


# ─── Job Working Area ─────────────────────────────────────────────────────────


def get_job_dir(job_id: str, data_dir: str = None) -> Path:
    """Return the job folder, creating its sub-directories."""
    job_dir = get_data_dir(data_dir) / "jobs" / _sanitize_name(job_id)
    for name in JOB_SUBDIRS:
        (job_dir / name).mkdir(parents=True, exist_ok=True)
    return job_dir


def save_upload(file_obj, job_id: str, filename: str, data_dir: str = None) -> str:
    """
    Save an uploaded document into the job's input folder.
    Accepts a Werkzeug FileStorage (``.save``) or a binary stream.
    Returns the absolute path to the saved file.
    """
    dest = get_job_dir(job_id, data_dir) / "input" / _sanitize_filename(filename)
    if hasattr(file_obj, "save"):
        file_obj.save(str(dest))
    else:
        with open(dest, "wb") as f:
            shutil.copyfileobj(file_obj, f)
    logger.info(f"Upload saved: {dest}")
    return str(dest)


def copy_upload(source_path: str, job_id: str, data_dir: str = None) -> str:
    """Copy a local document into the job's input folder (CLI submissions)."""
    dest = get_job_dir(job_id, data_dir) / "input" / _sanitize_filename(
        Path(source_path).name
    )
    if str(Path(source_path).resolve()) != str(dest.resolve()):
        shutil.copy2(source_path, dest)
    return str(dest)


def delete_job_dir(job_id: str, data_dir: str = None) -> bool:
    job_dir = get_data_dir(data_dir) / "jobs" / _sanitize_name(job_id)
    if job_dir.exists():
        shutil.rmtree(job_dir, ignore_errors=True)
        logger.info(f"Deleted job folder: {job_dir}")
        return True
    return False


def clear_job_assets(job_id: str, data_dir: str = None):
    """Empty the job's asset folder before a retry re-extracts the document."""
    assets_dir = get_job_dir(job_id, data_dir) / "assets"
    for f in assets_dir.iterdir():
        if f.is_file():
            f.unlink()


# ─── Permanent Package Storage ────────────────────────────────────────────────


def get_package_media_dir(package_id: int, data_dir: str = None) -> Path:
    media_dir = get_data_dir(data_dir) / "media" / "packages" / str(package_id)
    media_dir.mkdir(parents=True, exist_ok=True)
    return media_dir


def save_original(source_path: str, package_id: int, data_dir: str = None) -> str:
    """Keep the original document next to the imported package."""
    package_dir = get_data_dir(data_dir) / "packages" / str(package_id)
    package_dir.mkdir(parents=True, exist_ok=True)
    dest = package_dir / f"original{Path(source_path).suffix.lower()}"
    shutil.copy2(source_path, dest)
    return str(dest)


def move_job_assets(job_id: str, package_id: int, data_dir: str = None) -> dict[str, str]:
    """
    Move extracted media from the job folder to the package's media folder.
    Only allow-listed extensions are moved.
    Returns a mapping of file name → path relative to the data dir.
    """
    assets_dir = get_job_dir(job_id, data_dir) / "assets"
    media_dir = get_package_media_dir(package_id, data_dir)
    root = get_data_dir(data_dir)

    moved: dict[str, str] = {}
    for f in sorted(assets_dir.iterdir()):
        if not f.is_file() or not is_allowed_media(f.suffix):
            continue
        dest = media_dir / f.name
        shutil.move(str(f), str(dest))
        moved[f.name] = dest.relative_to(root).as_posix()
    logger.info(f"Moved {len(moved)} media files to {media_dir}")
    return moved


def delete_package_files(package_id: int, data_dir: str = None):
    root = get_data_dir(data_dir)
    for path in (root / "media" / "packages" / str(package_id),
                 root / "packages" / str(package_id)):
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _sanitize_name(name: str) -> str:
    """Sanitize a name for use as a directory name."""
    safe = re.sub(r"[^\w\-.]", "_", str(name))
    return safe.strip("._") or "unnamed"


def _sanitize_filename(filename: str) -> str:
    """Keep the extension, sanitize the stem."""
    path = Path(filename)
    return f"{_sanitize_name(path.stem)}{path.suffix.lower()}"
