"""Find the yt-dlp sidecar (.info.json) that belongs to a queue item.

The download directory is shared by every item, so it may hold sidecars from
other (or earlier) downloads. The right one is picked by comparing the URL
recorded inside each sidecar with the item's URL, never by file name.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
import json
import logging
import re

from permavid.services.filenames import sanitize_filename

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".info.json"
FALLBACK_FILENAME_TEMPLATE = "%(title)s by %(channel)s.%(ext)s"
# Most filesystems cap a single path component at 255 bytes
MAX_NAME_BYTES = 255

# (platform, pattern) pairs; group 1 is the platform video id
_VIDEO_ID_PATTERNS = [
    ("youtube", re.compile(r'(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/shorts/)([a-zA-Z0-9_-]{11})')),
    ("youtube", re.compile(r'youtube\.com/watch\?.*v=([a-zA-Z0-9_-]{11})')),
    ("facebook", re.compile(r'facebook\.com/.*?/reel/(\d+)|fb\.watch/.*?/reel/(\d+)|/reel/(\d+)')),
    ("facebook", re.compile(r'facebook\.com/.*[?&]v=(\d+)')),
    ("vimeo", re.compile(r'vimeo\.com/(?:video/)?(\d+)')),
]


def extract_video_id(url: str) -> Optional[str]:
    """
    Normalized "<platform>:<id>" for URLs of known platforms, None otherwise.
    Two URLs with the same id refer to the same video even if their query
    strings or hosts differ (youtu.be vs youtube.com, tracking params, ...).
    """
    if not url:
        return None
    for platform, pattern in _VIDEO_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            video_id = next((g for g in match.groups() if g), None)
            if video_id:
                return f"{platform}:{video_id}"
    return None


def urls_match(item_url: str, sidecar_url: Optional[str]) -> bool:
    """Compare by extracted video id when both have one, else by exact string."""
    if not sidecar_url:
        return False
    item_id = extract_video_id(item_url)
    sidecar_id = extract_video_id(sidecar_url)
    if item_id is not None and sidecar_id is not None and item_id == sidecar_id:
        return True
    return sidecar_url == item_url


@dataclass
class ArtifactResult:
    matched: bool = False
    title: Optional[str] = None
    thumbnail_url: Optional[str] = None
    local_path: Optional[str] = None
    info_json_path: Optional[str] = None


def _load_sidecar(path: Path) -> Optional[Dict[str, Any]]:
    try:
        info = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read sidecar {path}: {e}")
        return None
    except ValueError as e:
        logger.warning(f"Sidecar {path} is not valid JSON: {e}")
        return None
    if not isinstance(info, dict):
        logger.warning(f"Sidecar {path} does not contain a JSON object")
        return None
    return info


def _existing(path: Path) -> Optional[str]:
    try:
        return str(path) if path.is_file() else None
    except OSError as e:
        logger.warning(f"Cannot check candidate media path {path}: {e}")
        return None


def _fallback_name(title: str, channel: str, ext: str) -> Optional[str]:
    """The "<title> by <channel>.<ext>" name, title cut so the whole name fits MAX_NAME_BYTES."""
    tail = (
        FALLBACK_FILENAME_TEMPLATE
        .replace("%(title)s", "")
        .replace("%(channel)s", channel)
        .replace("%(ext)s", ext)
    )
    budget = MAX_NAME_BYTES - len(tail.encode("utf-8"))
    if budget <= 0:
        return None
    # Cut on bytes, dropping a trailing partial character
    title = title.encode("utf-8")[:budget].decode("utf-8", "ignore")
    return f"{title}{tail}"


def resolve_media_path(info: Dict[str, Any], sidecar: Path, download_dir: Path) -> Optional[str]:
    """
    Media file described by a sidecar, checked against the disk:
    1. the `_filename` field yt-dlp writes,
    2. "<title> by <channel>.<ext>" built from the sidecar fields,
    3. the sidecar's own name with ".info.json" swapped for ".<ext>".
    """
    filename = info.get("_filename")
    if isinstance(filename, str) and filename:
        candidate = Path(filename)
        if not candidate.is_absolute():
            candidate = download_dir / candidate
        found = _existing(candidate)
        if found:
            return found
        logger.warning(f"Path from '_filename' does not exist: {candidate}")

    title = info.get("title")
    ext = info.get("ext")
    if not (isinstance(title, str) and title and isinstance(ext, str) and ext):
        logger.warning(f"Sidecar {sidecar.name} has no title/ext, cannot build a media path")
        return None

    channel = info.get("channel") if isinstance(info.get("channel"), str) else None
    constructed = _fallback_name(sanitize_filename(title), sanitize_filename(channel or "UnknownChannel"), ext)
    if constructed:
        found = _existing(download_dir / constructed)
        if found:
            return found

    derived = sidecar.with_name(sidecar.name[: -len(SIDECAR_SUFFIX)] + f".{ext}")
    found = _existing(derived)
    if found:
        return found

    logger.warning(f"No media file found for sidecar {sidecar.name}")
    return None


def resolve_artifacts(download_dir, item_url: str, item_id: Optional[str] = None) -> ArtifactResult:
    """
    Scan `download_dir` for the sidecar whose URL matches `item_url`, derive the
    media path, title and thumbnail from it, and delete that sidecar.
    Non-matching sidecars are left alone. First match wins.
    """
    download_dir = Path(download_dir)
    label = item_id or item_url
    try:
        sidecars = sorted(p for p in download_dir.glob(f"*{SIDECAR_SUFFIX}") if p.is_file())
    except OSError as e:
        logger.warning(f"Item {label}: could not list {download_dir}: {e}")
        return ArtifactResult()

    for sidecar in sidecars:
        info = _load_sidecar(sidecar)
        if info is None:
            continue
        sidecar_url = info.get("webpage_url") or info.get("original_url")
        if not isinstance(sidecar_url, str) or not urls_match(item_url, sidecar_url):
            logger.debug(f"Item {label}: {sidecar.name} belongs to {sidecar_url}, skipping")
            continue

        logger.info(f"Item {label}: matched sidecar {sidecar.name}")
        result = ArtifactResult(
            matched=True,
            title=info.get("title") if isinstance(info.get("title"), str) else None,
            thumbnail_url=info.get("thumbnail") if isinstance(info.get("thumbnail"), str) else None,
            local_path=resolve_media_path(info, sidecar, download_dir),
            info_json_path=str(sidecar),
        )
        try:
            sidecar.unlink()
        except OSError as e:
            logger.warning(f"Item {label}: failed to remove processed sidecar {sidecar}: {e}")
        return result

    logger.warning(f"Item {label}: no matching {SIDECAR_SUFFIX} found in {download_dir}")
    return ArtifactResult()
