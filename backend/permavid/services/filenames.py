"""Filename and download-directory helpers"""
from pathlib import Path
from typing import Optional
import logging
import unicodedata

logger = logging.getLogger(__name__)

# Characters providers and filesystems choke on
_REPLACED_CHARS = set('<>:"/\\|?*？｜#%&{}$!@+`=')
MAX_FILENAME_LENGTH = 200


def sanitize_filename(name: str) -> str:
    """
    Replace unsafe characters with '_' so a title or filename can be sent to a
    provider or used on disk. Letters, digits, '.', '-' and '_' are kept.
    """
    if not name:
        return "untitled"
    out = []
    for ch in name:
        if ch in _REPLACED_CHARS or unicodedata.category(ch).startswith("C"):
            out.append("_")
        elif ch.isalnum() or ch in "._-":
            out.append(ch)
        else:
            out.append("_")
    cleaned = "".join(out).strip(" ._")
    return cleaned[:MAX_FILENAME_LENGTH] or "untitled"


def default_download_dir() -> Path:
    """Platform download folder (~/Downloads)"""
    return Path.home() / "Downloads"


def resolve_download_dir(configured: Optional[str], fallback: Optional[str] = None) -> Path:
    """Directory from AppSettings, else the service default, else ~/Downloads."""
    if configured and configured.strip():
        return Path(configured.strip()).expanduser()
    if fallback and fallback.strip():
        return Path(fallback.strip()).expanduser()
    return default_download_dir()


def ensure_directory(path: Path) -> Path:
    """Create the directory (and parents) if it does not exist."""
    path = Path(path)
    if not path.exists():
        path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created download directory: {path}")
    return path
