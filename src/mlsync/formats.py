"""Audio format tables shared by the scanner, hashing and duplicate ranking."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, FrozenSet


DEFAULT_EXTENSIONS = ("mp3", "m4a", "wav", "aac", "aiff", "flac")

LOSSLESS_FORMATS = frozenset({"FLAC", "ALAC", "WAV", "AIFF", "PCM"})
LOSSY_FORMATS = frozenset({"MP3", "AAC", "HE-AAC", "HE-AACV2", "AC-3", "OPUS", "VORBIS", "OGG"})

# Best guess when the reader cannot tell the codec; .m4a may hold AAC or ALAC.
_FORMAT_BY_SUFFIX = {
    ".mp3": "MP3",
    ".m4a": "AAC",
    ".aac": "AAC",
    ".wav": "WAV",
    ".aiff": "AIFF",
    ".aif": "AIFF",
    ".flac": "FLAC",
}


def normalize_extensions(extensions: Iterable[str]) -> FrozenSet[str]:
    """Return a set of lowercase suffixes with a leading dot ("mp3" -> ".mp3")."""
    out = set()
    for ext in extensions:
        ext = ext.strip().lower()
        if not ext:
            continue
        out.add(ext if ext.startswith(".") else f".{ext}")
    return frozenset(out)


def is_supported(path: Path, suffixes: FrozenSet[str]) -> bool:
    return path.suffix.lower() in suffixes


def format_from_suffix(path: Path) -> str:
    return _FORMAT_BY_SUFFIX.get(path.suffix.lower(), path.suffix.lstrip(".").upper() or "UNKNOWN")


def is_lossless(fmt: str) -> bool:
    return (fmt or "").strip().upper() in LOSSLESS_FORMATS


def is_lossy(fmt: str) -> bool:
    return (fmt or "").strip().upper() in LOSSY_FORMATS


def is_hidden(name: str) -> bool:
    return name.startswith(".")
