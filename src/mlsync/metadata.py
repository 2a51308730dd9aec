"""Tag and stream-info reader using mutagen.

Only the handful of fields the catalog and duplicate ranking need are read:
title/artist/album/genre/year from the tags and duration/bitrate/codec from
the stream info. Files are opened without mutagen's "easy" wrappers (WAVE and
AIFF have none), so every field is looked up across the ID3, MP4 and Vorbis
key spellings.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional

from .errors import MetadataExtractionFailed
from .formats import format_from_suffix
from .models import TrackMetadata, UNKNOWN_ALBUM, UNKNOWN_ARTIST, UNKNOWN_GENRE


# ID3 frame, MP4 atom, Vorbis comment (both cases)
TITLE_KEYS = ["TIT2", "\xa9nam", "TITLE", "title"]
ARTIST_KEYS = ["TPE1", "\xa9ART", "ARTIST", "artist"]
ALBUM_KEYS = ["TALB", "\xa9alb", "ALBUM", "album"]
GENRE_KEYS = ["TCON", "\xa9gen", "GENRE", "genre"]
DATE_KEYS = ["TDRC", "TYER", "\xa9day", "DATE", "YEAR", "date", "year"]

# mutagen FileType class name -> format name used for quality ranking
_FORMAT_BY_FILETYPE = {
    "MP3": "MP3",
    "EasyMP3": "MP3",
    "FLAC": "FLAC",
    "WAVE": "WAV",
    "AIFF": "AIFF",
    "AAC": "AAC",
    "OggVorbis": "VORBIS",
    "OggOpus": "OPUS",
}


def _tag_value(audio: Any, keys: List[str]) -> str:
    """First non-empty value among `keys`, as a stripped string."""
    for key in keys:
        try:
            value = audio.get(key)
        except (KeyError, ValueError):
            # Vorbis comments reject some key spellings outright
            continue
        if not value:
            continue
        # ID3 frames keep their values in .text
        value = getattr(value, "text", value)
        if isinstance(value, list):
            if not value:
                continue
            value = value[0]
        text = str(value).strip()
        if text:
            return text
    return ""


def _year(raw: str) -> str:
    # "2020-05-01" -> "2020"
    raw = raw.strip()
    return raw[:4] if len(raw) >= 4 and raw[:4].isdigit() else raw


def _codec_name(audio: Any, path: Path) -> str:
    """Map a mutagen file to a format name used for quality ranking."""
    kind = type(audio).__name__
    if kind in _FORMAT_BY_FILETYPE:
        return _FORMAT_BY_FILETYPE[kind]
    # MP4 containers hold either AAC or ALAC
    codec = str(getattr(getattr(audio, "info", None), "codec", "") or "").lower()
    if codec == "alac":
        return "ALAC"
    if codec.startswith("mp4a"):
        return "AAC"
    return format_from_suffix(path)


class MetadataReader:
    """Reads `TrackMetadata` from an audio file."""

    def read(self, path: Path) -> TrackMetadata:
        from mutagen import File as MutagenFile

        try:
            audio: Optional[Any] = MutagenFile(str(path))
        except Exception as e:  # mutagen raises a variety of parse errors
            raise MetadataExtractionFailed(f"Cannot read tags from {path.name}: {e}", details={"path": str(path)}) from e
        if audio is None:
            raise MetadataExtractionFailed(f"Unrecognised audio file: {path.name}", details={"path": str(path)})

        info = audio.info
        bitrate = int(getattr(info, "bitrate", 0) or 0)
        return TrackMetadata(
            title=_tag_value(audio, TITLE_KEYS) or path.stem,
            artist=_tag_value(audio, ARTIST_KEYS) or UNKNOWN_ARTIST,
            album=_tag_value(audio, ALBUM_KEYS) or UNKNOWN_ALBUM,
            genre=_tag_value(audio, GENRE_KEYS) or UNKNOWN_GENRE,
            year=_year(_tag_value(audio, DATE_KEYS)),
            duration=float(getattr(info, "length", 0.0) or 0.0),
            format=_codec_name(audio, path),
            # mutagen reports bits per second
            bitrate=bitrate // 1000,
        )
