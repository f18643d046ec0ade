"""
Engine catalog.

The one startup source for the capability table: either the built-in
catalog below or a JSON file with the same shape (ENGINES_FILE).
"""

import json
from pathlib import Path
from typing import Any

from .capabilities import CapabilityTable, Engine
from .errors import DispatchError

_VIDEO_OUT = ["mp4", "webm", "avi", "mkv", "mov", "mp3", "wav", "flac", "ogg", "gif"]
_AUDIO_OUT = ["mp3", "wav", "flac", "ogg", "m4a", "aac"]


def _video_targets(source: str) -> list[str]:
    return [fmt for fmt in _VIDEO_OUT if fmt != source]


def _audio_targets(source: str) -> list[str]:
    return [fmt for fmt in _AUDIO_OUT if fmt != source]


DEFAULT_ENGINES: list[dict[str, Any]] = [
    {
        "id": "ffmpeg",
        "name": "FFmpeg",
        "description": "Audio and video conversion using FFmpeg",
        "category": "media",
        "conversions": {
            **{src: _video_targets(src) for src in ("mp4", "webm", "avi", "mkv", "mov")},
            **{src: _audio_targets(src) for src in ("mp3", "wav", "flac", "ogg", "m4a")},
            "gif": ["mp4", "webm"],
        },
    },
    {
        "id": "imagemagick",
        "name": "ImageMagick",
        "description": "Image format conversion using ImageMagick",
        "category": "image",
        "conversions": {
            "png": ["jpg", "jpeg", "gif", "bmp", "webp", "tiff", "ico", "pdf"],
            "jpg": ["png", "gif", "bmp", "webp", "tiff", "ico", "pdf"],
            "jpeg": ["png", "gif", "bmp", "webp", "tiff", "ico", "pdf"],
            "gif": ["png", "jpg", "jpeg", "bmp", "webp", "tiff"],
            "bmp": ["png", "jpg", "jpeg", "gif", "webp", "tiff"],
            "webp": ["png", "jpg", "jpeg", "gif", "bmp", "tiff"],
            "tiff": ["png", "jpg", "jpeg", "gif", "bmp", "webp", "pdf"],
            "svg": ["png", "jpg", "jpeg", "pdf"],
        },
    },
    {
        "id": "libreoffice",
        "name": "LibreOffice",
        "description": "Office document conversion using LibreOffice",
        "category": "document",
        "conversions": {
            "doc": ["pdf", "docx", "odt", "txt", "html"],
            "docx": ["pdf", "doc", "odt", "txt", "html"],
            "odt": ["pdf", "doc", "docx", "txt", "html"],
            "xls": ["pdf", "xlsx", "ods", "csv"],
            "xlsx": ["pdf", "xls", "ods", "csv"],
            "ods": ["pdf", "xls", "xlsx", "csv"],
            "ppt": ["pdf", "pptx", "odp"],
            "pptx": ["pdf", "ppt", "odp"],
            "odp": ["pdf", "ppt", "pptx"],
            "txt": ["pdf", "html"],
        },
    },
    {
        "id": "pandoc",
        "name": "Pandoc",
        "description": "Universal document converter",
        "category": "document",
        "conversions": {
            "md": ["html", "pdf", "docx", "latex", "epub", "rst"],
            "html": ["md", "pdf", "docx", "latex", "epub"],
            "latex": ["pdf", "html", "md", "docx"],
            "rst": ["html", "pdf", "md", "docx"],
            "epub": ["pdf", "html", "md"],
        },
    },
    {
        "id": "calibre",
        "name": "Calibre",
        "description": "E-book format conversion",
        "category": "ebook",
        "conversions": {
            "epub": ["mobi", "azw3", "pdf", "txt", "html"],
            "mobi": ["epub", "azw3", "pdf", "txt", "html"],
            "azw3": ["epub", "mobi", "pdf", "txt", "html"],
            "pdf": ["epub", "mobi", "txt", "html"],
        },
    },
    {
        "id": "mineru",
        "name": "MinerU",
        "description": "AI-powered PDF extraction and parsing",
        "category": "ai",
        "conversions": {"pdf": ["md", "json", "html"]},
    },
    {
        "id": "pdfmathtranslate",
        "name": "PDFMathTranslate",
        "description": "PDF translation preserving mathematical formulas",
        "category": "ai",
        "conversions": {"pdf": ["pdf"]},
        "parameters": {
            "lang_in": {"type": "string", "default": "en"},
            "lang_out": {"type": "string", "default": "zh"},
        },
    },
    {
        "id": "ocrmypdf",
        "name": "OCRmyPDF",
        "description": "Add OCR text layer to PDF",
        "category": "ai",
        "conversions": {"pdf": ["pdf"]},
        "parameters": {"language": {"type": "string", "default": "eng"}},
    },
    {
        "id": "dasel",
        "name": "Dasel",
        "description": "Data format conversion (JSON/YAML/TOML)",
        "category": "data",
        "conversions": {
            "json": ["yaml", "toml", "xml", "csv"],
            "yaml": ["json", "toml", "xml"],
            "toml": ["json", "yaml", "xml"],
            "xml": ["json", "yaml"],
        },
    },
]


class CatalogError(DispatchError):
    """Raised when an engine catalog file cannot be used."""
    pass


def engine_from_dict(entry: dict[str, Any]) -> Engine:
    try:
        return Engine.build(
            str(entry["id"]),
            str(entry.get("name") or entry["id"]),
            str(entry.get("description", "")),
            str(entry.get("category", "")),
            entry.get("conversions") or {},
            enabled=bool(entry.get("enabled", True)),
            parameters=entry.get("parameters"),
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise CatalogError(f"invalid engine entry {entry!r}: {e}") from e


def load_engines(path: str | Path | None = None) -> list[Engine]:
    """Load engines from a JSON catalog file, or the built-in catalog."""
    if path is None:
        return [engine_from_dict(entry) for entry in DEFAULT_ENGINES]
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CatalogError(f"cannot read engine catalog {p}: {e}") from e
    if not isinstance(data, list):
        raise CatalogError(f"engine catalog {p} must be a JSON list")
    return [engine_from_dict(entry) for entry in data]


def build_capability_table(path: str | Path | None = None) -> CapabilityTable:
    return CapabilityTable(load_engines(path))
