"""Byte-range parsing and streaming for stored files."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

import aiofiles

from ..errors import NotFoundError, RangeNotSatisfiableError
from ..storage.folder_namespace import FolderNamespace
from .base import BaseService

DEFAULT_CONTENT_TYPE = "application/octet-stream"

_CONTENT_TYPES: Dict[str, str] = {
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",
    ".json": "application/json",
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".zip": "application/zip",
}


def content_type_for(name: str) -> str:
    suffix = Path(name).suffix.lower()
    if suffix in _CONTENT_TYPES:
        return _CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(name)
    return guessed or DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int
    total: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def is_full(self) -> bool:
        return self.start == 0 and self.end == self.total - 1

    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total}"


def parse_range(header: Optional[str], total: int) -> Optional[ByteRange]:
    """Interpret a ``Range`` header against a file of ``total`` bytes.

    Returns ``None`` when the header is absent or not a single
    ``bytes=<start>-<end>`` range (the caller serves the whole file).
    Raises ``RangeNotSatisfiableError`` when the range cannot be served.
    """
    if not header:
        return None
    unit, _, ranges = header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not ranges or "," in ranges:
        return None
    start_text, sep, end_text = ranges.strip().partition("-")
    start_text, end_text = start_text.strip(), end_text.strip()
    if not sep or (start_text and not start_text.isdigit()) or (end_text and not end_text.isdigit()):
        return None
    if not start_text and not end_text:
        return None

    if not start_text:
        suffix = int(end_text)
        if suffix == 0 or total == 0:
            raise RangeNotSatisfiableError(total)
        start = max(0, total - suffix)
        return ByteRange(start=start, end=total - 1, total=total)

    start = int(start_text)
    end = int(end_text) if end_text else total - 1
    if start >= total or start > end:
        raise RangeNotSatisfiableError(total)
    return ByteRange(start=start, end=min(end, total - 1), total=total)


async def iter_file_range(path: Path, start: int, length: int, buffer_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
    remaining = length
    async with aiofiles.open(path, "rb") as handle:
        await handle.seek(start)
        while remaining > 0:
            block = await handle.read(min(buffer_size, remaining))
            if not block:
                break
            remaining -= len(block)
            yield block


@dataclass
class FileSlice:
    path: Path
    total: int
    content_type: str
    byte_range: Optional[ByteRange] = None

    @property
    def partial(self) -> bool:
        return self.byte_range is not None

    @property
    def status_code(self) -> int:
        return 206 if self.partial else 200

    @property
    def start(self) -> int:
        return self.byte_range.start if self.byte_range else 0

    @property
    def length(self) -> int:
        return self.byte_range.length if self.byte_range else self.total

    def headers(self) -> Dict[str, str]:
        headers = {"Accept-Ranges": "bytes", "Content-Length": str(self.length)}
        if self.byte_range:
            headers["Content-Range"] = self.byte_range.content_range()
        return headers

    def stream(self, buffer_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        return iter_file_range(self.path, self.start, self.length, buffer_size)


@dataclass
class RangeReader(BaseService):
    namespace: FolderNamespace

    def open(self, name: str, folder: Optional[str], range_header: Optional[str] = None) -> FileSlice:
        path = self.namespace.file_path(name, folder)
        if not path.is_file():
            raise NotFoundError()
        total = path.stat().st_size
        byte_range = parse_range(range_header, total)
        if byte_range is not None and byte_range.is_full:
            byte_range = None
        file_slice = FileSlice(path=path, total=total, content_type=content_type_for(path.name), byte_range=byte_range)
        self.emit_metric("download.bytes", file_slice.length, partial=str(file_slice.partial).lower())
        return file_slice
