"""Name sanitizing, collision-safe naming and root containment checks."""

from __future__ import annotations

import os
import re
from pathlib import Path

from ..errors import InvalidPathError

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_SAFE_CHAR = re.compile(r"[A-Za-z0-9._-]")
_SEPARATORS = re.compile(r"[\\/]+")


def sanitize_name(raw: str | None) -> str:
    """Map a client supplied file name onto ``[A-Za-z0-9._-]``.

    The base name and the extension are sanitized independently and the
    extension is lower-cased, so ``My Photo.JPG`` becomes ``My_Photo.jpg``.
    Leading dots are dropped since hidden entries are reserved for scratch
    data. Returns ``""`` for input with no usable character; callers reject it.
    """
    text = (raw or "").strip()
    if not text or not _SAFE_CHAR.search(text):
        return ""
    base, ext = os.path.splitext(text)
    safe = _UNSAFE_CHARS.sub("_", base) + _UNSAFE_CHARS.sub("_", ext).lower()
    return safe.lstrip(".")


def sanitize_folder(raw: str | None) -> str:
    """Map a folder token onto a single path component; ``""`` is the root."""
    text = (raw or "").strip()
    if not text:
        return ""
    text = _SEPARATORS.sub("_", text)
    return _UNSAFE_CHARS.sub("_", text)


def validate_stored_name(raw: str | None) -> str:
    """Check a name used to look up an existing file.

    Stored names may carry ``(n)`` collision suffixes, so nothing is rewritten
    here; anything that is not a plain, visible, single component is refused.
    """
    name = raw or ""
    if not name.strip() or name in {".", ".."}:
        raise InvalidPathError()
    if "\x00" in name or _SEPARATORS.search(name) or name.startswith("."):
        raise InvalidPathError()
    return name


def resolve_collision_safe_name(directory: Path, desired: str) -> str:
    """Return ``desired`` or the first free ``stem(n).ext`` variant in ``directory``."""
    if not (directory / desired).exists():
        return desired
    stem, ext = os.path.splitext(desired)
    counter = 1
    while True:
        candidate = f"{stem}({counter}){ext}"
        if not (directory / candidate).exists():
            return candidate
        counter += 1


def ensure_inside(root: Path, candidate: Path) -> Path:
    """Lexically verify ``candidate`` stays under ``root`` and return it normalized."""
    root_str = os.path.normpath(str(root))
    resolved = os.path.normpath(os.path.join(root_str, str(candidate)))
    try:
        common = os.path.commonpath([root_str, resolved])
    except ValueError as exc:
        raise InvalidPathError() from exc
    if common != root_str:
        raise InvalidPathError()
    if resolved == root_str:
        raise InvalidPathError()
    return Path(resolved)
