from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles.os

from ..errors import InvalidPathError, NotFoundError, ValidationError
from ..models import StoredFile
from .naming import ensure_inside, resolve_collision_safe_name, sanitize_folder, validate_stored_name

logger = logging.getLogger(__name__)


class FolderNamespace:
    """Disk-backed namespace: files in the root, one level of folders below it.

    Hidden entries (leading dot) belong to the server: the chunk scratch area
    and staging files live there and are never listed or resolvable by name.
    """

    def __init__(self, root: str | Path, scratch_dir_name: str = ".chunks"):
        self.root = Path(os.path.abspath(os.path.expanduser(str(root))))
        self.root.mkdir(parents=True, exist_ok=True)
        self.scratch_root = self.root / scratch_dir_name
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        self._publish_lock: Optional[asyncio.Lock] = None

    # Path resolution -------------------------------------------------------

    def folder_path(self, folder: Optional[str], *, create: bool = False) -> Path:
        token = sanitize_folder(folder)
        if not token:
            return self.root
        if token.startswith("."):
            raise InvalidPathError()
        path = ensure_inside(self.root, Path(token))
        if create:
            path.mkdir(parents=True, exist_ok=True)
        return path

    def file_path(self, name: str, folder: Optional[str] = None) -> Path:
        directory = self.folder_path(folder)
        safe_name = validate_stored_name(name)
        return ensure_inside(directory, Path(safe_name))

    def folder_token(self, folder: Optional[str]) -> str:
        path = self.folder_path(folder)
        return "" if path == self.root else path.name

    # Folders ---------------------------------------------------------------

    def list_folders(self) -> List[str]:
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def create_folder(self, name: Optional[str]) -> str:
        token = sanitize_folder(name)
        if not token or token.startswith("."):
            raise ValidationError("Invalid folder name")
        path = self.folder_path(token, create=True)
        logger.info("Folder ready: %s", path.name)
        return path.name

    # Files -----------------------------------------------------------------

    def list_files(self, folder: Optional[str] = None) -> List[StoredFile]:
        directory = self.folder_path(folder)
        token = "" if directory == self.root else directory.name
        if not directory.is_dir():
            return []
        files: List[StoredFile] = []
        for entry in directory.iterdir():
            if entry.name.startswith(".") or not entry.is_file():
                continue
            try:
                stat = entry.stat()
            except FileNotFoundError:
                continue
            files.append(StoredFile(name=entry.name, size=stat.st_size, modified_at=stat.st_mtime, folder=token))
        files.sort(key=lambda item: item.modified_at, reverse=True)
        return files

    def stat_file(self, name: str, folder: Optional[str] = None) -> StoredFile:
        path = self.file_path(name, folder)
        if not path.is_file():
            raise NotFoundError()
        stat = path.stat()
        return StoredFile(name=path.name, size=stat.st_size, modified_at=stat.st_mtime, folder=self.folder_token(folder))

    def delete_file(self, name: str, folder: Optional[str] = None) -> None:
        path = self.file_path(name, folder)
        if not path.is_file():
            raise NotFoundError()
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise NotFoundError() from exc
        logger.info("Deleted %s", path.relative_to(self.root))

    def storage_totals(self) -> Dict[str, int]:
        usage = shutil.disk_usage(self.root)
        used = 0
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [name for name in dirnames if not name.startswith(".")]
            for filename in filenames:
                if filename.startswith("."):
                    continue
                try:
                    used += os.path.getsize(os.path.join(dirpath, filename))
                except OSError:
                    continue
        return {"totalBytes": usage.total, "freeBytes": usage.free, "usedBytesUploads": used}

    # Publishing ------------------------------------------------------------

    def staging_path(self, directory: Path, tag: str) -> Path:
        return directory / f".partial-{tag}-{uuid.uuid4().hex}"

    async def publish(self, staging: Path, directory: Path, desired_name: str) -> Path:
        """Move a fully written staging file to a collision-safe final name.

        Name resolution and the rename happen under one lock so two
        publishers can never claim the same name.
        """
        if self._publish_lock is None:
            self._publish_lock = asyncio.Lock()
        async with self._publish_lock:
            final_name = resolve_collision_safe_name(directory, desired_name)
            target = ensure_inside(directory, Path(final_name))
            await aiofiles.os.replace(staging, target)
        return target
