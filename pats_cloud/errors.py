"""Exceptions raised by the upload core, each mapped to an HTTP status."""

from __future__ import annotations


class UploadError(Exception):
    status_code = 500

    def __init__(self, message: str = "Internal error") -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(UploadError):
    status_code = 400


class InvalidPathError(ValidationError):
    def __init__(self, message: str = "Invalid path") -> None:
        super().__init__(message)


class PayloadTooLargeError(ValidationError):
    status_code = 413


class NotFoundError(UploadError):
    status_code = 404

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message)


class UploadNotFoundError(NotFoundError):
    def __init__(self, upload_id: str) -> None:
        super().__init__("Upload not found")
        self.upload_id = upload_id


class MissingChunkError(UploadError):
    status_code = 400

    def __init__(self, index: int) -> None:
        super().__init__(f"Missing chunk {index}")
        self.index = index


class RangeNotSatisfiableError(UploadError):
    status_code = 416

    def __init__(self, total: int) -> None:
        super().__init__("Range not satisfiable")
        self.total = total
