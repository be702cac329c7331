"""Personal cloud-upload server with chunked, resumable transfers."""

from .config import CloudConfig  # noqa: F401
from .runtime import CloudRuntime  # noqa: F401
