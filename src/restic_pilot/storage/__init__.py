"""Storage abstractions for restic-pilot."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import RunRecord

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "RunRecord",
]
