"""Upload pipeline and remote backends."""

from .base import AbstractUploadBackend
from .http_backend import HttpUploadBackend
from .pipeline import UploadPipeline
from .publisher import UploadProgressPublisher, PROGRESS_TOPIC

__all__ = [
    'AbstractUploadBackend',
    'HttpUploadBackend',
    'UploadPipeline',
    'UploadProgressPublisher',
    'PROGRESS_TOPIC',
]
