# coding=utf-8

from .errors import (
    AsrError,
    InvalidAudioDataError,
    NotInitializedError,
    ProcessingFailedError,
    UnsupportedPlatformError,
    VadError,
    VadNotInitializedError,
    VadProcessingFailedError,
)

__all__ = [
    "AsrError",
    "InvalidAudioDataError",
    "NotInitializedError",
    "ProcessingFailedError",
    "UnsupportedPlatformError",
    "VadError",
    "VadNotInitializedError",
    "VadProcessingFailedError",
]
