# coding=utf-8
from __future__ import annotations


class AsrError(RuntimeError):
    """Base class for decoder-side failures surfaced to callers."""

    def describe(self) -> str:
        return str(self) or self.__class__.__name__


class NotInitializedError(AsrError):
    def __init__(self, message: str = "ASR models are not initialized") -> None:
        super().__init__(message)


class InvalidAudioDataError(AsrError, ValueError):
    def __init__(self, message: str = "audio data is empty or too short") -> None:
        super().__init__(message)


class ProcessingFailedError(AsrError):
    def __init__(self, reason: str) -> None:
        self.reason = str(reason or "")
        super().__init__(f"processing failed: {self.reason}")


class UnsupportedPlatformError(AsrError):
    def __init__(self, message: str = "platform is not supported") -> None:
        super().__init__(message)


class VadError(RuntimeError):
    pass


class VadNotInitializedError(VadError):
    def __init__(self, message: str = "VAD system not initialized") -> None:
        super().__init__(message)


class VadProcessingFailedError(VadError):
    def __init__(self, reason: str) -> None:
        self.reason = str(reason or "")
        super().__init__(f"model processing failed: {self.reason}")
