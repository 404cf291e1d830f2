"""
Diagnosis Errors
Exception taxonomy shared by the local model path and the remote providers.
"""
from typing import List, Optional


class DiagnosisError(Exception):
    """Base class for every failure raised inside the diagnosis pipeline."""


class ArtifactNotFound(DiagnosisError):
    """Manifest, shard or label file missing from the model directory."""


class ArtifactCorrupt(DiagnosisError):
    """Artifact present but unreadable or internally inconsistent."""


class ImageDecodeError(DiagnosisError):
    """Uploaded bytes could not be decoded as a raster image."""


class InferenceError(DiagnosisError):
    """Forward pass failed or produced an output the labels cannot explain."""


class RemoteServiceError(DiagnosisError):
    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    MALFORMED_RESPONSE = "malformed_response"
    UNAVAILABLE = "unavailable"
    NOT_CONFIGURED = "not_configured"

    def __init__(self, kind: str, provider: str, detail: str = ""):
        self.kind = kind
        self.provider = provider
        self.detail = detail
        msg = f"{provider} {kind}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class AnalysisFailed(DiagnosisError):
    """Every tier failed. The message is safe to show to a farmer."""

    MESSAGE = "Failed to analyze image. Please try again."

    def __init__(self, causes: Optional[List[BaseException]] = None, attempts: Optional[list] = None):
        self.causes = list(causes or [])
        self.attempts = list(attempts or [])
        super().__init__(self.MESSAGE)


def error_kind(exc: BaseException) -> str:
    """Short label for logs and attempt traces."""
    if isinstance(exc, RemoteServiceError):
        return exc.kind
    return type(exc).__name__
