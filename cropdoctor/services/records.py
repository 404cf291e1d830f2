"""
Pipeline input/output models.
"""
from typing import List, Optional

from pydantic import BaseModel, Field

SEVERITIES = ("healthy", "mild", "moderate", "severe", "unknown")

PROVIDER_LOCAL = "local"
PROVIDER_LOCAL_REFINE = "local+refine"
PROVIDER_REMOTE_VISION = "remote_vision"
PROVIDER_REMOTE_FALLBACK = "remote_fallback"


class RankedAlternative(BaseModel):
    label: str
    confidence: float


class DiagnosisRecord(BaseModel):
    crop: str = "Unknown"
    disease: Optional[str] = None
    is_healthy: Optional[bool] = None
    confidence: Optional[float] = Field(None, ge=0, le=100)
    severity: str = "unknown"
    analysis: str
    top_predictions: List[RankedAlternative] = Field(default_factory=list, max_length=5)
    inference_ms: float = 0.0
    provider_used: str
    model: Optional[str] = None


class DiagnosisRequest(BaseModel):
    image_bytes: bytes
    crop_hint: Optional[str] = None
    additional_info: Optional[str] = None
    language: str = "en"
    mime_type: str = "image/jpeg"
