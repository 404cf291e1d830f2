"""
Turns a ranked prediction into a DiagnosisRecord with farmer guidance.
"""
from typing import Tuple

from . import knowledge
from .classifier import PredictionResult
from .errors import InferenceError
from .records import PROVIDER_LOCAL, DiagnosisRecord, RankedAlternative

LABEL_DELIMITER = "___"
LOCAL_MODEL_NAME = "PlantVillage-MobileNet"
TOP_K = 5


def parse_label(label: str) -> Tuple[str, str, bool]:
    """Split a "<Crop>___<Condition>" class label into (crop, disease, is_healthy)."""
    crop_raw, sep, condition = label.partition(LABEL_DELIMITER)
    crop = crop_raw.replace("_", " ").strip() or "Unknown"
    if not sep:
        return crop, "Unknown", False
    is_healthy = condition.lower() == "healthy"
    disease = "Healthy" if is_healthy else condition.replace("_", " ")
    return crop, disease, is_healthy


def severity_for(is_healthy: bool, confidence: float) -> str:
    if is_healthy:
        return "healthy"
    if confidence > 80:
        return "severe"
    if confidence > 50:
        return "moderate"
    return "mild"


def to_percent(probability: float) -> float:
    return round(probability * 100, 1)


def synthesize(result: PredictionResult, inference_ms: float = 0.0) -> DiagnosisRecord:
    if not result:
        raise InferenceError("empty prediction result")
    top = result[0]
    crop, disease, is_healthy = parse_label(top.label)
    confidence = to_percent(top.probability)

    ranked = [(p.label, to_percent(p.probability)) for p in result[:TOP_K]]
    if is_healthy:
        analysis = knowledge.render_healthy(crop, confidence)
    else:
        analysis = knowledge.render_disease(crop, disease, confidence, ranked[1:4])

    return DiagnosisRecord(
        crop=crop,
        disease=disease,
        is_healthy=is_healthy,
        confidence=confidence,
        severity=severity_for(is_healthy, confidence),
        analysis=analysis,
        top_predictions=[RankedAlternative(label=label, confidence=conf) for label, conf in ranked],
        inference_ms=round(inference_ms, 1),
        provider_used=PROVIDER_LOCAL,
        model=LOCAL_MODEL_NAME,
    )
