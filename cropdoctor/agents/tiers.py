"""
Diagnosis tiers for the fallback cascade.

Each tier exposes `name` and `attempt(request) -> RawTierResult`. The local
tier returns a structured record; remote tiers return free text. Results are
normalized into a DiagnosisRecord by `normalize` before leaving the
orchestrator.
"""
from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from ..services.artifact import ModelStore
from ..services.classifier import classify
from ..services.errors import error_kind
from ..services.preprocess import preprocess
from ..services.records import (
    PROVIDER_LOCAL_REFINE,
    PROVIDER_REMOTE_FALLBACK,
    PROVIDER_REMOTE_VISION,
    DiagnosisRecord,
    DiagnosisRequest,
)
from ..services.remote import GroqClient, OllamaClient, build_analysis_prompt, infer_severity
from ..services.synthesizer import synthesize

logger = logging.getLogger(__name__)

REFINED_MODEL_NAME = "PlantVillage + Groq"


@dataclass(frozen=True)
class Structured:
    record: DiagnosisRecord


@dataclass(frozen=True)
class FreeText:
    text: str
    provider_used: str
    model: Optional[str] = None


RawTierResult = Union[Structured, FreeText]


class Tier(Protocol):
    name: str

    def attempt(self, request: DiagnosisRequest) -> RawTierResult:
        ...


class Refiner(Protocol):
    def generate_disease_analysis(self, record: DiagnosisRecord, language: str = "en") -> str:
        ...


def normalize(raw: RawTierResult, request: DiagnosisRequest, elapsed_ms: float) -> DiagnosisRecord:
    if isinstance(raw, Structured):
        return raw.record
    return DiagnosisRecord(
        crop=request.crop_hint or "Unknown",
        severity=infer_severity(raw.text),
        analysis=raw.text,
        inference_ms=round(elapsed_ms, 1),
        provider_used=raw.provider_used,
        model=raw.model,
    )


class LocalTier:
    """On-box classifier: preprocess -> classify -> synthesize, then optional refine."""

    name = "local"

    def __init__(self, store: ModelStore, refiner: Optional[Refiner] = None):
        self.store = store
        self.refiner = refiner

    def attempt(self, request: DiagnosisRequest) -> RawTierResult:
        model = self.store.load()
        start = time.time()
        tensor = preprocess(request.image_bytes, model.input_size)
        try:
            result = classify(model, tensor)
        finally:
            del tensor
        elapsed_ms = (time.time() - start) * 1000
        record = synthesize(result, elapsed_ms)
        logger.info("Local detection: %s on %s (%s%%) in %.0fms",
                    record.disease, record.crop, record.confidence, elapsed_ms)
        return Structured(self._refine(record, request.language))

    def _refine(self, record: DiagnosisRecord, language: str) -> DiagnosisRecord:
        if self.refiner is None:
            logger.info("Refine step skipped: no text provider configured")
            return record
        try:
            text = self.refiner.generate_disease_analysis(record, language)
        except Exception as e:
            # Template guidance is already a valid answer.
            logger.info("Refine step failed (%s), keeping template guidance: %s", error_kind(e), e)
            return record
        logger.info("Refine step succeeded")
        return record.model_copy(update={
            "analysis": text,
            "provider_used": PROVIDER_LOCAL_REFINE,
            "model": REFINED_MODEL_NAME,
        })


class RemoteVisionTier:
    """Send the image and the diagnostic prompt straight to a vision model."""

    name = "remote_vision"

    def __init__(self, client: GroqClient):
        self.client = client

    def attempt(self, request: DiagnosisRequest) -> RawTierResult:
        prompt = build_analysis_prompt(request.crop_hint, request.additional_info)
        image_b64 = base64.b64encode(request.image_bytes).decode("ascii")
        text = self.client.analyze_image(image_b64, prompt, request.mime_type)
        return FreeText(text=text, provider_used=PROVIDER_REMOTE_VISION, model=self.client.vision_model)


class RemoteFallbackTier:
    """Prompt-only text model, used when no vision path is left."""

    name = "remote_fallback"

    def __init__(self, client: OllamaClient):
        self.client = client

    def attempt(self, request: DiagnosisRequest) -> RawTierResult:
        prompt = build_analysis_prompt(request.crop_hint, request.additional_info)
        text = self.client.generate(prompt)
        return FreeText(text=text, provider_used=PROVIDER_REMOTE_FALLBACK, model=self.client.model)
