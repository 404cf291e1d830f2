"""
Fallback Orchestrator for crop disease diagnosis.

Runs an ordered list of tiers, each attempted exactly once, and returns the
first success as a DiagnosisRecord. Tier failures are logged with detail and
recorded in the attempt trace; only total exhaustion reaches the caller, as
a single AnalysisFailed.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import httpx

from ..config import Settings, get_settings
from ..services.artifact import ModelStore, default_store
from ..services.errors import AnalysisFailed, error_kind
from ..services.records import DiagnosisRecord, DiagnosisRequest
from ..services.remote import GroqClient, OllamaClient
from .tiers import LocalTier, RemoteFallbackTier, RemoteVisionTier, Tier, normalize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierAttempt:
    tier: str
    ok: bool
    elapsed_ms: float
    error_kind: Optional[str] = None


@dataclass
class CascadeResult:
    record: DiagnosisRecord
    attempts: List[TierAttempt] = field(default_factory=list)


class FallbackOrchestrator:
    def __init__(self, tiers: Sequence[Tier]):
        if not tiers:
            raise ValueError("at least one tier is required")
        self.tiers = list(tiers)

    @property
    def tier_names(self) -> List[str]:
        return [t.name for t in self.tiers]

    def run(self, request: DiagnosisRequest) -> CascadeResult:
        attempts: List[TierAttempt] = []
        causes: List[BaseException] = []
        for tier in self.tiers:
            started = time.time()
            try:
                raw = tier.attempt(request)
            except Exception as e:
                elapsed = (time.time() - started) * 1000
                kind = error_kind(e)
                attempts.append(TierAttempt(tier.name, False, round(elapsed, 1), kind))
                causes.append(e)
                logger.warning("Tier %s failed after %.0fms (%s): %s", tier.name, elapsed, kind, e)
                continue
            elapsed = (time.time() - started) * 1000
            attempts.append(TierAttempt(tier.name, True, round(elapsed, 1)))
            record = normalize(raw, request, elapsed)
            logger.info("Diagnosis answered by %s (provider %s, severity %s)",
                        tier.name, record.provider_used, record.severity)
            return CascadeResult(record=record, attempts=attempts)

        logger.error("All diagnosis tiers failed: %s",
                     ", ".join(f"{a.tier}={a.error_kind}" for a in attempts))
        raise AnalysisFailed(causes, attempts)

    def diagnose(self, request: DiagnosisRequest) -> DiagnosisRecord:
        return self.run(request).record


def build_default_orchestrator(settings: Optional[Settings] = None,
                               store: Optional[ModelStore] = None,
                               transport: Optional[httpx.BaseTransport] = None) -> FallbackOrchestrator:
    """Local model -> Groq vision -> Ollama text, wired from configuration."""
    settings = settings or get_settings()
    groq = GroqClient(
        api_key=settings.groq_api_key,
        base_url=settings.groq_api_url,
        model=settings.groq_model,
        vision_model=settings.groq_vision_model,
        timeout=settings.remote_timeout_seconds,
        transport=transport,
    )
    ollama = OllamaClient(
        base_url=settings.ollama_base_url,
        model=settings.ollama_model,
        timeout=settings.remote_timeout_seconds,
        transport=transport,
    )
    refiner = groq if settings.refine_enabled and groq.is_configured() else None
    return FallbackOrchestrator([
        LocalTier(store or default_store(), refiner=refiner),
        RemoteVisionTier(groq),
        RemoteFallbackTier(ollama),
    ])
