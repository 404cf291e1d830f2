import json

import httpx
import pytest

from cropdoctor.agents.orchestrator import FallbackOrchestrator, build_default_orchestrator
from cropdoctor.agents.tiers import (
    FreeText,
    LocalTier,
    RemoteFallbackTier,
    RemoteVisionTier,
    Structured,
)
from cropdoctor.config import Settings
from cropdoctor.services.artifact import ModelStore
from cropdoctor.services.errors import (
    AnalysisFailed,
    ArtifactNotFound,
    ImageDecodeError,
    RemoteServiceError,
)
from cropdoctor.services.records import DiagnosisRecord, DiagnosisRequest
from cropdoctor.services.remote import GroqClient, OllamaClient

from conftest import image_bytes


def _request(**kwargs):
    kwargs.setdefault("image_bytes", image_bytes())
    return DiagnosisRequest(**kwargs)


class FakeRefiner:
    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error
        self.calls = []

    def generate_disease_analysis(self, record, language="en"):
        self.calls.append((record, language))
        if self.error:
            raise self.error
        return self.text


def test_first_success_wins(stub_tier):
    record = DiagnosisRecord(crop="Tomato", analysis="ok", provider_used="local")
    local = stub_tier("local", result=Structured(record))
    vision = stub_tier("remote_vision", result=FreeText("unused", "remote_vision"))
    result = FallbackOrchestrator([local, vision]).run(_request())
    assert result.record is record
    assert vision.calls == 0
    assert [a.tier for a in result.attempts] == ["local"]


def test_local_artifact_missing_falls_to_vision_only(stub_tier):
    local = stub_tier("local", error=ArtifactNotFound("no model.json"))
    vision = stub_tier("remote_vision", result=FreeText("Severe leaf blight", "remote_vision", "vision-model"))
    fallback = stub_tier("remote_fallback", result=FreeText("unused", "remote_fallback"))

    result = FallbackOrchestrator([local, vision, fallback]).run(_request(crop_hint="Potato"))
    record = result.record

    assert (local.calls, vision.calls, fallback.calls) == (1, 1, 0)
    assert record.provider_used == "remote_vision"
    assert record.severity == "severe"
    assert record.crop == "Potato"
    assert record.analysis == "Severe leaf blight"
    assert record.disease is None and record.confidence is None
    assert [(a.tier, a.ok, a.error_kind) for a in result.attempts] == [
        ("local", False, "ArtifactNotFound"),
        ("remote_vision", True, None),
    ]


def test_vision_failure_falls_to_text_fallback(stub_tier):
    local = stub_tier("local", error=ImageDecodeError("bad bytes"))
    vision = stub_tier("remote_vision", error=RemoteServiceError(RemoteServiceError.TIMEOUT, "groq"))
    fallback = stub_tier("remote_fallback", result=FreeText("Mild spotting", "remote_fallback", "llama3"))

    record = FallbackOrchestrator([local, vision, fallback]).diagnose(_request())
    assert record.provider_used == "remote_fallback"
    assert record.severity == "mild"
    assert record.crop == "Unknown"
    assert record.model == "llama3"


def test_all_tiers_failing_raises_one_generic_error(stub_tier):
    tiers = [
        stub_tier("local", error=ArtifactNotFound("secret path /opt/models")),
        stub_tier("remote_vision", error=RemoteServiceError(RemoteServiceError.AUTH, "groq", "bad key")),
        stub_tier("remote_fallback", error=RuntimeError("connection reset")),
    ]
    with pytest.raises(AnalysisFailed) as info:
        FallbackOrchestrator(tiers).diagnose(_request())
    err = info.value
    assert str(err) == AnalysisFailed.MESSAGE
    assert "secret" not in str(err)
    assert len(err.causes) == 3
    assert [a.error_kind for a in err.attempts] == ["ArtifactNotFound", "auth", "RuntimeError"]
    assert all(t.calls == 1 for t in tiers)


def test_orchestrator_needs_tiers():
    with pytest.raises(ValueError):
        FallbackOrchestrator([])


def test_local_tier_end_to_end(model_dir):
    tier = LocalTier(ModelStore(model_dir))
    raw = tier.attempt(_request())
    assert isinstance(raw, Structured)
    record = raw.record
    assert record.provider_used == "local"
    assert record.crop == "Tomato"
    assert record.disease == "Late blight"
    assert record.severity == "moderate"
    assert 60 < record.confidence < 70
    assert len(record.top_predictions) == 3


def test_local_tier_refine_success(model_dir):
    refiner = FakeRefiner(text="Refined advice in Hindi")
    raw = LocalTier(ModelStore(model_dir), refiner=refiner).attempt(_request(language="hi"))
    assert raw.record.analysis == "Refined advice in Hindi"
    assert raw.record.provider_used == "local+refine"
    assert raw.record.model == "PlantVillage + Groq"
    assert refiner.calls[0][1] == "hi"
    assert refiner.calls[0][0].disease == "Late blight"


def test_local_tier_refine_failure_keeps_template(model_dir):
    refiner = FakeRefiner(error=RemoteServiceError(RemoteServiceError.RATE_LIMIT, "groq"))
    raw = LocalTier(ModelStore(model_dir), refiner=refiner).attempt(_request())
    assert raw.record.provider_used == "local"
    assert "**Diagnosis:** Late blight detected on Tomato" in raw.record.analysis


def test_local_tier_bad_image_raises(model_dir):
    with pytest.raises(ImageDecodeError):
        LocalTier(ModelStore(model_dir)).attempt(_request(image_bytes=b"junk"))


def test_default_cascade_against_mock_providers(tmp_path):
    hits = []

    def handler(request):
        hits.append(request.url.host)
        if request.url.host == "api.groq.com":
            return httpx.Response(429, json={"error": {"message": "slow down"}})
        body = json.loads(request.content)
        assert "images" not in body
        return httpx.Response(200, json={"response": "Moderate early blight on the leaves."})

    settings = Settings(groq_api_key="k", ollama_base_url="http://ollama:11434", refine_enabled=True)
    orchestrator = build_default_orchestrator(
        settings, store=ModelStore(str(tmp_path / "missing")), transport=httpx.MockTransport(handler),
    )
    assert orchestrator.tier_names == ["local", "remote_vision", "remote_fallback"]

    record = orchestrator.diagnose(_request())
    assert record.provider_used == "remote_fallback"
    assert record.severity == "moderate"
    assert hits == ["api.groq.com", "ollama"]


def test_remote_tiers_build_prompt_from_request():
    seen = {}

    def handler(request):
        seen.setdefault("bodies", []).append(json.loads(request.content))
        if request.url.host == "api.groq.com":
            return httpx.Response(200, json={"choices": [{"message": {"content": "Healthy plant"}}]})
        return httpx.Response(200, json={"response": "ok"})

    transport = httpx.MockTransport(handler)
    request = _request(crop_hint="Rice", additional_info="yellow tips", mime_type="image/png")
    vision = RemoteVisionTier(GroqClient(api_key="k", transport=transport)).attempt(request)
    fallback = RemoteFallbackTier(OllamaClient(transport=transport)).attempt(request)

    assert vision == FreeText("Healthy plant", "remote_vision", "llama-3.2-90b-vision-preview")
    assert fallback.provider_used == "remote_fallback"
    groq_body, ollama_body = seen["bodies"]
    assert "Rice" in groq_body["messages"][0]["content"][0]["text"]
    assert groq_body["messages"][0]["content"][1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert "yellow tips" in ollama_body["prompt"]
