"""
Remote Inference Providers
Groq (OpenAI-compatible chat completions, vision + text models) and a
self-hosted Ollama text model. Used as the remote diagnosis tiers and for
refining local-model guidance into richer advice.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import RemoteServiceError
from .records import DiagnosisRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

LANGUAGE_NAMES = {
    "en": "English",
    "hi": "Hindi",
    "ta": "Tamil",
    "te": "Telugu",
    "kn": "Kannada",
    "ml": "Malayalam",
    "bn": "Bengali",
    "mr": "Marathi",
}

ADVISOR_SYSTEM_PROMPT = (
    "You are an expert agricultural advisor specializing in crop diseases for Indian farmers. "
    "Provide practical, actionable advice."
)

# Checked in order; first group with a hit wins.
SEVERITY_KEYWORDS = (
    ("healthy", ("healthy", "no disease", "no visible")),
    ("severe", ("severe", "critical", "serious")),
    ("moderate", ("moderate", "medium")),
    ("mild", ("mild", "minor", "early stage")),
)


def language_name(code: Optional[str]) -> str:
    return LANGUAGE_NAMES.get(code or "en", "English")


def infer_severity(text: str) -> str:
    """Coarse severity from free-text provider output."""
    lowered = (text or "").lower()
    for severity, words in SEVERITY_KEYWORDS:
        if any(w in lowered for w in words):
            return severity
    return "unknown"


def build_analysis_prompt(crop_hint: Optional[str] = None, additional_info: Optional[str] = None) -> str:
    prompt = (
        "You are an expert agricultural disease detection AI. Analyze this crop image carefully "
        "for any diseases, pests, nutrient deficiencies, or health issues."
    )
    if crop_hint:
        prompt += f"\n\nThe farmer has identified this as: {crop_hint}"
    if additional_info:
        prompt += f"\nAdditional context from farmer: {additional_info}"
    prompt += """

Please provide a structured analysis with:

**Diagnosis:** What disease/problem is visible (or confirm if healthy)

**Severity:** mild / moderate / severe / healthy

**Symptoms Observed:** What visual signs indicate this problem

**Likely Causes:** What typically causes this condition

**Treatment Recommendations:**
- Immediate actions to take
- Recommended products/remedies
- Application instructions

**Prevention Tips:** How to prevent this in future

**Expert Consultation:** When to seek professional help

Be specific, practical, and helpful. If the plant appears healthy, confirm that and provide general care tips."""
    return prompt


def build_refine_prompt(record: DiagnosisRecord, language: str = "en") -> str:
    lang_instruction = ""
    if language != "en":
        lang_instruction = f"\n\nIMPORTANT: Respond ENTIRELY in {language_name(language)} language."

    if record.is_healthy:
        return (
            f"The plant analysis shows: {record.crop} - HEALTHY ({record.confidence}% confidence).\n\n"
            "Provide a brief, helpful response for the farmer:\n"
            "1. Confirm the plant is healthy\n"
            "2. Give 3-4 quick care tips to maintain health\n"
            "3. Mention one thing to watch out for\n\n"
            f"Keep it concise and practical.{lang_instruction}"
        )

    others = ", ".join(f"{p.label}: {p.confidence}%" for p in record.top_predictions[1:3]) or "None"
    return (
        f"Disease detected on {record.crop}: {record.disease} ({record.confidence}% confidence)\n\n"
        f"Other possibilities: {others}\n\n"
        "Provide expert agricultural advice:\n"
        "1. **Diagnosis**: Confirm the disease and severity\n"
        "2. **Symptoms**: What to look for\n"
        "3. **Treatment**: Specific remedies (organic + chemical options)\n"
        "4. **Prevention**: How to avoid in future\n\n"
        f"Be practical and specific. Indian farmer context.{lang_instruction}"
    )


def _post_json(provider: str, url: str, payload: Dict[str, Any], headers: Dict[str, str],
               timeout: float, transport: Optional[httpx.BaseTransport]) -> Dict[str, Any]:
    """POST and decode JSON, mapping every transport failure to RemoteServiceError."""
    try:
        # Avoid inheriting proxy settings from the environment.
        with httpx.Client(timeout=timeout, trust_env=False, transport=transport) as client:
            response = client.post(url, json=payload, headers=headers)
            logger.debug("[%s] status %s body preview: %s", provider, response.status_code, response.text[:300])
            response.raise_for_status()
            return response.json()
    except httpx.TimeoutException as e:
        raise RemoteServiceError(RemoteServiceError.TIMEOUT, provider, str(e))
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        if status in (401, 403):
            kind = RemoteServiceError.AUTH
        elif status == 429:
            kind = RemoteServiceError.RATE_LIMIT
        else:
            kind = RemoteServiceError.UNAVAILABLE
        raise RemoteServiceError(kind, provider, f"HTTP {status}: {e.response.text[:200]}")
    except httpx.HTTPError as e:
        raise RemoteServiceError(RemoteServiceError.UNAVAILABLE, provider, str(e))
    except ValueError as e:
        raise RemoteServiceError(RemoteServiceError.MALFORMED_RESPONSE, provider, f"invalid JSON: {e}")


class GroqClient:
    provider = "groq"

    def __init__(self, api_key: str, base_url: str = "https://api.groq.com/openai/v1",
                 model: str = "llama-3.3-70b-versatile",
                 vision_model: str = "llama-3.2-90b-vision-preview",
                 timeout: float = DEFAULT_TIMEOUT,
                 transport: Optional[httpx.BaseTransport] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.vision_model = vision_model
        self.timeout = timeout
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _completion(self, payload: Dict[str, Any]) -> str:
        if not self.is_configured():
            raise RemoteServiceError(RemoteServiceError.NOT_CONFIGURED, self.provider, "GROQ_API_KEY not configured")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        data = _post_json(self.provider, f"{self.base_url}/chat/completions", payload, headers,
                          self.timeout, self.transport)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise RemoteServiceError(RemoteServiceError.MALFORMED_RESPONSE, self.provider, "no choices in response")
        if not isinstance(content, str) or not content.strip():
            raise RemoteServiceError(RemoteServiceError.MALFORMED_RESPONSE, self.provider, "empty completion")
        return content

    def analyze_image(self, image_base64: str, prompt: str, mime_type: str = "image/jpeg") -> str:
        payload = {
            "model": self.vision_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_base64}"}},
                    ],
                }
            ],
            "max_tokens": 1024,
            "temperature": 0.3,
        }
        return self._completion(payload)

    def chat(self, messages: List[Dict[str, Any]], model: Optional[str] = None, max_tokens: int = 1024,
             temperature: float = 0.7, top_p: float = 0.9) -> str:
        payload = {
            "model": model or self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "top_p": top_p,
        }
        return self._completion(payload)

    def generate_disease_analysis(self, record: DiagnosisRecord, language: str = "en") -> str:
        """Rewrite a local diagnosis as richer advice, in the farmer's language."""
        system = ADVISOR_SYSTEM_PROMPT
        if language != "en":
            system += f"\n\nIMPORTANT: Respond ENTIRELY in {language_name(language)} language."
        return self.chat(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": build_refine_prompt(record, language)},
            ],
            temperature=0.5,
            max_tokens=800,
        )


class OllamaClient:
    """Text-only generation against an Ollama server; no image content is sent."""

    provider = "ollama"

    def __init__(self, base_url: str = "http://localhost:11434", model: str = "llama3",
                 timeout: float = DEFAULT_TIMEOUT, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.base_url and self.model)

    def generate(self, prompt: str, temperature: float = 0.3) -> str:
        if not self.is_configured():
            raise RemoteServiceError(RemoteServiceError.NOT_CONFIGURED, self.provider, "OLLAMA_BASE_URL not configured")
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature},
        }
        data = _post_json(self.provider, f"{self.base_url}/api/generate", payload,
                          {"Content-Type": "application/json"}, self.timeout, self.transport)
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise RemoteServiceError(RemoteServiceError.MALFORMED_RESPONSE, self.provider, "empty response")
        return text
