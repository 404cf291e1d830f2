"""
Translation of diagnosis text into the farmer's language.
LibreTranslate is tried first, MyMemory second; if both fail the original
English text is returned so a diagnosis is never blocked on translation.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 24 * 60 * 60
MYMEMORY_URL = "https://api.mymemory.translated.net/get"

LANGUAGE_MAP = {
    "en": "en",
    "hi": "hi",
    "ta": "ta",
    "te": "te",
    "kn": "kn",
    "ml": "ml",
    "bn": "bn",
    "mr": "mr",
}


@dataclass(frozen=True)
class TranslationResult:
    text: str
    success: bool
    from_cache: bool = False


class Translator:
    def __init__(self, libretranslate_url: str = "http://localhost:5555",
                 mymemory_url: str = MYMEMORY_URL,
                 transport: Optional[httpx.BaseTransport] = None):
        self.libretranslate_url = libretranslate_url.rstrip("/")
        self.mymemory_url = mymemory_url
        self.transport = transport
        self._cache: Dict[Tuple[str, str, str], Tuple[str, float]] = {}
        self._cache_lock = threading.Lock()

    def _cached(self, key: Tuple[str, str, str]) -> Optional[str]:
        with self._cache_lock:
            hit = self._cache.get(key)
            if hit and time.time() - hit[1] < CACHE_TTL_SECONDS:
                return hit[0]
            if hit:
                del self._cache[key]
        return None

    def _store(self, key: Tuple[str, str, str], text: str) -> None:
        with self._cache_lock:
            self._cache[key] = (text, time.time())

    def _libretranslate(self, text: str, source: str, target: str) -> Optional[str]:
        try:
            with httpx.Client(timeout=5.0, transport=self.transport) as client:
                resp = client.post(f"{self.libretranslate_url}/translate", json={
                    "q": text,
                    "source": source,
                    "target": target,
                    "format": "text",
                })
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("LibreTranslate failed: %s", e)
            return None
        translated = data.get("translatedText") if isinstance(data, dict) else None
        return translated if isinstance(translated, str) and translated else None

    def _mymemory(self, text: str, source: str, target: str) -> Optional[str]:
        try:
            with httpx.Client(timeout=10.0, transport=self.transport) as client:
                resp = client.get(self.mymemory_url, params={"q": text, "langpair": f"{source}|{target}"})
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("MyMemory translation error: %s", e)
            return None
        if not isinstance(data, dict) or data.get("responseStatus") != 200:
            return None
        payload = data.get("responseData")
        if not isinstance(payload, dict):
            logger.warning("MyMemory returned malformed responseData: %r", payload)
            return None
        text = payload.get("translatedText")
        return text if isinstance(text, str) and text else None

    def translate(self, text: str, source: str, target: str) -> TranslationResult:
        if source == target or not text or not text.strip():
            return TranslationResult(text=text, success=True)

        key = (source, target, text)
        cached = self._cached(key)
        if cached is not None:
            return TranslationResult(text=cached, success=True, from_cache=True)

        src = LANGUAGE_MAP.get(source, "en")
        tgt = LANGUAGE_MAP.get(target, "en")
        translated = self._libretranslate(text, src, tgt) or self._mymemory(text, src, tgt)
        if translated:
            self._store(key, translated)
            return TranslationResult(text=translated, success=True)

        logger.info("Translation %s->%s unavailable, keeping original text", source, target)
        return TranslationResult(text=text, success=False)

    def translate_from_english(self, text: str, target: str) -> TranslationResult:
        return self.translate(text, "en", target)
