import logging
import os
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .agents.orchestrator import FallbackOrchestrator, build_default_orchestrator
from .auth import get_current_user_id
from .config import get_settings
from .history import HistoryStore
from .services.artifact import default_store
from .services.errors import AnalysisFailed, DiagnosisError
from .services.records import PROVIDER_LOCAL_REFINE, DiagnosisRecord, DiagnosisRequest
from .services.translation import Translator

logger = logging.getLogger(__name__)

app = FastAPI(title="CropDoctor API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}


class DetectionResult(DiagnosisRecord):
    id: int
    original_analysis: str
    image_url: str
    language: str
    timestamp: str


class DetectResponse(BaseModel):
    success: bool = True
    result: DetectionResult


class HistoryPage(BaseModel):
    success: bool = True
    history: List[Dict[str, Any]]
    pagination: Dict[str, int]


_orchestrator: Optional[FallbackOrchestrator] = None
_translator: Optional[Translator] = None
_history: Optional[HistoryStore] = None
_singletons_lock = threading.Lock()


def get_orchestrator() -> FallbackOrchestrator:
    global _orchestrator
    with _singletons_lock:
        if _orchestrator is None:
            _orchestrator = build_default_orchestrator(get_settings())
        return _orchestrator


def get_translator() -> Translator:
    global _translator
    with _singletons_lock:
        if _translator is None:
            _translator = Translator(get_settings().libretranslate_url)
        return _translator


def get_history() -> HistoryStore:
    global _history
    with _singletons_lock:
        if _history is None:
            _history = HistoryStore(get_settings().history_db_path)
        return _history


def _remove_upload(path: Optional[str]) -> None:
    if not path:
        return
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning("Could not remove upload %s: %s", path, e)


def _warm_model():
    try:
        default_store().load()
    except DiagnosisError as e:
        logger.info("PlantVillage model will not be used until reloaded: %s", e)


@app.on_event('startup')
def warm_model_on_startup():
    """Load the local model in the background; requests fall through to remote tiers meanwhile."""
    threading.Thread(target=_warm_model, name="model-warmup", daemon=True).start()


@app.get("/api/health")
def health(orchestrator: FallbackOrchestrator = Depends(get_orchestrator)):
    settings = get_settings()
    return {
        "status": "ok",
        "model_loaded": default_store().is_loaded,
        "tiers": orchestrator.tier_names,
        "groq_configured": bool(settings.groq_api_key),
        "ollama_url": settings.ollama_base_url,
    }


@app.post("/api/disease/detect", response_model=DetectResponse)
def detect_disease(
    image: Optional[UploadFile] = File(None),
    crop_type: Optional[str] = Form(None),
    additional_info: Optional[str] = Form(None),
    language: Optional[str] = Form(None),
    user_id: str = Depends(get_current_user_id),
    orchestrator: FallbackOrchestrator = Depends(get_orchestrator),
    translator: Translator = Depends(get_translator),
    history: HistoryStore = Depends(get_history),
):
    if image is None or not image.filename:
        raise HTTPException(status_code=400, detail="Please upload an image")
    ext = os.path.splitext(image.filename)[1].lower()
    if ext not in MIME_TYPES:
        raise HTTPException(status_code=400, detail="Unsupported image type")

    settings = get_settings()
    data = image.file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Please upload an image")
    if len(data) > settings.max_upload_bytes:
        raise HTTPException(status_code=400, detail="Image is too large")

    user_language = language or "en"
    upload_path = None
    try:
        os.makedirs(settings.upload_dir, exist_ok=True)
        filename = f"disease_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{ext}"
        upload_path = os.path.join(settings.upload_dir, filename)
        with open(upload_path, "wb") as out:
            out.write(data)

        record = orchestrator.diagnose(DiagnosisRequest(
            image_bytes=data,
            crop_hint=crop_type,
            additional_info=additional_info,
            language=user_language,
            mime_type=MIME_TYPES[ext],
        ))

        # Refined text is already generated in the farmer's language.
        analysis = record.analysis
        if user_language != "en" and record.provider_used != PROVIDER_LOCAL_REFINE:
            try:
                analysis = translator.translate_from_english(analysis, user_language).text
            except Exception as e:
                logger.warning("Translation to %s failed, keeping English analysis: %s", user_language, e)

        image_url = f"/uploads/{filename}"
        saved = history.add(
            user_id=user_id,
            image_url=image_url,
            analysis=analysis,
            severity=record.severity,
            crop_type=record.crop,
            additional_info=additional_info,
            original_analysis=record.analysis,
            detected_disease=record.disease,
            provider_used=record.provider_used,
            language=user_language,
        )
    except AnalysisFailed as e:
        logger.error("Disease detection failed for user %s: %s", user_id,
                     "; ".join(str(c) for c in e.causes))
        _remove_upload(upload_path)
        return JSONResponse(status_code=500, content={"success": False, "message": AnalysisFailed.MESSAGE})
    except Exception:
        logger.exception("Disease detection error")
        _remove_upload(upload_path)
        return JSONResponse(status_code=500, content={"success": False, "message": AnalysisFailed.MESSAGE})

    result = DetectionResult(
        **record.model_dump(exclude={"analysis"}),
        analysis=analysis,
        id=saved["id"],
        original_analysis=record.analysis,
        image_url=image_url,
        language=user_language,
        timestamp=saved["created_at"],
    )
    return DetectResponse(result=result)


@app.get("/api/disease/history", response_model=HistoryPage)
def get_history_page(page: int = 1, limit: int = 10,
                     user_id: str = Depends(get_current_user_id),
                     history: HistoryStore = Depends(get_history)):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    total = history.count(user_id)
    return HistoryPage(
        history=history.list(user_id, page=page, limit=limit),
        pagination={"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
    )


@app.get("/api/disease/history/{entry_id}")
def get_detection(entry_id: int, user_id: str = Depends(get_current_user_id),
                  history: HistoryStore = Depends(get_history)):
    entry = history.get(user_id, entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Detection not found")
    return {"success": True, "detection": entry}


@app.delete("/api/disease/history/{entry_id}")
def delete_detection(entry_id: int, user_id: str = Depends(get_current_user_id),
                     history: HistoryStore = Depends(get_history)):
    if not history.delete(user_id, entry_id):
        raise HTTPException(status_code=404, detail="Detection not found")
    return {"success": True, "message": "Detection deleted successfully"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("cropdoctor.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
