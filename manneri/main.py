"""FastAPI backend for Manneri."""

import os
import logging
from collections import OrderedDict
from fastapi import FastAPI, HTTPException

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import List, Dict, Any, Optional

from .config import ConfigError
from .detector import ManneriDetector, DEFAULT_CLEANUP_MAX_AGE_MS
from .models import Message, ManneriConfigUpdate, StorageData
from .storage import get_persistence_provider

app = FastAPI(title="Manneri API")

# CORS configuration from environment variable (comma-separated origins, or "*" for all)
allowed_origins = [origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# セッションID → 検出器（プロセス内のみ、最近使われた順）
MAX_SESSIONS = int(os.getenv("MANNERI_MAX_SESSIONS", "1000"))
_detectors: "OrderedDict[str, ManneriDetector]" = OrderedDict()


def get_detector(session_id: str) -> ManneriDetector:
    """セッションの検出器を取得（なければ作成）

    MAX_SESSIONS を超えたら最も長く使われていないセッションを破棄する。
    """
    detector = _detectors.get(session_id)
    if detector is not None:
        _detectors.move_to_end(session_id)
        return detector

    while _detectors and len(_detectors) >= MAX_SESSIONS:
        evicted_id, _ = _detectors.popitem(last=False)
        logger.info(f"Session evicted: {evicted_id}")

    detector = ManneriDetector(persistence_provider=get_persistence_provider(f"manneri_{session_id}"))
    _detectors[session_id] = detector
    logger.info(f"Session created: {session_id}")
    return detector


class MessagesRequest(BaseModel):
    """会話履歴を渡すリクエスト"""
    messages: List[Message]


class PromptRequest(BaseModel):
    """プロンプト生成リクエスト"""
    messages: List[Message]
    use_ai: bool = False


class CleanupRequest(BaseModel):
    """クリーンアップリクエスト"""
    max_age: int = DEFAULT_CLEANUP_MAX_AGE_MS


async def _generate_prompt(detector: ManneriDetector, messages: List[Message], use_ai: bool):
    if use_ai:
        return await detector.generate_ai_diversification_prompt(messages)
    return detector.generate_diversification_prompt(messages)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "Manneri API", "sessions": len(_detectors)}


@app.post("/api/sessions/{session_id}/analyze")
async def analyze(session_id: str, request: MessagesRequest):
    """会話を解析（イベントは発行しない）"""
    return get_detector(session_id).analyze_conversation(request.messages)


@app.post("/api/sessions/{session_id}/detect")
async def detect(session_id: str, request: MessagesRequest):
    """マンネリ化しているか判定"""
    detector = get_detector(session_id)
    manneri = detector.detect_manneri(request.messages)
    reason = detector.last_analysis_result.intervention_reason if manneri else None
    return {"manneri": manneri, "reason": reason}


@app.post("/api/sessions/{session_id}/should-intervene")
async def should_intervene(session_id: str, request: MessagesRequest):
    """クールダウンを含めて介入すべきか判定（記録はしない）"""
    return {"should_intervene": get_detector(session_id).should_intervene(request.messages)}


@app.post("/api/sessions/{session_id}/prompt")
async def generate_prompt(session_id: str, request: PromptRequest):
    """話題転換プロンプトを生成して介入を記録"""
    return await _generate_prompt(get_detector(session_id), request.messages, request.use_ai)


@app.post("/api/sessions/{session_id}/intervene")
async def intervene(session_id: str, request: PromptRequest):
    """介入判定とプロンプト生成をまとめて行う"""
    detector = get_detector(session_id)
    if not detector.should_intervene(request.messages):
        return {"should_intervene": False, "prompt": None}

    prompt = await _generate_prompt(detector, request.messages, request.use_ai)
    return {"should_intervene": True, "prompt": prompt}


@app.get("/api/sessions/{session_id}/config")
async def get_session_config(session_id: str):
    return get_detector(session_id).get_config()


@app.patch("/api/sessions/{session_id}/config")
async def update_session_config(session_id: str, request: ManneriConfigUpdate):
    """指定したフィールドだけ設定を更新"""
    detector = get_detector(session_id)
    try:
        detector.update_config(request)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.errors)
    return detector.get_config()


@app.get("/api/sessions/{session_id}/stats")
async def get_stats(session_id: str):
    return get_detector(session_id).get_statistics()


@app.get("/api/sessions/{session_id}/export")
async def export_data(session_id: str):
    return get_detector(session_id).export_data()


@app.post("/api/sessions/{session_id}/import")
async def import_data(session_id: str, request: StorageData):
    detector = get_detector(session_id)
    try:
        detector.import_data(request)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.errors)
    return {"status": "imported", "total_interventions": len(detector.intervention_history)}


@app.post("/api/sessions/{session_id}/save")
async def save(session_id: str):
    return {"saved": get_detector(session_id).save()}


@app.post("/api/sessions/{session_id}/load")
async def load(session_id: str):
    return {"loaded": get_detector(session_id).load()}


@app.post("/api/sessions/{session_id}/cleanup")
async def cleanup(session_id: str, request: Optional[CleanupRequest] = None):
    max_age = request.max_age if request else DEFAULT_CLEANUP_MAX_AGE_MS
    return {"removed_items": get_detector(session_id).cleanup(max_age)}


@app.get("/api/sessions/{session_id}/persistence")
async def get_persistence_info(session_id: str) -> Dict[str, Any]:
    return get_detector(session_id).get_persistence_info() or {}


@app.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str):
    """セッションの履歴を消去して検出器を破棄"""
    detector = _detectors.pop(session_id, None)
    if detector is None:
        raise HTTPException(status_code=404, detail="Session not found")
    detector.clear_history()
    logger.info(f"Session deleted: {session_id}")
    return {"status": "deleted", "session_id": session_id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
