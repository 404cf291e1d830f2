import os
import sqlite3
from contextlib import closing
from datetime import datetime
from typing import Any, Dict, List, Optional

HISTORY_COLUMNS = (
    "id, user_id, image_url, crop_type, additional_info, analysis, original_analysis, "
    "severity, detected_disease, provider_used, language, created_at"
)
SUMMARY_COLUMNS = "id, image_url, crop_type, analysis, severity, created_at"


class HistoryStore:
    """Per-user diagnosis history. Entries are written once and never updated."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._initialized = False

    def _get_conn(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        if self._initialized:
            return
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with closing(self._get_conn()) as conn:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS diagnosis_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    image_url TEXT NOT NULL,
                    crop_type TEXT DEFAULT 'Unknown',
                    additional_info TEXT,
                    analysis TEXT NOT NULL,
                    original_analysis TEXT,
                    severity TEXT NOT NULL DEFAULT 'unknown',
                    detected_disease TEXT,
                    provider_used TEXT,
                    language TEXT DEFAULT 'en',
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_history_user_created ON diagnosis_history (user_id, created_at DESC)"
            )
            conn.commit()
        self._initialized = True

    def add(self, user_id: str, image_url: str, analysis: str, severity: str = "unknown",
            crop_type: Optional[str] = None, additional_info: Optional[str] = None,
            original_analysis: Optional[str] = None, detected_disease: Optional[str] = None,
            provider_used: Optional[str] = None, language: str = "en") -> Dict[str, Any]:
        self.init_db()
        now = datetime.utcnow().isoformat()
        with closing(self._get_conn()) as conn:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO diagnosis_history (user_id, image_url, crop_type, additional_info, analysis, "
                "original_analysis, severity, detected_disease, provider_used, language, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (str(user_id), image_url, crop_type or "Unknown", additional_info, analysis,
                 original_analysis, severity, detected_disease, provider_used, language, now),
            )
            conn.commit()
            entry_id = cur.lastrowid
        return {"id": entry_id, "created_at": now}

    def list(self, user_id: str, page: int = 1, limit: int = 10) -> List[Dict[str, Any]]:
        self.init_db()
        offset = (max(page, 1) - 1) * limit
        with closing(self._get_conn()) as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {SUMMARY_COLUMNS} FROM diagnosis_history WHERE user_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (str(user_id), limit, offset),
            )
            return [dict(r) for r in cur.fetchall()]

    def count(self, user_id: str) -> int:
        self.init_db()
        with closing(self._get_conn()) as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM diagnosis_history WHERE user_id = ?", (str(user_id),))
            return int(cur.fetchone()[0])

    def get(self, user_id: str, entry_id: int) -> Optional[Dict[str, Any]]:
        self.init_db()
        with closing(self._get_conn()) as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT {HISTORY_COLUMNS} FROM diagnosis_history WHERE id = ? AND user_id = ?",
                (entry_id, str(user_id)),
            )
            row = cur.fetchone()
        return dict(row) if row else None

    def delete(self, user_id: str, entry_id: int) -> bool:
        self.init_db()
        with closing(self._get_conn()) as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM diagnosis_history WHERE id = ? AND user_id = ?", (entry_id, str(user_id)))
            conn.commit()
            return cur.rowcount > 0
