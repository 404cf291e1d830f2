import sqlite3

import pytest

from cropdoctor.history import HistoryStore


def _store(tmp_path):
    return HistoryStore(str(tmp_path / "db" / "history.db"))


def test_add_and_get_round_trip(tmp_path):
    store = _store(tmp_path)
    saved = store.add(user_id="7", image_url="/uploads/a.png", analysis="translated",
                      severity="moderate", crop_type="Tomato", original_analysis="english",
                      detected_disease="Late blight", provider_used="local", language="hi")
    entry = store.get("7", saved["id"])
    assert entry["analysis"] == "translated"
    assert entry["original_analysis"] == "english"
    assert entry["detected_disease"] == "Late blight"
    assert entry["created_at"] == saved["created_at"]


def test_entries_are_scoped_per_user(tmp_path):
    store = _store(tmp_path)
    saved = store.add(user_id="7", image_url="/uploads/a.png", analysis="x")
    assert store.get("8", saved["id"]) is None
    assert store.delete("8", saved["id"]) is False
    assert store.count("8") == 0
    assert store.delete("7", saved["id"]) is True
    assert store.get("7", saved["id"]) is None


def test_list_is_newest_first_and_paginated(tmp_path):
    store = _store(tmp_path)
    for i in range(5):
        store.add(user_id="1", image_url=f"/uploads/{i}.png", analysis=f"entry {i}")
    first = store.list("1", page=1, limit=2)
    third = store.list("1", page=3, limit=2)
    assert [e["analysis"] for e in first] == ["entry 4", "entry 3"]
    assert [e["analysis"] for e in third] == ["entry 0"]
    assert first[0]["crop_type"] == "Unknown"
    assert store.count("1") == 5


class TrackingStore(HistoryStore):
    def __init__(self, db_path):
        super().__init__(db_path)
        self.opened = []

    def _get_conn(self):
        conn = super()._get_conn()
        self.opened.append(conn)
        return conn


def test_connections_are_closed_when_a_query_fails(tmp_path):
    store = TrackingStore(str(tmp_path / "history.db"))
    with pytest.raises(sqlite3.Error):
        store.get("1", object())
    assert len(store.opened) == 2
    for conn in store.opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")
