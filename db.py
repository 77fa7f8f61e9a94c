"""SQLite persistence for icon generation runs."""

from __future__ import annotations

import json
import os
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional

DB_PATH = Path(os.environ.get("ICON_DB_PATH") or Path(__file__).parent / "runs.db")


def _conn() -> sqlite3.Connection:
    con = sqlite3.connect(str(DB_PATH))
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL")
    return con


def init_db() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id          TEXT PRIMARY KEY,
                created_at  DATETIME DEFAULT (datetime('now')),
                theme       TEXT NOT NULL,
                status      TEXT DEFAULT 'pending',
                error_kind  TEXT,
                error_msg   TEXT,
                labels      TEXT,   -- JSON  list, positional
                icons       TEXT,   -- JSON  {index: {label, path}}
                settings    TEXT,   -- JSON
                cost_data   TEXT,   -- JSON  {vision_cost, image_cost, total, items[]}
                duration    REAL
            )
            """
        )


# ---------------------------------------------------------------------------
# CRUD helpers
# ---------------------------------------------------------------------------

def create_run(run_id: str, theme: str, settings: Dict) -> None:
    with _conn() as con:
        con.execute(
            "INSERT INTO runs (id, theme, settings, status, icons) VALUES (?, ?, ?, 'pending', '{}')",
            (run_id, theme, json.dumps(settings)),
        )


def set_run_status(run_id: str, status: str) -> None:
    with _conn() as con:
        con.execute("UPDATE runs SET status=? WHERE id=?", (status, run_id))


def set_labels(run_id: str, labels: List[str]) -> None:
    with _conn() as con:
        con.execute("UPDATE runs SET labels=? WHERE id=?", (json.dumps(labels), run_id))


def record_icon(run_id: str, index: int, label: str, path: str) -> None:
    """Store one finished icon as soon as it lands."""
    with _conn() as con:
        row = con.execute("SELECT icons FROM runs WHERE id=?", (run_id,)).fetchone()
        icons = json.loads(row["icons"]) if row and row["icons"] else {}
        icons[str(index)] = {"label": label, "path": path}
        con.execute("UPDATE runs SET icons=? WHERE id=?", (json.dumps(icons), run_id))


def finish_run(
    run_id: str,
    status: str,
    duration: float,
    cost_data: Optional[Dict] = None,
    error_kind: Optional[str] = None,
    error_msg: Optional[str] = None,
) -> None:
    with _conn() as con:
        con.execute(
            """
            UPDATE runs SET
                status     = ?,
                duration   = ?,
                cost_data  = ?,
                error_kind = ?,
                error_msg  = ?
            WHERE id = ?
            """,
            (
                status,
                duration,
                json.dumps(cost_data) if cost_data else None,
                error_kind,
                error_msg,
                run_id,
            ),
        )


def get_run(run_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM runs WHERE id=?", (run_id,)).fetchone()
    if not row:
        return None
    return _deserialise(dict(row))


def list_runs(limit: int = 50) -> List[Dict]:
    with _conn() as con:
        rows = con.execute(
            "SELECT * FROM runs ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
    return [_deserialise(dict(r)) for r in rows]


def _deserialise(row: Dict) -> Dict:
    for key in ("labels", "icons", "settings", "cost_data"):
        val = row.get(key)
        if val:
            try:
                row[key] = json.loads(val)
            except (json.JSONDecodeError, TypeError):
                row[key] = {}
    return row
