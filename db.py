import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def utcnow_iso() -> str:
    """Timestamp text with microseconds so append-only rows order correctly."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              user_id     TEXT PRIMARY KEY,
              email       TEXT UNIQUE,
              name        TEXT,
              pw_hash     TEXT NOT NULL,
              pw_salt     TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS frameworks (
              id           INTEGER PRIMARY KEY,
              name         TEXT NOT NULL,
              description  TEXT,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS modules (
              id            INTEGER PRIMARY KEY,
              framework_id  INTEGER NOT NULL,
              name          TEXT NOT NULL,
              description   TEXT,
              scorm_path    TEXT,
              position      INTEGER DEFAULT 0,
              FOREIGN KEY(framework_id) REFERENCES frameworks(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_modules_framework ON modules(framework_id);

            CREATE TABLE IF NOT EXISTS module_completions (
              user_id       TEXT NOT NULL,
              module_id     INTEGER NOT NULL,
              completed_at  TEXT NOT NULL,
              PRIMARY KEY (user_id, module_id),
              FOREIGN KEY(module_id) REFERENCES modules(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS quizzes (
              id             INTEGER PRIMARY KEY,
              framework_id   INTEGER NOT NULL,
              title          TEXT NOT NULL,
              description    TEXT,
              passing_score  REAL DEFAULT 0.7,
              FOREIGN KEY(framework_id) REFERENCES frameworks(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS quiz_attempts (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id     TEXT NOT NULL,
              quiz_id     INTEGER NOT NULL,
              score       REAL NOT NULL,
              max_score   REAL NOT NULL,
              passed      INTEGER NOT NULL,
              time_taken  INTEGER DEFAULT 0,
              answers     TEXT,
              created_at  TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_quiz_attempts_user ON quiz_attempts(user_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS user_progress (
              user_id            TEXT NOT NULL,
              framework_id       INTEGER NOT NULL,
              status             TEXT NOT NULL DEFAULT 'not_started',
              completed_modules  INTEGER NOT NULL DEFAULT 0,
              total_modules      INTEGER NOT NULL DEFAULT 0,
              updated_at         TEXT NOT NULL,
              PRIMARY KEY (user_id, framework_id)
            );

            CREATE TABLE IF NOT EXISTS xapi_statements (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id      TEXT NOT NULL,
              verb         TEXT NOT NULL,
              object       TEXT NOT NULL,
              object_type  TEXT NOT NULL CHECK (object_type IN ('framework', 'module', 'quiz')),
              object_id    INTEGER NOT NULL,
              result       TEXT,
              context      TEXT,
              timestamp    TEXT NOT NULL,
              stored       INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_xapi_user ON xapi_statements(user_id, timestamp DESC);
            CREATE INDEX IF NOT EXISTS idx_xapi_unstored ON xapi_statements(stored, id);

            CREATE TABLE IF NOT EXISTS scorm_tracking_data (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id        TEXT NOT NULL,
              sco_id         TEXT NOT NULL,
              element_name   TEXT NOT NULL,
              element_value  TEXT NOT NULL,
              timestamp      TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_scorm_element
              ON scorm_tracking_data(user_id, sco_id, element_name, timestamp DESC);

            CREATE TABLE IF NOT EXISTS scorm_latest_values (
              user_id        TEXT NOT NULL,
              sco_id         TEXT NOT NULL,
              element_name   TEXT NOT NULL,
              element_value  TEXT NOT NULL,
              updated_at     TEXT NOT NULL,
              PRIMARY KEY (user_id, sco_id, element_name)
            );

            CREATE TABLE IF NOT EXISTS lrs_configurations (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              endpoint    TEXT NOT NULL,
              username    TEXT NOT NULL,
              password    TEXT NOT NULL,
              is_active   INTEGER NOT NULL DEFAULT 0,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        con.commit()


# -------------- users --------------
def get_user_auth(user_id: str) -> Optional[sqlite3.Row]:
    rows = _query("SELECT user_id, email, pw_hash, pw_salt FROM users WHERE user_id = ?", (user_id,))
    return rows[0] if rows else None

def get_user_by_email(email: str) -> Optional[sqlite3.Row]:
    rows = _query("SELECT user_id, email FROM users WHERE email = ?", (email,))
    return rows[0] if rows else None

def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT user_id, email, name FROM users WHERE user_id = ?", (user_id,))
    return _row_to_dict(rows[0]) if rows else None

def create_user(
    user_id: str,
    email: Optional[str],
    pw_hash: str,
    pw_salt: Optional[str] = None,
    name: Optional[str] = None,
):
    _exec(
        "INSERT INTO users(user_id, email, name, pw_hash, pw_salt) VALUES (?,?,?,?,?)",
        (user_id, email, name, pw_hash, pw_salt),
    )

def update_user_password(user_id: str, pw_hash: str, pw_salt: Optional[str]) -> None:
    _exec(
        "UPDATE users SET pw_hash = ?, pw_salt = ? WHERE user_id = ?",
        (pw_hash, pw_salt, user_id),
    )


# -------------- frameworks / modules / quizzes --------------
def upsert_framework(framework_id: int, name: str, description: Optional[str] = None) -> None:
    _exec(
        """
        INSERT INTO frameworks(id, name, description) VALUES (?,?,?)
        ON CONFLICT(id) DO UPDATE SET name = excluded.name, description = excluded.description
        """,
        (framework_id, name, description),
    )

def get_framework(framework_id: int) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT id, name, description FROM frameworks WHERE id = ?", (framework_id,))
    return _row_to_dict(rows[0]) if rows else None

def upsert_module(
    module_id: int,
    framework_id: int,
    name: str,
    description: Optional[str] = None,
    scorm_path: Optional[str] = None,
    position: int = 0,
) -> None:
    _exec(
        """
        INSERT INTO modules(id, framework_id, name, description, scorm_path, position)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
            framework_id = excluded.framework_id,
            name = excluded.name,
            description = excluded.description,
            scorm_path = excluded.scorm_path,
            position = excluded.position
        """,
        (module_id, framework_id, name, description, scorm_path, position),
    )

def get_module(module_id: int) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT id, framework_id, name, description, scorm_path, position FROM modules WHERE id = ?",
        (module_id,),
    )
    return _row_to_dict(rows[0]) if rows else None

def list_modules_by_framework(framework_id: int) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, framework_id, name, description, scorm_path, position
        FROM modules WHERE framework_id = ? ORDER BY position, id
        """,
        (framework_id,),
    )
    return [dict(row) for row in rows]

def set_module_completed(user_id: str, module_id: int, completed: bool) -> None:
    if completed:
        _exec(
            """
            INSERT INTO module_completions(user_id, module_id, completed_at) VALUES (?,?,?)
            ON CONFLICT(user_id, module_id) DO NOTHING
            """,
            (user_id, module_id, utcnow_iso()),
        )
    else:
        _exec(
            "DELETE FROM module_completions WHERE user_id = ? AND module_id = ?",
            (user_id, module_id),
        )

def is_module_completed(user_id: str, module_id: int) -> bool:
    rows = _query(
        "SELECT 1 FROM module_completions WHERE user_id = ? AND module_id = ?",
        (user_id, module_id),
    )
    return bool(rows)

def count_module_completions(user_id: str, framework_id: int) -> tuple[int, int]:
    """Return ``(completed, total)`` module counts for a learner in a framework."""
    rows = _query(
        """
        SELECT COUNT(m.id) AS total, COUNT(mc.module_id) AS completed
        FROM modules m
        LEFT JOIN module_completions mc ON mc.module_id = m.id AND mc.user_id = ?
        WHERE m.framework_id = ?
        """,
        (user_id, framework_id),
    )
    row = rows[0]
    return int(row["completed"] or 0), int(row["total"] or 0)

def upsert_quiz(
    quiz_id: int,
    framework_id: int,
    title: str,
    description: Optional[str] = None,
    passing_score: float = 0.7,
) -> None:
    _exec(
        """
        INSERT INTO quizzes(id, framework_id, title, description, passing_score) VALUES (?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
            framework_id = excluded.framework_id,
            title = excluded.title,
            description = excluded.description,
            passing_score = excluded.passing_score
        """,
        (quiz_id, framework_id, title, description, passing_score),
    )

def get_quiz(quiz_id: int) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT id, framework_id, title, description, passing_score FROM quizzes WHERE id = ?",
        (quiz_id,),
    )
    return _row_to_dict(rows[0]) if rows else None

def record_quiz_attempt(
    user_id: str,
    quiz_id: int,
    score: float,
    max_score: float,
    passed: bool,
    time_taken: int = 0,
    answers: Optional[list[Any]] = None,
) -> Dict[str, Any]:
    with _conn() as con:
        cur = con.execute(
            """
            INSERT INTO quiz_attempts(user_id, quiz_id, score, max_score, passed, time_taken, answers, created_at)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (
                user_id,
                quiz_id,
                float(score),
                float(max_score),
                1 if passed else 0,
                int(time_taken),
                json_dumps(answers or []),
                utcnow_iso(),
            ),
        )
        con.commit()
        row = con.execute("SELECT * FROM quiz_attempts WHERE id = ?", (cur.lastrowid,)).fetchone()
    payload = dict(row)
    payload["passed"] = bool(payload["passed"])
    payload["answers"] = _decode_json_field(payload.get("answers"))
    return payload

def upsert_user_progress(
    user_id: str,
    framework_id: int,
    status: str,
    completed_modules: int,
    total_modules: int,
) -> None:
    _exec(
        """
        INSERT INTO user_progress(user_id, framework_id, status, completed_modules, total_modules, updated_at)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(user_id, framework_id) DO UPDATE SET
            status = excluded.status,
            completed_modules = excluded.completed_modules,
            total_modules = excluded.total_modules,
            updated_at = excluded.updated_at
        """,
        (user_id, framework_id, status, completed_modules, total_modules, utcnow_iso()),
    )

def list_user_progress(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT user_id, framework_id, status, completed_modules, total_modules, updated_at
        FROM user_progress WHERE user_id = ? ORDER BY framework_id
        """,
        (user_id,),
    )
    return [dict(row) for row in rows]


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


# -------------- xAPI statements --------------
_XAPI_COLUMNS = "id, user_id, verb, object, object_type, object_id, result, context, timestamp, stored"

def insert_xapi_statement(
    user_id: str,
    verb: str,
    object_name: str,
    object_type: str,
    object_id: int,
    result: Optional[str] = None,
    context: Optional[str] = None,
) -> Dict[str, Any]:
    """Insert an unstored statement row and return it."""
    with _conn() as con:
        cur = con.execute(
            """
            INSERT INTO xapi_statements(user_id, verb, object, object_type, object_id, result, context, timestamp, stored)
            VALUES (?,?,?,?,?,?,?,?,0)
            """,
            (user_id, verb, object_name, object_type, int(object_id), result, context, utcnow_iso()),
        )
        con.commit()
        row = con.execute(
            f"SELECT {_XAPI_COLUMNS} FROM xapi_statements WHERE id = ?", (cur.lastrowid,)
        ).fetchone()
    return dict(row)

def mark_statement_stored(statement_id: int) -> None:
    _exec("UPDATE xapi_statements SET stored = 1 WHERE id = ?", (statement_id,))

def get_xapi_statement(statement_id: int) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_XAPI_COLUMNS} FROM xapi_statements WHERE id = ?", (statement_id,))
    return _row_to_dict(rows[0]) if rows else None

def list_xapi_statements(
    user_id: str,
    limit: int = 100,
    object_type: Optional[str] = None,
) -> list[Dict[str, Any]]:
    if object_type:
        rows = _query(
            f"""
            SELECT {_XAPI_COLUMNS} FROM xapi_statements
            WHERE user_id = ? AND object_type = ?
            ORDER BY timestamp DESC, id DESC LIMIT ?
            """,
            (user_id, object_type, limit),
        )
    else:
        rows = _query(
            f"""
            SELECT {_XAPI_COLUMNS} FROM xapi_statements
            WHERE user_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?
            """,
            (user_id, limit),
        )
    return [dict(row) for row in rows]

def list_unstored_statements(limit: int = 100) -> list[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_XAPI_COLUMNS} FROM xapi_statements WHERE stored = 0 ORDER BY id LIMIT ?",
        (limit,),
    )
    return [dict(row) for row in rows]


# -------------- SCORM tracking --------------
_SCORM_COLUMNS = "id, user_id, sco_id, element_name, element_value, timestamp"

def insert_scorm_data(
    user_id: str,
    sco_id: str,
    element_name: str,
    element_value: str,
) -> Dict[str, Any]:
    """Append a data-model write and refresh the latest-value snapshot."""
    timestamp = utcnow_iso()
    with _conn() as con:
        cur = con.execute(
            """
            INSERT INTO scorm_tracking_data(user_id, sco_id, element_name, element_value, timestamp)
            VALUES (?,?,?,?,?)
            """,
            (user_id, sco_id, element_name, element_value, timestamp),
        )
        # Guarded so a late-arriving older write never overwrites a newer value
        con.execute(
            """
            INSERT INTO scorm_latest_values(user_id, sco_id, element_name, element_value, updated_at)
            VALUES (?,?,?,?,?)
            ON CONFLICT(user_id, sco_id, element_name) DO UPDATE SET
                element_value = excluded.element_value,
                updated_at = excluded.updated_at
            WHERE excluded.updated_at >= scorm_latest_values.updated_at
            """,
            (user_id, sco_id, element_name, element_value, timestamp),
        )
        con.commit()
        row = con.execute(
            f"SELECT {_SCORM_COLUMNS} FROM scorm_tracking_data WHERE id = ?", (cur.lastrowid,)
        ).fetchone()
    return dict(row)

def list_scorm_data(user_id: str, sco_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        f"""
        SELECT {_SCORM_COLUMNS} FROM scorm_tracking_data
        WHERE user_id = ? AND sco_id = ? ORDER BY timestamp, id
        """,
        (user_id, sco_id),
    )
    return [dict(row) for row in rows]

def latest_scorm_element(user_id: str, sco_id: str, element_name: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"""
        SELECT {_SCORM_COLUMNS} FROM scorm_tracking_data
        WHERE user_id = ? AND sco_id = ? AND element_name = ?
        ORDER BY timestamp DESC, id DESC LIMIT 1
        """,
        (user_id, sco_id, element_name),
    )
    return _row_to_dict(rows[0]) if rows else None

def get_scorm_latest_values(user_id: str, sco_id: str) -> Dict[str, str]:
    rows = _query(
        """
        SELECT element_name, element_value FROM scorm_latest_values
        WHERE user_id = ? AND sco_id = ?
        """,
        (user_id, sco_id),
    )
    return {row["element_name"]: row["element_value"] for row in rows}

def prune_scorm_history(user_id: str, sco_id: str, element_name: str, keep: int) -> int:
    """Delete history rows for one element beyond the newest ``keep``; returns rows removed."""
    if keep <= 0:
        return 0
    cur = _exec(
        """
        DELETE FROM scorm_tracking_data
        WHERE user_id = ? AND sco_id = ? AND element_name = ?
          AND id NOT IN (
            SELECT id FROM scorm_tracking_data
            WHERE user_id = ? AND sco_id = ? AND element_name = ?
            ORDER BY timestamp DESC, id DESC LIMIT ?
          )
        """,
        (user_id, sco_id, element_name, user_id, sco_id, element_name, keep),
    )
    return cur.rowcount or 0


# -------------- LRS configuration --------------
def save_lrs_configuration(endpoint: str, username: str, password: str, activate: bool = True) -> int:
    """Store an LRS configuration; activating it deactivates every other row."""
    with _conn() as con:
        if activate:
            con.execute("UPDATE lrs_configurations SET is_active = 0 WHERE is_active = 1")
        cur = con.execute(
            "INSERT INTO lrs_configurations(endpoint, username, password, is_active) VALUES (?,?,?,?)",
            (endpoint, username, password, 1 if activate else 0),
        )
        con.commit()
        return int(cur.lastrowid)

def get_active_lrs_configuration() -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, endpoint, username, password, is_active FROM lrs_configurations
        WHERE is_active = 1 ORDER BY id DESC LIMIT 1
        """
    )
    return _row_to_dict(rows[0]) if rows else None
