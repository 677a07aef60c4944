import json
import os
import sqlite3
from uuid import uuid4
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


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


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime] = None) -> str:
    """Serialize ``value`` (default: now) in the fixed UTC format used by every table."""
    dt = value or utcnow()
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    for fmt in (_TIMESTAMP_FORMAT, "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None or value == "":
        return None
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return None


def _decode_json_object(value: Optional[str]) -> Dict[str, Any]:
    decoded = _decode_json_field(value)
    return decoded if isinstance(decoded, dict) else {}


def _new_id() -> str:
    return uuid4().hex


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS learners (
              id                   TEXT PRIMARY KEY,
              display_name         TEXT,
              age_years            INTEGER NOT NULL DEFAULT 7,
              reading_level        REAL NOT NULL DEFAULT 1.0,
              tone                 INTEGER NOT NULL DEFAULT 3,
              interests            TEXT,
              favorite_characters  TEXT,
              personal_context     TEXT,
              created_at           TEXT NOT NULL,
              updated_at           TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS generated_stories (
              id                TEXT PRIMARY KEY,
              learner_id        TEXT NOT NULL REFERENCES learners(id),
              topic_slug        TEXT NOT NULL,
              title             TEXT NOT NULL,
              body              TEXT NOT NULL,
              level             REAL NOT NULL,
              metadata          TEXT,
              model             TEXT,
              approved          INTEGER NOT NULL DEFAULT 0,
              rejection_reason  TEXT,
              reusable          INTEGER NOT NULL DEFAULT 0,
              created_at        TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_stories_cache
              ON generated_stories(learner_id, topic_slug, reusable, approved, created_at DESC);

            CREATE TABLE IF NOT EXISTS story_questions (
              id              TEXT PRIMARY KEY,
              story_id        TEXT NOT NULL REFERENCES generated_stories(id),
              type            TEXT NOT NULL CHECK (type IN ('literal','inference','vocabulary','summary')),
              prompt          TEXT NOT NULL,
              options         TEXT NOT NULL,
              correct_index   INTEGER NOT NULL CHECK (correct_index BETWEEN 0 AND 3),
              explanation     TEXT,
              difficulty      INTEGER NOT NULL DEFAULT 3 CHECK (difficulty BETWEEN 1 AND 5),
              position        INTEGER NOT NULL,
              created_at      TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_questions_story ON story_questions(story_id, position);

            CREATE TABLE IF NOT EXISTS reading_sessions (
              id                TEXT PRIMARY KEY,
              learner_id        TEXT NOT NULL REFERENCES learners(id),
              story_id          TEXT REFERENCES generated_stories(id),
              topic_slug        TEXT,
              level             REAL,
              expected_time_ms  INTEGER,
              from_cache        INTEGER NOT NULL DEFAULT 0,
              completed         INTEGER NOT NULL DEFAULT 0,
              stars             INTEGER NOT NULL DEFAULT 0,
              duration_seconds  INTEGER,
              metadata          TEXT,
              started_at        TEXT NOT NULL,
              finished_at       TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_learner ON reading_sessions(learner_id, started_at DESC);

            CREATE TABLE IF NOT EXISTS session_answers (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              session_id        TEXT NOT NULL REFERENCES reading_sessions(id),
              question_id       TEXT NOT NULL,
              type              TEXT NOT NULL,
              selected_option   INTEGER NOT NULL,
              is_correct        INTEGER NOT NULL,
              response_time_ms  INTEGER,
              created_at        TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS generation_traces (
              trace_id    TEXT PRIMARY KEY,
              learner_id  TEXT NOT NULL,
              status      TEXT NOT NULL,
              payload     TEXT NOT NULL,
              updated_at  TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS difficulty_adjustments (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id    TEXT NOT NULL,
              session_id    TEXT NOT NULL,
              level_before  REAL NOT NULL,
              level_after   REAL NOT NULL,
              direction     TEXT NOT NULL CHECK (direction IN ('up','hold','down')),
              reason        TEXT NOT NULL,
              evidence      TEXT,
              created_at    TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_adjustments_learner ON difficulty_adjustments(learner_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS manual_adjustments (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              session_id    TEXT NOT NULL UNIQUE,
              learner_id    TEXT NOT NULL,
              direction     TEXT NOT NULL CHECK (direction IN ('easier','harder')),
              level_before  REAL NOT NULL,
              level_after   REAL NOT NULL,
              story_id      TEXT,
              created_at    TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS skill_ratings (
              learner_id   TEXT PRIMARY KEY,
              global       REAL NOT NULL,
              literal      REAL NOT NULL,
              inference    REAL NOT NULL,
              vocabulary   REAL NOT NULL,
              summary      REAL NOT NULL,
              rd           REAL NOT NULL,
              updated_at   TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rating_snapshots (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id   TEXT NOT NULL,
              session_id   TEXT,
              global       REAL NOT NULL,
              literal      REAL NOT NULL,
              inference    REAL NOT NULL,
              vocabulary   REAL NOT NULL,
              summary      REAL NOT NULL,
              rd           REAL NOT NULL,
              wpm          REAL,
              created_at   TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_snapshots_learner ON rating_snapshots(learner_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS llm_metrics (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id     TEXT,
              model_id       TEXT NOT NULL,
              purpose        TEXT NOT NULL,
              attempts       INTEGER NOT NULL,
              latency_ms     INTEGER NOT NULL,
              tokens_in      INTEGER,
              tokens_out     INTEGER,
              outcome        TEXT NOT NULL,
              created_at     TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_llm_metrics_learner ON llm_metrics(learner_id, created_at DESC);
            """
        )
        con.commit()


# -------------- learners --------------
def _learner_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    interests = _decode_json_field(row["interests"])
    return {
        "id": row["id"],
        "display_name": row["display_name"],
        "age_years": int(row["age_years"]),
        "reading_level": float(row["reading_level"]),
        "tone": int(row["tone"]),
        "interests": interests if isinstance(interests, list) else [],
        "favorite_characters": row["favorite_characters"],
        "personal_context": row["personal_context"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def upsert_learner(
    learner_id: str,
    *,
    display_name: Optional[str] = None,
    age_years: int = 7,
    reading_level: float = 1.0,
    tone: int = 3,
    interests: Optional[Sequence[str]] = None,
    favorite_characters: Optional[str] = None,
    personal_context: Optional[str] = None,
) -> None:
    now = format_timestamp()
    _exec(
        """
        INSERT INTO learners (id, display_name, age_years, reading_level, tone, interests,
                              favorite_characters, personal_context, created_at, updated_at)
        VALUES (?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
            display_name = excluded.display_name,
            age_years = excluded.age_years,
            reading_level = excluded.reading_level,
            tone = excluded.tone,
            interests = excluded.interests,
            favorite_characters = excluded.favorite_characters,
            personal_context = excluded.personal_context,
            updated_at = excluded.updated_at
        """,
        (
            learner_id,
            display_name,
            int(age_years),
            float(reading_level),
            int(tone),
            json.dumps(list(interests or [])),
            favorite_characters,
            personal_context,
            now,
            now,
        ),
    )


def ensure_learner(learner_id: str) -> None:
    now = format_timestamp()
    _exec(
        "INSERT OR IGNORE INTO learners (id, created_at, updated_at, interests) VALUES (?,?,?,?)",
        (learner_id, now, now, "[]"),
    )


def get_learner(learner_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM learners WHERE id = ?", (learner_id,))
    if not rows:
        return None
    return _learner_row_to_dict(rows[0])


def set_reading_level(learner_id: str, level: float) -> None:
    _exec(
        "UPDATE learners SET reading_level = ?, updated_at = ? WHERE id = ?",
        (float(level), format_timestamp(), learner_id),
    )


# -------------- stories --------------
def _story_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    story = {
        "id": row["id"],
        "learner_id": row["learner_id"],
        "topic_slug": row["topic_slug"],
        "title": row["title"],
        "body": row["body"],
        "level": float(row["level"]),
        "metadata": _decode_json_object(row["metadata"]),
        "model": row["model"],
        "approved": bool(row["approved"]),
        "rejection_reason": row["rejection_reason"],
        "reusable": bool(row["reusable"]),
        "created_at": row["created_at"],
    }
    if "question_count" in row.keys():
        story["question_count"] = int(row["question_count"] or 0)
    return story


def insert_story(
    learner_id: str,
    topic_slug: str,
    title: str,
    body: str,
    level: float,
    metadata: Mapping[str, Any],
    model: Optional[str],
    *,
    approved: bool,
    rejection_reason: Optional[str] = None,
    reusable: bool = False,
    created_at: Optional[datetime] = None,
) -> str:
    story_id = _new_id()
    _exec(
        """
        INSERT INTO generated_stories (id, learner_id, topic_slug, title, body, level, metadata,
                                       model, approved, rejection_reason, reusable, created_at)
        VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            story_id,
            learner_id,
            topic_slug,
            title,
            body,
            float(level),
            json.dumps(dict(metadata), ensure_ascii=False),
            model,
            int(bool(approved)),
            rejection_reason,
            int(bool(reusable and approved)),
            format_timestamp(created_at),
        ),
    )
    return story_id


def get_story(story_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM generated_stories WHERE id = ?", (story_id,))
    if not rows:
        return None
    return _story_row_to_dict(rows[0])


def merge_story_metadata(story_id: str, patch: Mapping[str, Any]) -> None:
    with _conn() as con:
        row = con.execute("SELECT metadata FROM generated_stories WHERE id = ?", (story_id,)).fetchone()
        if row is None:
            return
        merged = _decode_json_object(row["metadata"])
        merged.update(patch)
        con.execute(
            "UPDATE generated_stories SET metadata = ? WHERE id = ?",
            (json.dumps(merged, ensure_ascii=False), story_id),
        )
        con.commit()


def count_stories_since(learner_id: str, since: datetime) -> int:
    rows = _query(
        "SELECT COUNT(*) AS n FROM generated_stories WHERE learner_id = ? AND created_at >= ?",
        (learner_id, format_timestamp(since)),
    )
    return int(rows[0]["n"]) if rows else 0


def list_cache_candidates(
    learner_id: str,
    topic_slug: str,
    min_level: float,
    max_level: float,
    since: datetime,
    limit: int = 12,
) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT s.*, (SELECT COUNT(*) FROM story_questions q WHERE q.story_id = s.id) AS question_count
        FROM generated_stories s
        WHERE s.learner_id = ?
          AND s.topic_slug = ?
          AND s.level >= ?
          AND s.level <= ?
          AND s.reusable = 1
          AND s.approved = 1
          AND s.created_at >= ?
        ORDER BY s.created_at DESC
        LIMIT ?
        """,
        (learner_id, topic_slug, float(min_level), float(max_level), format_timestamp(since), int(limit)),
    )
    return [_story_row_to_dict(row) for row in rows]


def list_recent_titles(learner_id: str, topic_slug: str, limit: int = 5) -> list[str]:
    rows = _query(
        """
        SELECT title FROM generated_stories
        WHERE learner_id = ? AND topic_slug = ?
        ORDER BY created_at DESC
        LIMIT ?
        """,
        (learner_id, topic_slug, int(limit)),
    )
    return [row["title"] for row in rows]


def list_recent_topic_slugs(learner_id: str, limit: int = 8) -> list[str]:
    rows = _query(
        "SELECT topic_slug FROM generated_stories WHERE learner_id = ? ORDER BY created_at DESC LIMIT ?",
        (learner_id, int(limit)),
    )
    return [row["topic_slug"] for row in rows]


# -------------- questions --------------
def _question_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    options = _decode_json_field(row["options"])
    return {
        "id": row["id"],
        "story_id": row["story_id"],
        "type": row["type"],
        "prompt": row["prompt"],
        "options": options if isinstance(options, list) else [],
        "correct_index": int(row["correct_index"]),
        "explanation": row["explanation"],
        "difficulty": int(row["difficulty"]),
        "position": int(row["position"]),
    }


def list_story_questions(story_id: str) -> list[Dict[str, Any]]:
    rows = _query("SELECT * FROM story_questions WHERE story_id = ? ORDER BY position", (story_id,))
    return [_question_row_to_dict(row) for row in rows]


def insert_questions_if_absent(story_id: str, questions: Sequence[Mapping[str, Any]]) -> bool:
    """Insert ``questions`` unless the story already has some.

    The existence check and the insert share one ``BEGIN IMMEDIATE``
    transaction, so of two concurrent writers only the first one inserts.
    Returns ``True`` when this call wrote the rows.
    """
    now = format_timestamp()
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        existing = con.execute(
            "SELECT COUNT(*) AS n FROM story_questions WHERE story_id = ?", (story_id,)
        ).fetchone()
        if existing and int(existing["n"]) > 0:
            con.rollback()
            return False
        con.executemany(
            """
            INSERT INTO story_questions (id, story_id, type, prompt, options, correct_index,
                                         explanation, difficulty, position, created_at)
            VALUES (?,?,?,?,?,?,?,?,?,?)
            """,
            [
                (
                    _new_id(),
                    story_id,
                    question["type"],
                    question["prompt"],
                    json.dumps(list(question["options"]), ensure_ascii=False),
                    int(question["correct_index"]),
                    question.get("explanation"),
                    int(question.get("difficulty") or 3),
                    position,
                    now,
                )
                for position, question in enumerate(questions)
            ],
        )
        con.commit()
        return True


# -------------- reading sessions --------------
def _session_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "learner_id": row["learner_id"],
        "story_id": row["story_id"],
        "topic_slug": row["topic_slug"],
        "level": None if row["level"] is None else float(row["level"]),
        "expected_time_ms": row["expected_time_ms"],
        "from_cache": bool(row["from_cache"]),
        "completed": bool(row["completed"]),
        "stars": int(row["stars"]),
        "duration_seconds": row["duration_seconds"],
        "metadata": _decode_json_object(row["metadata"]),
        "started_at": row["started_at"],
        "finished_at": row["finished_at"],
    }


def create_session(
    learner_id: str,
    story_id: str,
    topic_slug: str,
    level: float,
    expected_time_ms: int,
    *,
    from_cache: bool = False,
    metadata: Optional[Mapping[str, Any]] = None,
) -> str:
    session_id = _new_id()
    _exec(
        """
        INSERT INTO reading_sessions (id, learner_id, story_id, topic_slug, level, expected_time_ms,
                                      from_cache, metadata, started_at)
        VALUES (?,?,?,?,?,?,?,?,?)
        """,
        (
            session_id,
            learner_id,
            story_id,
            topic_slug,
            float(level),
            int(expected_time_ms),
            int(bool(from_cache)),
            json.dumps(dict(metadata or {}), ensure_ascii=False),
            format_timestamp(),
        ),
    )
    return session_id


def get_session(session_id: str, learner_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    if learner_id is None:
        rows = _query("SELECT * FROM reading_sessions WHERE id = ?", (session_id,))
    else:
        rows = _query(
            "SELECT * FROM reading_sessions WHERE id = ? AND learner_id = ?", (session_id, learner_id)
        )
    if not rows:
        return None
    return _session_row_to_dict(rows[0])


def merge_session_metadata(session_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
    with _conn() as con:
        row = con.execute("SELECT metadata FROM reading_sessions WHERE id = ?", (session_id,)).fetchone()
        merged = _decode_json_object(row["metadata"]) if row is not None else {}
        merged.update(patch)
        con.execute(
            "UPDATE reading_sessions SET metadata = ? WHERE id = ?",
            (json.dumps(merged, ensure_ascii=False), session_id),
        )
        con.commit()
    return merged


def repoint_session_story(session_id: str, story_id: str, level: float, expected_time_ms: int) -> None:
    _exec(
        "UPDATE reading_sessions SET story_id = ?, level = ?, expected_time_ms = ? WHERE id = ?",
        (story_id, float(level), int(expected_time_ms), session_id),
    )


def complete_session(
    session_id: str,
    *,
    stars: int,
    duration_seconds: int,
    metadata_patch: Mapping[str, Any],
) -> bool:
    """Mark the session completed; returns ``False`` if it already was."""
    finished_at = format_timestamp()
    with _conn() as con:
        row = con.execute(
            "SELECT metadata, completed FROM reading_sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if row is None or row["completed"]:
            return False
        merged = _decode_json_object(row["metadata"])
        merged.update(metadata_patch)
        cur = con.execute(
            """
            UPDATE reading_sessions
            SET completed = 1, stars = ?, duration_seconds = ?, metadata = ?, finished_at = ?
            WHERE id = ? AND completed = 0
            """,
            (int(stars), int(duration_seconds), json.dumps(merged, ensure_ascii=False), finished_at, session_id),
        )
        con.commit()
        return cur.rowcount == 1


def list_recent_comprehension_scores(
    learner_id: str, *, exclude_session_id: Optional[str] = None, limit: int = 5
) -> list[float]:
    rows = _query(
        """
        SELECT id, metadata FROM reading_sessions
        WHERE learner_id = ? AND completed = 1
        ORDER BY finished_at DESC
        LIMIT ?
        """,
        (learner_id, int(limit) + 1),
    )
    scores: list[float] = []
    for row in rows:
        if row["id"] == exclude_session_id:
            continue
        value = _decode_json_object(row["metadata"]).get("comprehension_score")
        if isinstance(value, (int, float)):
            scores.append(float(value))
    return scores[:limit]


def last_completed_session_at(learner_id: str, *, exclude_session_id: Optional[str] = None) -> Optional[datetime]:
    rows = _query(
        """
        SELECT finished_at FROM reading_sessions
        WHERE learner_id = ? AND completed = 1 AND id != ?
        ORDER BY finished_at DESC
        LIMIT 1
        """,
        (learner_id, exclude_session_id or ""),
    )
    if not rows:
        return None
    return parse_timestamp(rows[0]["finished_at"])


def insert_session_answers(session_id: str, answers: Sequence[Mapping[str, Any]]) -> None:
    now = format_timestamp()
    with _conn() as con:
        con.executemany(
            """
            INSERT INTO session_answers (session_id, question_id, type, selected_option, is_correct,
                                         response_time_ms, created_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            [
                (
                    session_id,
                    answer["question_id"],
                    answer["type"],
                    int(answer["selected_option"]),
                    int(bool(answer["is_correct"])),
                    answer.get("response_time_ms"),
                    now,
                )
                for answer in answers
            ],
        )
        con.commit()


def list_session_answers(session_id: str) -> list[Dict[str, Any]]:
    rows = _query("SELECT * FROM session_answers WHERE session_id = ? ORDER BY id", (session_id,))
    return [
        {
            "question_id": row["question_id"],
            "type": row["type"],
            "selected_option": int(row["selected_option"]),
            "is_correct": bool(row["is_correct"]),
            "response_time_ms": row["response_time_ms"],
        }
        for row in rows
    ]


# -------------- generation traces --------------
def save_generation_trace(trace_id: str, learner_id: str, trace: Mapping[str, Any]) -> None:
    _exec(
        """
        INSERT INTO generation_traces (trace_id, learner_id, status, payload, updated_at)
        VALUES (?,?,?,?,?)
        ON CONFLICT(trace_id) DO UPDATE SET
            status = excluded.status,
            payload = excluded.payload,
            updated_at = excluded.updated_at
        WHERE generation_traces.learner_id = excluded.learner_id
        """,
        (
            trace_id,
            learner_id,
            str(trace.get("status", "running")),
            json.dumps(dict(trace), ensure_ascii=False),
            format_timestamp(),
        ),
    )


def get_generation_trace(trace_id: str, learner_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT payload FROM generation_traces WHERE trace_id = ? AND learner_id = ?",
        (trace_id, learner_id),
    )
    if not rows:
        return None
    payload = _decode_json_field(rows[0]["payload"])
    return payload if isinstance(payload, dict) else None


# -------------- difficulty --------------
def record_level_adjustment(
    learner_id: str,
    session_id: str,
    *,
    level_before: float,
    level_after: float,
    direction: str,
    reason: str,
    evidence: Mapping[str, Any],
) -> None:
    """Append the audit row and move the learner's level in one transaction."""
    now = format_timestamp()
    with _conn() as con:
        con.execute(
            """
            INSERT INTO difficulty_adjustments (learner_id, session_id, level_before, level_after,
                                                direction, reason, evidence, created_at)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (
                learner_id,
                session_id,
                float(level_before),
                float(level_after),
                direction,
                reason,
                json.dumps(dict(evidence), ensure_ascii=False),
                now,
            ),
        )
        if level_after != level_before:
            con.execute(
                "UPDATE learners SET reading_level = ?, updated_at = ? WHERE id = ?",
                (float(level_after), now, learner_id),
            )
        con.commit()


def list_difficulty_adjustments(learner_id: str, limit: int = 20) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM difficulty_adjustments WHERE learner_id = ? ORDER BY id DESC LIMIT ?",
        (learner_id, int(limit)),
    )
    return [
        {
            "session_id": row["session_id"],
            "level_before": float(row["level_before"]),
            "level_after": float(row["level_after"]),
            "direction": row["direction"],
            "reason": row["reason"],
            "evidence": _decode_json_object(row["evidence"]),
            "created_at": row["created_at"],
        }
        for row in rows
    ]


def record_manual_adjustment(
    session_id: str,
    learner_id: str,
    *,
    direction: str,
    level_before: float,
    level_after: float,
    story_id: Optional[str],
) -> bool:
    """Store the single manual adjustment allowed per session; ``False`` if one exists."""
    try:
        _exec(
            """
            INSERT INTO manual_adjustments (session_id, learner_id, direction, level_before,
                                            level_after, story_id, created_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (session_id, learner_id, direction, float(level_before), float(level_after), story_id, format_timestamp()),
        )
    except sqlite3.IntegrityError:
        return False
    return True


def get_manual_adjustment(session_id: str, learner_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM manual_adjustments WHERE session_id = ? AND learner_id = ?",
        (session_id, learner_id),
    )
    if not rows:
        return None
    row = rows[0]
    return {
        "direction": row["direction"],
        "level_before": float(row["level_before"]),
        "level_after": float(row["level_after"]),
        "story_id": row["story_id"],
    }


# -------------- skill ratings --------------
_RATING_FIELDS = ("global", "literal", "inference", "vocabulary", "summary", "rd")


def get_skill_rating(learner_id: str) -> Optional[Dict[str, float]]:
    rows = _query("SELECT * FROM skill_ratings WHERE learner_id = ?", (learner_id,))
    if not rows:
        return None
    return {name: float(rows[0][name]) for name in _RATING_FIELDS}


def save_skill_rating(learner_id: str, ratings: Mapping[str, float]) -> None:
    _exec(
        """
        INSERT INTO skill_ratings (learner_id, global, literal, inference, vocabulary, summary, rd, updated_at)
        VALUES (?,?,?,?,?,?,?,?)
        ON CONFLICT(learner_id) DO UPDATE SET
            global = excluded.global,
            literal = excluded.literal,
            inference = excluded.inference,
            vocabulary = excluded.vocabulary,
            summary = excluded.summary,
            rd = excluded.rd,
            updated_at = excluded.updated_at
        """,
        (learner_id, *(float(ratings[name]) for name in _RATING_FIELDS), format_timestamp()),
    )


def append_rating_snapshot(
    learner_id: str, session_id: Optional[str], ratings: Mapping[str, float], wpm: Optional[float]
) -> None:
    _exec(
        """
        INSERT INTO rating_snapshots (learner_id, session_id, global, literal, inference, vocabulary,
                                      summary, rd, wpm, created_at)
        VALUES (?,?,?,?,?,?,?,?,?,?)
        """,
        (
            learner_id,
            session_id,
            *(float(ratings[name]) for name in _RATING_FIELDS),
            None if wpm is None else float(wpm),
            format_timestamp(),
        ),
    )


def list_rating_snapshots(learner_id: str, limit: int = 50) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM rating_snapshots WHERE learner_id = ? ORDER BY id DESC LIMIT ?",
        (learner_id, int(limit)),
    )
    snapshots = []
    for row in rows:
        snapshot: Dict[str, Any] = {name: float(row[name]) for name in _RATING_FIELDS}
        snapshot.update({"session_id": row["session_id"], "wpm": row["wpm"], "created_at": row["created_at"]})
        snapshots.append(snapshot)
    return snapshots


# -------------- llm metrics --------------
def record_llm_metric(
    learner_id: Optional[str],
    model_id: str,
    purpose: str,
    attempts: int,
    latency_ms: int,
    tokens_in: Optional[int],
    tokens_out: Optional[int],
    outcome: str,
) -> None:
    _exec(
        """
        INSERT INTO llm_metrics(learner_id, model_id, purpose, attempts, latency_ms, tokens_in, tokens_out, outcome, created_at)
        VALUES (?,?,?,?,?,?,?,?,?)
        """,
        (
            learner_id,
            model_id,
            purpose,
            int(attempts),
            int(latency_ms),
            None if tokens_in is None else int(tokens_in),
            None if tokens_out is None else int(tokens_out),
            outcome,
            format_timestamp(),
        ),
    )


def list_llm_metrics(learner_id: Optional[str] = None, limit: int = 100) -> list[Dict[str, Any]]:
    if learner_id is None:
        rows = _query("SELECT * FROM llm_metrics ORDER BY id DESC LIMIT ?", (int(limit),))
    else:
        rows = _query(
            "SELECT * FROM llm_metrics WHERE learner_id = ? ORDER BY id DESC LIMIT ?",
            (learner_id, int(limit)),
        )
    return [dict(row) for row in rows]
