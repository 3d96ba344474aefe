"""
TrainingStore: SQLite + WAL mode persistence for courses, enrollments and attempts.
"""

import json
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from adapt.core.models import (
    Course,
    DrillAttempt,
    Enrollment,
    KnowledgeFragment,
    Step,
)
from adapt.shared.config import settings
from adapt.shared.exceptions import (
    DuplicateAttemptError,
    LearnerLimitError,
    StaleIndexError,
    StorageError,
    ValidationError,
)
from adapt.shared.logging import get_logger

logger = get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_join_code() -> str:
    """Six decimal digits, shared with learners to join a course."""
    return f"{secrets.randbelow(1_000_000):06d}"


SCHEMA = """
CREATE TABLE IF NOT EXISTS courses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    curator_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    join_code TEXT NOT NULL UNIQUE,
    max_learners INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL,
    order_index INTEGER NOT NULL,
    kind TEXT NOT NULL,
    tag TEXT,
    content TEXT NOT NULL,  -- JSON, kind-specific
    UNIQUE (course_id, order_index),
    FOREIGN KEY (course_id) REFERENCES courses(id)
);

CREATE TABLE IF NOT EXISTS knowledge_fragments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL,
    position INTEGER NOT NULL,
    content TEXT NOT NULL,
    section_title TEXT,
    tags TEXT NOT NULL DEFAULT '[]',  -- JSON array
    UNIQUE (course_id, position),
    FOREIGN KEY (course_id) REFERENCES courses(id)
);

CREATE TABLE IF NOT EXISTS enrollments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    learner_id TEXT NOT NULL,
    course_id INTEGER NOT NULL,
    progress_pct INTEGER NOT NULL DEFAULT 0,
    last_step_index INTEGER NOT NULL DEFAULT 0,
    is_completed INTEGER NOT NULL DEFAULT 0,
    correct_answers INTEGER NOT NULL DEFAULT 0,
    total_answers INTEGER NOT NULL DEFAULT 0,
    score_points INTEGER NOT NULL DEFAULT 0,
    last_success_rate REAL,
    classification TEXT,
    pass_number INTEGER NOT NULL DEFAULT 1,
    best_success_rate REAL,
    completed_passes INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (learner_id, course_id),
    FOREIGN KEY (course_id) REFERENCES courses(id)
);

CREATE TABLE IF NOT EXISTS drill_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    enrollment_id INTEGER NOT NULL,
    step_id INTEGER NOT NULL,
    course_id INTEGER NOT NULL,
    learner_id TEXT NOT NULL,
    pass_number INTEGER NOT NULL,
    attempt_type TEXT NOT NULL,
    is_correct INTEGER NOT NULL,
    user_answer TEXT,
    score INTEGER NOT NULL,
    tag TEXT,
    grading_degraded INTEGER NOT NULL DEFAULT 0,
    session_id TEXT UNIQUE,  -- roleplay session that produced the attempt
    timestamp TEXT NOT NULL,
    UNIQUE (enrollment_id, step_id, pass_number, attempt_type),
    FOREIGN KEY (enrollment_id) REFERENCES enrollments(id)
);

CREATE TABLE IF NOT EXISTS ai_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    correlation_id TEXT NOT NULL,
    course_id INTEGER,
    learner_id TEXT,
    prompt_kind TEXT NOT NULL,
    fragment_ids TEXT NOT NULL DEFAULT '[]',
    fragment_previews TEXT NOT NULL DEFAULT '[]',
    prompt_text TEXT,
    prompt_hash TEXT,
    response_text TEXT,
    response_hash TEXT,
    latency_ms INTEGER NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL,
    error_code TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_steps_course ON steps(course_id, order_index);
CREATE INDEX IF NOT EXISTS idx_fragments_course ON knowledge_fragments(course_id, position);
CREATE INDEX IF NOT EXISTS idx_enrollments_course ON enrollments(course_id);
CREATE INDEX IF NOT EXISTS idx_attempts_episode ON drill_attempts(enrollment_id, step_id, pass_number);
CREATE INDEX IF NOT EXISTS idx_attempts_learner ON drill_attempts(learner_id);
CREATE INDEX IF NOT EXISTS idx_attempts_course ON drill_attempts(course_id);
CREATE INDEX IF NOT EXISTS idx_ai_logs_correlation ON ai_logs(correlation_id);
CREATE INDEX IF NOT EXISTS idx_ai_logs_course ON ai_logs(course_id);
"""


class TrainingStore:
    """CRUD store over courses, steps, knowledge fragments, enrollments, attempts and AI logs."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or settings.storage.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)

    @contextmanager
    def _get_connection(self):
        """Get database connection; commit on success, roll back on error."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open training store: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise StorageError(f"Training store unavailable: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ping(self) -> bool:
        """True when the database answers a trivial query."""
        try:
            with self._get_connection() as conn:
                conn.execute("SELECT 1").fetchone()
        except StorageError as e:
            logger.error(f"Training store ping failed: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Courses and steps
    # ------------------------------------------------------------------

    def publish_course(
        self,
        course: Course,
        fragments: Optional[Iterable[KnowledgeFragment]] = None
    ) -> Course:
        """
        Write a course with its steps and knowledge fragments.

        Step order must be dense and 0-based; steps are never updated afterwards.
        """
        indexes = sorted(step.order_index for step in course.steps)
        if indexes != list(range(len(indexes))):
            raise ValueError(f"Step order must be dense and 0-based, got {indexes}")

        with self._get_connection() as conn:
            join_code = course.join_code
            if join_code is None:
                join_code = self._unused_join_code(conn)
            elif self._join_code_taken(conn, join_code):
                raise ValidationError(f"Join code {join_code} is already in use", join_code=join_code)

            cursor = conn.execute(
                """INSERT INTO courses
                   (curator_id, title, description, join_code, max_learners, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    course.curator_id,
                    course.title,
                    course.description,
                    join_code,
                    course.max_learners,
                    _now()
                )
            )
            course_id = cursor.lastrowid

            for step in sorted(course.steps, key=lambda s: s.order_index):
                conn.execute(
                    """INSERT INTO steps (course_id, order_index, kind, tag, content)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        course_id,
                        step.order_index,
                        step.kind.value,
                        step.tag,
                        step.content.model_dump_json()
                    )
                )

            for fragment in fragments or []:
                self._insert_fragment(conn, course_id, fragment)

        logger.info(f"Published course {course_id} with {len(course.steps)} steps")
        return self.get_course(course_id)

    def get_course(self, course_id: int) -> Optional[Course]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM courses WHERE id = ?", (course_id,)
            ).fetchone()
            if not row:
                return None
            steps = self._select_steps(conn, course_id)
        return self._row_to_course(row, steps)

    def get_course_by_join_code(self, join_code: str) -> Optional[Course]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM courses WHERE join_code = ?", (join_code,)
            ).fetchone()
            if not row:
                return None
            steps = self._select_steps(conn, row["id"])
        return self._row_to_course(row, steps)

    @staticmethod
    def _row_to_course(row: sqlite3.Row, steps: List[Step]) -> Course:
        return Course(
            id=row["id"],
            curator_id=row["curator_id"],
            title=row["title"],
            description=row["description"],
            join_code=row["join_code"],
            max_learners=row["max_learners"],
            steps=steps
        )

    def _unused_join_code(self, conn: sqlite3.Connection) -> str:
        while True:
            join_code = generate_join_code()
            if not self._join_code_taken(conn, join_code):
                return join_code

    @staticmethod
    def _join_code_taken(conn: sqlite3.Connection, join_code: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM courses WHERE join_code = ?", (join_code,)
        ).fetchone()
        return row is not None

    def list_course_ids_by_curator(self, curator_id: str) -> List[int]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT id FROM courses WHERE curator_id = ? ORDER BY id",
                (curator_id,)
            ).fetchall()
        return [row["id"] for row in rows]

    def get_steps(self, course_id: int) -> List[Step]:
        with self._get_connection() as conn:
            return self._select_steps(conn, course_id)

    def get_step(self, step_id: int) -> Optional[Step]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM steps WHERE id = ?", (step_id,)
            ).fetchone()
        return self._row_to_step(row) if row else None

    def count_steps(self, course_id: int) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM steps WHERE course_id = ?", (course_id,)
            ).fetchone()[0]

    def _select_steps(self, conn: sqlite3.Connection, course_id: int) -> List[Step]:
        rows = conn.execute(
            "SELECT * FROM steps WHERE course_id = ? ORDER BY order_index",
            (course_id,)
        ).fetchall()
        return [self._row_to_step(row) for row in rows]

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> Step:
        return Step(
            id=row["id"],
            course_id=row["course_id"],
            order_index=row["order_index"],
            tag=row["tag"],
            content=json.loads(row["content"])
        )

    # ------------------------------------------------------------------
    # Knowledge fragments
    # ------------------------------------------------------------------

    def list_fragments(self, course_id: int) -> List[KnowledgeFragment]:
        """Fragments of a course in original document order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT * FROM knowledge_fragments
                   WHERE course_id = ? ORDER BY position""",
                (course_id,)
            ).fetchall()
        return [
            KnowledgeFragment(
                id=row["id"],
                course_id=row["course_id"],
                position=row["position"],
                content=row["content"],
                section_title=row["section_title"],
                tags=json.loads(row["tags"])
            )
            for row in rows
        ]

    @staticmethod
    def _insert_fragment(conn: sqlite3.Connection, course_id: int, fragment: KnowledgeFragment):
        conn.execute(
            """INSERT INTO knowledge_fragments (course_id, position, content, section_title, tags)
               VALUES (?, ?, ?, ?, ?)""",
            (
                course_id,
                fragment.position,
                fragment.content,
                fragment.section_title,
                json.dumps(fragment.tags, ensure_ascii=False)
            )
        )

    # ------------------------------------------------------------------
    # Enrollments
    # ------------------------------------------------------------------

    def get_or_create_enrollment(self, learner_id: str, course_id: int) -> Tuple[Enrollment, bool]:
        """
        Return (enrollment, created).

        A new enrollment is only inserted while the course is under its
        learner cap; the count and the insert run as one statement.

        Raises:
            LearnerLimitError if the learner is new and the course is full
        """
        now = _now()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO enrollments
                   (learner_id, course_id, created_at, updated_at)
                   SELECT ?, c.id, ?, ? FROM courses c
                   WHERE c.id = ?
                     AND (c.max_learners IS NULL
                          OR (SELECT COUNT(*) FROM enrollments e WHERE e.course_id = c.id)
                             < c.max_learners)""",
                (learner_id, now, now, course_id)
            )
            created = cursor.rowcount == 1
            row = conn.execute(
                "SELECT * FROM enrollments WHERE learner_id = ? AND course_id = ?",
                (learner_id, course_id)
            ).fetchone()

        if row is None:
            raise LearnerLimitError(
                f"Course {course_id} has reached its learner limit",
                course_id=course_id
            )
        return self._row_to_enrollment(row), created

    def get_enrollment(self, enrollment_id: int) -> Optional[Enrollment]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM enrollments WHERE id = ?", (enrollment_id,)
            ).fetchone()
        return self._row_to_enrollment(row) if row else None

    def list_enrollments_by_course(self, course_id: int) -> List[Enrollment]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM enrollments WHERE course_id = ? ORDER BY id",
                (course_id,)
            ).fetchall()
        return [self._row_to_enrollment(row) for row in rows]

    def advance_enrollment(
        self,
        enrollment_id: int,
        expected_index: int,
        expected_pass: int,
        updates: Dict[str, Any]
    ) -> Enrollment:
        """
        Compare-and-set update guarded by the caller's view of the position.

        Raises:
            StaleIndexError if another advance or restart won the race
        """
        assignments = ", ".join(f"{column} = ?" for column in updates)
        params = list(updates.values()) + [_now(), enrollment_id, expected_index, expected_pass]

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""UPDATE enrollments SET {assignments}, updated_at = ?
                    WHERE id = ? AND last_step_index = ? AND pass_number = ?
                      AND is_completed = 0""",
                params
            )
            if cursor.rowcount != 1:
                raise StaleIndexError(
                    f"Enrollment {enrollment_id} is no longer at step {expected_index}",
                    enrollment_id=enrollment_id,
                    step_index=expected_index
                )
            row = conn.execute(
                "SELECT * FROM enrollments WHERE id = ?", (enrollment_id,)
            ).fetchone()
        return self._row_to_enrollment(row)

    def restart_enrollment(self, enrollment_id: int, expected_pass: int) -> Enrollment:
        """Begin a new review pass; best-pass stats are kept."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """UPDATE enrollments
                   SET pass_number = pass_number + 1,
                       last_step_index = 0,
                       progress_pct = 0,
                       is_completed = 0,
                       correct_answers = 0,
                       total_answers = 0,
                       score_points = 0,
                       last_success_rate = NULL,
                       classification = NULL,
                       updated_at = ?
                   WHERE id = ? AND pass_number = ?""",
                (_now(), enrollment_id, expected_pass)
            )
            if cursor.rowcount != 1:
                raise StaleIndexError(
                    f"Enrollment {enrollment_id} already left pass {expected_pass}",
                    enrollment_id=enrollment_id
                )
            row = conn.execute(
                "SELECT * FROM enrollments WHERE id = ?", (enrollment_id,)
            ).fetchone()
        return self._row_to_enrollment(row)

    @staticmethod
    def _row_to_enrollment(row: sqlite3.Row) -> Enrollment:
        data = dict(row)
        data.pop("created_at", None)
        return Enrollment(**data)

    # ------------------------------------------------------------------
    # Drill attempts
    # ------------------------------------------------------------------

    def list_episode_attempts(
        self,
        enrollment_id: int,
        step_id: int,
        pass_number: int
    ) -> List[DrillAttempt]:
        """Attempts of one (enrollment, step) episode in submission order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT * FROM drill_attempts
                   WHERE enrollment_id = ? AND step_id = ? AND pass_number = ?
                   ORDER BY id""",
                (enrollment_id, step_id, pass_number)
            ).fetchall()
        return [self._row_to_attempt(row) for row in rows]

    def record_attempt(self, attempt: DrillAttempt) -> DrillAttempt:
        """
        Append an attempt and bump the enrollment counters in one transaction.

        Raises:
            DuplicateAttemptError if the same attempt slot was already taken
        """
        timestamp = attempt.timestamp or _now()
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """INSERT INTO drill_attempts
                       (enrollment_id, step_id, course_id, learner_id, pass_number,
                        attempt_type, is_correct, user_answer, score, tag,
                        grading_degraded, session_id, timestamp)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        attempt.enrollment_id,
                        attempt.step_id,
                        attempt.course_id,
                        attempt.learner_id,
                        attempt.pass_number,
                        attempt.attempt_type.value,
                        int(attempt.is_correct),
                        attempt.user_answer,
                        attempt.score,
                        attempt.tag,
                        int(attempt.grading_degraded),
                        attempt.session_id,
                        timestamp
                    )
                )
                attempt_id = cursor.lastrowid
                conn.execute(
                    """UPDATE enrollments
                       SET total_answers = total_answers + 1,
                           correct_answers = correct_answers + ?,
                           score_points = score_points + ?,
                           updated_at = ?
                       WHERE id = ?""",
                    (int(attempt.is_correct), attempt.score, timestamp, attempt.enrollment_id)
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateAttemptError(
                f"Attempt {attempt.attempt_type.value} already recorded for step {attempt.step_id}",
                enrollment_id=attempt.enrollment_id,
                step_id=attempt.step_id
            ) from e

        return attempt.model_copy(update={"id": attempt_id, "timestamp": timestamp})

    def find_attempt_by_session(self, session_id: str) -> Optional[DrillAttempt]:
        """The attempt recorded for a roleplay session, if any."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM drill_attempts WHERE session_id = ?", (session_id,)
            ).fetchone()
        return self._row_to_attempt(row) if row else None

    def list_attempts(
        self,
        learner_id: Optional[str] = None,
        course_ids: Optional[List[int]] = None
    ) -> List[DrillAttempt]:
        """Full attempt history for a learner and/or set of courses."""
        clauses = []
        params: List[Any] = []
        if learner_id is not None:
            clauses.append("learner_id = ?")
            params.append(learner_id)
        if course_ids is not None:
            if not course_ids:
                return []
            clauses.append(f"course_id IN ({', '.join('?' for _ in course_ids)})")
            params.extend(course_ids)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM drill_attempts {where} ORDER BY id", params
            ).fetchall()
        return [self._row_to_attempt(row) for row in rows]

    @staticmethod
    def _row_to_attempt(row: sqlite3.Row) -> DrillAttempt:
        return DrillAttempt(**dict(row))

    # ------------------------------------------------------------------
    # AI audit log
    # ------------------------------------------------------------------

    def log_ai_interaction(self, entry: Dict[str, Any]) -> int:
        """Persist one AI call audit entry."""
        record = {
            "correlation_id": entry["correlation_id"],
            "course_id": entry.get("course_id"),
            "learner_id": entry.get("learner_id"),
            "prompt_kind": entry["prompt_kind"],
            "fragment_ids": json.dumps(entry.get("fragment_ids", [])),
            "fragment_previews": json.dumps(entry.get("fragment_previews", []), ensure_ascii=False),
            "prompt_text": entry.get("prompt_text"),
            "prompt_hash": entry.get("prompt_hash"),
            "response_text": entry.get("response_text"),
            "response_hash": entry.get("response_hash"),
            "latency_ms": entry["latency_ms"],
            "attempts": entry.get("attempts", 1),
            "status": entry["status"],
            "error_code": entry.get("error_code"),
            "error_message": entry.get("error_message"),
            "created_at": _now(),
        }
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"INSERT INTO ai_logs ({columns}) VALUES ({placeholders})",
                list(record.values())
            )
            return cursor.lastrowid

    def list_ai_logs(
        self,
        course_id: Optional[int] = None,
        prompt_kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50
    ) -> List[Dict[str, Any]]:
        clauses = []
        params: List[Any] = []
        if course_id is not None:
            clauses.append("course_id = ?")
            params.append(course_id)
        if prompt_kind:
            clauses.append("prompt_kind = ?")
            params.append(prompt_kind)
        if status:
            clauses.append("status = ?")
            params.append(status)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM ai_logs {where} ORDER BY id DESC LIMIT ?", params
            ).fetchall()
        return [self._row_to_log(row) for row in rows]

    def get_ai_log(self, correlation_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM ai_logs WHERE correlation_id = ? ORDER BY id DESC LIMIT 1",
                (correlation_id,)
            ).fetchone()
        return self._row_to_log(row) if row else None

    def get_ai_stats(self, course_id: Optional[int] = None) -> Dict[str, Any]:
        where = "WHERE course_id = ?" if course_id is not None else ""
        params = (course_id,) if course_id is not None else ()
        with self._get_connection() as conn:
            row = conn.execute(
                f"""SELECT COUNT(*) AS total,
                           SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END) AS success,
                           AVG(latency_ms) AS avg_latency
                    FROM ai_logs {where}""",
                params
            ).fetchone()

        total = row["total"] or 0
        success = row["success"] or 0
        return {
            "total_calls": total,
            "success_calls": success,
            "error_calls": total - success,
            "success_rate": round(success / total * 100) if total else 0,
            "avg_latency_ms": round(row["avg_latency"] or 0),
        }

    @staticmethod
    def _row_to_log(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["fragment_ids"] = json.loads(data["fragment_ids"])
        data["fragment_previews"] = json.loads(data["fragment_previews"])
        return data
