"""
Roleplay session store with idle expiry and compare-and-set turn writes.
"""

import sqlite3
import json
from contextlib import contextmanager
from typing import List, Optional
from datetime import datetime, timedelta, timezone
from pathlib import Path

from adapt.core.models import DialoguePhase, Evaluation, RoleplaySession, Turn
from adapt.shared.config import settings
from adapt.shared.exceptions import (
    NotFoundError,
    SessionExpiredError,
    StaleTurnError,
    StorageError,
)
from adapt.shared.logging import get_logger

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RoleplaySessionStore:
    """Holds in-flight roleplay dialogues until they are evaluated or expire."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        idle_timeout_minutes: Optional[int] = None
    ):
        self.db_path = Path(db_path or settings.storage.sessions_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        if idle_timeout_minutes is None:
            idle_timeout_minutes = settings.session.idle_timeout_minutes
        self.idle_timeout = timedelta(minutes=idle_timeout_minutes)
        self._init_database()

    def _init_database(self):
        """Initialize session database."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS roleplay_sessions (
                    session_id TEXT PRIMARY KEY,
                    enrollment_id INTEGER NOT NULL,
                    step_id INTEGER NOT NULL,
                    course_id INTEGER NOT NULL,
                    learner_id TEXT NOT NULL,
                    pass_number INTEGER NOT NULL,
                    tag TEXT,
                    scenario TEXT NOT NULL,  -- JSON
                    phase TEXT NOT NULL,
                    turns TEXT NOT NULL,  -- JSON array
                    turn_count INTEGER NOT NULL DEFAULT 0,
                    evaluation TEXT,  -- JSON
                    attempt_id INTEGER,  -- drill attempt recorded from the evaluation
                    created_at TEXT NOT NULL,
                    last_activity TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_roleplay_learner ON roleplay_sessions(learner_id)"
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_roleplay_episode
                   ON roleplay_sessions(enrollment_id, step_id, pass_number)"""
            )

    @contextmanager
    def _get_connection(self):
        """Get a connection with row_factory set."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open session store: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise StorageError(f"Session store unavailable: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def create(self, session: RoleplaySession) -> RoleplaySession:
        """Persist a fresh session."""
        now = _now().isoformat()
        session = session.model_copy(update={"created_at": now, "last_activity": now})

        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO roleplay_sessions
                   (session_id, enrollment_id, step_id, course_id, learner_id, pass_number,
                    tag, scenario, phase, turns, turn_count, evaluation, created_at, last_activity)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)""",
                (
                    session.session_id,
                    session.enrollment_id,
                    session.step_id,
                    session.course_id,
                    session.learner_id,
                    session.pass_number,
                    session.tag,
                    session.scenario.model_dump_json(),
                    session.phase.value,
                    json.dumps([t.model_dump(mode="json") for t in session.turns]),
                    len(session.turns),
                    now,
                    now,
                )
            )

        logger.info(f"Created roleplay session {session.session_id}")
        return session

    def get(self, session_id: str) -> RoleplaySession:
        """
        Load a session.

        Raises:
            NotFoundError if the session does not exist
            SessionExpiredError if the session idled out before evaluation
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM roleplay_sessions WHERE session_id = ?",
                (session_id,)
            ).fetchone()

        if not row:
            raise NotFoundError(f"Roleplay session {session_id} not found", session_id=session_id)

        session = self._row_to_session(row)
        if self._is_expired(session):
            raise SessionExpiredError(
                f"Roleplay session {session_id} expired", session_id=session_id
            )
        return session

    def save_turns(
        self,
        session_id: str,
        expected_count: int,
        turns: List[Turn],
        phase: DialoguePhase,
        evaluation: Optional[Evaluation] = None
    ) -> RoleplaySession:
        """
        Replace the transcript if nobody else wrote since `expected_count` turns.

        Raises:
            StaleTurnError if the transcript moved on concurrently
        """
        now = _now().isoformat()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """UPDATE roleplay_sessions
                   SET turns = ?, turn_count = ?, phase = ?, evaluation = ?, last_activity = ?
                   WHERE session_id = ? AND turn_count = ? AND evaluation IS NULL""",
                (
                    json.dumps([t.model_dump(mode="json") for t in turns]),
                    len(turns),
                    phase.value,
                    evaluation.model_dump_json() if evaluation else None,
                    now,
                    session_id,
                    expected_count,
                )
            )
            if cursor.rowcount != 1:
                raise StaleTurnError(
                    f"Roleplay session {session_id} is no longer at turn {expected_count}",
                    session_id=session_id
                )
            row = conn.execute(
                "SELECT * FROM roleplay_sessions WHERE session_id = ?",
                (session_id,)
            ).fetchone()

        return self._row_to_session(row)

    def find_open(
        self,
        enrollment_id: int,
        step_id: int,
        pass_number: int
    ) -> Optional[RoleplaySession]:
        """
        Latest session of an episode that still needs work.

        That is either a live unevaluated session or an evaluated one whose
        drill attempt was never recorded. Expired sessions are skipped.
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT * FROM roleplay_sessions
                   WHERE enrollment_id = ? AND step_id = ? AND pass_number = ?
                     AND attempt_id IS NULL
                   ORDER BY created_at DESC, rowid DESC""",
                (enrollment_id, step_id, pass_number)
            ).fetchall()

        for row in rows:
            session = self._row_to_session(row)
            if not self._is_expired(session):
                return session
        return None

    def mark_recorded(self, session_id: str, attempt_id: int) -> RoleplaySession:
        """
        Link an evaluated session to its drill attempt.

        Raises:
            StaleTurnError if the session is unevaluated or already linked
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """UPDATE roleplay_sessions SET attempt_id = ?
                   WHERE session_id = ? AND evaluation IS NOT NULL AND attempt_id IS NULL""",
                (attempt_id, session_id)
            )
            if cursor.rowcount != 1:
                raise StaleTurnError(
                    f"Roleplay session {session_id} cannot be linked to attempt {attempt_id}",
                    session_id=session_id
                )
            row = conn.execute(
                "SELECT * FROM roleplay_sessions WHERE session_id = ?",
                (session_id,)
            ).fetchone()

        return self._row_to_session(row)

    def purge_expired(self) -> int:
        """Delete unevaluated sessions past the idle timeout. Returns count removed."""
        cutoff = (_now() - self.idle_timeout).isoformat()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """DELETE FROM roleplay_sessions
                   WHERE evaluation IS NULL AND last_activity < ?""",
                (cutoff,)
            )
            removed = cursor.rowcount

        if removed:
            logger.info(f"Purged {removed} expired roleplay sessions")
        return removed

    def _is_expired(self, session: RoleplaySession) -> bool:
        if session.evaluation is not None:
            return False
        last_activity = datetime.fromisoformat(session.last_activity)
        return _now() - last_activity > self.idle_timeout

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> RoleplaySession:
        return RoleplaySession(
            session_id=row["session_id"],
            enrollment_id=row["enrollment_id"],
            step_id=row["step_id"],
            course_id=row["course_id"],
            learner_id=row["learner_id"],
            pass_number=row["pass_number"],
            tag=row["tag"],
            scenario=json.loads(row["scenario"]),
            phase=row["phase"],
            turns=json.loads(row["turns"]),
            evaluation=json.loads(row["evaluation"]) if row["evaluation"] else None,
            attempt_id=row["attempt_id"],
            created_at=row["created_at"],
            last_activity=row["last_activity"],
        )
