"""
Session Manager Module - QR Attendance Token Service

This module manages the class sessions that attendance tokens are issued for.
A professor opens a session with its scheduled start (and optional end), the
display asks for rotating codes while the session is active, and the session
is ended when the class is over.

Features:
- Session creation with scheduled start and end times
- Active session lookup for the token issuer and validator
- Session end (deactivation)
- Class enrollment (roster) used to refuse scans by outsiders
- Conversion of stored rows into ClassSession objects
"""

from datetime import datetime
from typing import Dict, Any, Optional, Union
import logging
import sqlite3
import uuid
from dataclasses import dataclass, asdict

TIME_FORMAT = '%Y-%m-%d %H:%M:%S'


def format_time(value: Union[datetime, str, None]) -> Optional[str]:
    """
    Normalise a datetime or ISO string to the stored time format.

    Stored times are naive server-local times. Values carrying a UTC offset
    are converted to local time first.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        raise TypeError(f"Expected datetime or ISO string, got {type(value).__name__}")
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.strftime(TIME_FORMAT)


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, TIME_FORMAT)


@dataclass
class ClassSession:
    """Data class for a scheduled class session."""
    id: str
    class_id: str
    start_time: datetime
    end_time: Optional[datetime]
    is_active: bool
    attendance_count: int

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ClassSession':
        return cls(
            id=row['id'],
            class_id=row['class_id'],
            start_time=parse_time(row['start_time']),
            end_time=parse_time(row['end_time']),
            is_active=bool(row['is_active']),
            attendance_count=row['attendance_count'] or 0
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['start_time'] = format_time(self.start_time)
        data['end_time'] = format_time(self.end_time)
        return data


class SessionManager:
    """
    Class session management for the attendance service.
    Store failures propagate as StoreUnavailableError so callers can tell an
    unknown session apart from an unreachable database.
    """

    def __init__(self, database_manager):
        """
        Initialize the session manager with database connection.

        Args:
            database_manager: Database manager instance
        """
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

    def create_session(self, class_id: str, start_time: Union[datetime, str],
                       end_time: Union[datetime, str, None] = None,
                       session_id: Optional[str] = None) -> ClassSession:
        """
        Create a new active class session.

        Args:
            class_id (str): Class the session belongs to
            start_time (datetime | str): Scheduled start
            end_time (datetime | str): Scheduled end, if known
            session_id (str): Explicit identifier; a random one is generated otherwise

        Returns:
            ClassSession: The created session

        Raises:
            ValueError: Missing class id, bad time format or end before start
        """
        if not class_id:
            raise ValueError("class_id is required")
        if not start_time:
            raise ValueError("start_time is required")

        start = format_time(start_time)
        end = format_time(end_time)
        if end is not None and parse_time(end) < parse_time(start):
            raise ValueError("end_time must not be before start_time")

        session_id = session_id or uuid.uuid4().hex

        self.db.execute_update(
            """INSERT INTO class_sessions (id, class_id, start_time, end_time, is_active)
               VALUES (?, ?, ?, ?, 1)""",
            (session_id, class_id, start, end)
        )

        self.logger.info(f"Session created: {session_id} for class {class_id}")
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> Optional[ClassSession]:
        """
        Get a session by ID, active or not.

        Returns:
            ClassSession: Session or None when unknown
        """
        row = self.db.execute_query(
            "SELECT * FROM class_sessions WHERE id = ?",
            (session_id,),
            fetch_all=False
        )
        return ClassSession.from_row(row) if row else None

    def get_active_session(self, session_id: str) -> Optional[ClassSession]:
        """Get a session by ID only if it is currently active."""
        row = self.db.execute_query(
            "SELECT * FROM class_sessions WHERE id = ? AND is_active = 1",
            (session_id,),
            fetch_all=False
        )
        return ClassSession.from_row(row) if row else None

    def end_session(self, session_id: str) -> bool:
        """
        Mark a session inactive. Tokens for it stop validating immediately.

        Returns:
            bool: True if an active session was ended
        """
        affected_rows = self.db.execute_update(
            """UPDATE class_sessions
               SET is_active = 0, ended_at = CURRENT_TIMESTAMP
               WHERE id = ? AND is_active = 1""",
            (session_id,)
        )

        if affected_rows > 0:
            self.logger.info(f"Session {session_id} ended")
            return True
        return False

    def enroll_student(self, class_id: str, student_id: str) -> bool:
        """
        Add a student to a class roster.

        Returns:
            bool: True if the student was newly enrolled
        """
        if not class_id or not student_id:
            raise ValueError("class_id and student_id are required")

        try:
            self.db.execute_update(
                "INSERT INTO enrollments (class_id, student_id) VALUES (?, ?)",
                (class_id, student_id)
            )
        except sqlite3.IntegrityError:
            return False

        self.logger.info(f"Student {student_id} enrolled in class {class_id}")
        return True

    def is_enrolled(self, class_id: str, student_id: str) -> bool:
        row = self.db.execute_query(
            "SELECT 1 FROM enrollments WHERE class_id = ? AND student_id = ?",
            (class_id, student_id),
            fetch_all=False
        )
        return row is not None
