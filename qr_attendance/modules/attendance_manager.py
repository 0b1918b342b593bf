"""
Attendance Manager Module - QR Attendance Token Service

This module validates scanned attendance tokens and records the resulting
redemptions. Every scan runs the same ordered checks and the first failing
check decides the rejection reason, so students see a specific message
(expired code, already marked, ...) instead of a generic failure.

Features:
- Freshness check against the token TTL and clock skew tolerance
- Constant-time signature verification
- Active session check
- Class enrollment check
- Replay prevention, one redemption per student per session
- Present / late status from the session's scheduled start
- Atomic commit of the redemption, usage log and session counter
- Bounded retry with backoff when the store is unavailable
- Per-session attendance listing and summary
"""

from datetime import datetime
from enum import Enum
import logging
import sqlite3
import time
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any, Tuple, Union

from qr_attendance.modules.database_manager import StoreUnavailableError
from qr_attendance.modules.qr_generator import QRToken, MalformedTokenError, now_ms
from qr_attendance.modules.qr_signing import QRSigner
from qr_attendance.modules.session_manager import ClassSession, TIME_FORMAT


class RejectionReason(Enum):
    """Why a scan was not accepted. Every message is safe to show to students."""
    MALFORMED_TOKEN = 'malformed_token'
    EXPIRED = 'expired'
    INVALID_TIMESTAMP = 'invalid_timestamp'
    INVALID_SIGNATURE = 'invalid_signature'
    SESSION_NOT_ACTIVE = 'session_not_active'
    NOT_ENROLLED = 'not_enrolled'
    ALREADY_RECORDED = 'already_recorded'
    STORE_UNAVAILABLE = 'store_unavailable'

    @property
    def message(self) -> str:
        return REJECTION_MESSAGES[self]

    @property
    def retryable(self) -> bool:
        return self is RejectionReason.STORE_UNAVAILABLE


REJECTION_MESSAGES = {
    RejectionReason.MALFORMED_TOKEN: 'Invalid QR code format. Please scan the code again.',
    RejectionReason.EXPIRED: 'QR code has expired. Please scan the current code.',
    RejectionReason.INVALID_TIMESTAMP: 'QR code is not valid yet. Please scan the current code.',
    RejectionReason.INVALID_SIGNATURE: 'Invalid QR code signature. Please scan the current code.',
    RejectionReason.SESSION_NOT_ACTIVE: 'This class session is not active.',
    RejectionReason.NOT_ENROLLED: 'You are not enrolled in this class.',
    RejectionReason.ALREADY_RECORDED: 'Your attendance is already marked for this session.',
    RejectionReason.STORE_UNAVAILABLE: 'Attendance service is temporarily unavailable. Please try again.'
}


@dataclass
class ScanContext:
    """Request-side facts about a scan attempt."""
    now_ms: Optional[int] = None
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class AttendanceRecord:
    """Data class for a persisted redemption."""
    id: Optional[int]
    session_id: str
    student_id: str
    scanned_at: str
    status: str
    minutes_late: int
    device_fingerprint: Optional[str]
    ip_address: Optional[str]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'AttendanceRecord':
        return cls(
            id=row['id'],
            session_id=row['session_id'],
            student_id=row['student_id'],
            scanned_at=row['scanned_at'],
            status=row['status'],
            minutes_late=row['minutes_late'] or 0,
            device_fingerprint=row['device_fingerprint'],
            ip_address=row['ip_address']
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScanOutcome:
    """Result of one validation: accepted with a record, or a rejection reason."""
    reason: Optional[RejectionReason] = None
    record: Optional[AttendanceRecord] = None

    @property
    def accepted(self) -> bool:
        return self.reason is None

    @property
    def already_recorded(self) -> bool:
        return self.reason is RejectionReason.ALREADY_RECORDED

    @property
    def retryable(self) -> bool:
        return self.reason is not None and self.reason.retryable

    @property
    def message(self) -> str:
        if self.accepted:
            if self.record.status == AttendanceManager.STATUS_LATE:
                return f"Attendance marked. You are late ({self.record.minutes_late} minutes after class start)."
            return 'Attendance marked. You are present.'
        return self.reason.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.accepted,
            'outcome': 'accepted' if self.accepted else self.reason.value,
            'already_recorded': self.already_recorded,
            'retryable': self.retryable,
            'message': self.message,
            'attendance': self.record.to_dict() if self.record else None
        }


class AttendanceManager:
    """
    Token validator for the attendance service.
    Decides whether a scanned token is valid for the claimed session, computes
    the attendance status and records the redemption exactly once.
    """

    STATUS_PRESENT = 'present'
    STATUS_LATE = 'late'

    def __init__(self, database_manager, signer: QRSigner, session_manager,
                 ttl_seconds: int = 30, clock_skew_seconds: int = 5,
                 late_threshold_minutes: int = 5, retry_attempts: int = 3,
                 retry_base_delay: float = 0.1, clock=None, sleep=time.sleep):
        """
        Initialize the attendance manager.

        Args:
            database_manager: Database manager instance
            signer (QRSigner): Signer holding the server secret
            session_manager: Session manager used for the active session check
            ttl_seconds (int): Maximum token age accepted
            clock_skew_seconds (int): How far in the future a token may be stamped
            late_threshold_minutes (int): Whole minutes after start still counted as present
            retry_attempts (int): Attempts made by ``process_scan`` on store failures
            retry_base_delay (float): First backoff delay in seconds, doubled per retry
            clock (callable): Returns current epoch milliseconds
            sleep (callable): Used for backoff delays
        """
        self.db = database_manager
        self.signer = signer
        self.sessions = session_manager
        self.logger = logging.getLogger(__name__)

        self.ttl_ms = ttl_seconds * 1000
        self.clock_skew_ms = clock_skew_seconds * 1000
        self.late_threshold_minutes = late_threshold_minutes
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self._clock = clock or now_ms
        self._sleep = sleep

    @classmethod
    def from_config(cls, database_manager, signer: QRSigner, session_manager,
                    config_class, clock=None) -> 'AttendanceManager':
        """Build a validator from a Config class."""
        return cls(
            database_manager,
            signer,
            session_manager,
            ttl_seconds=config_class.QR_TOKEN_TTL_SECONDS,
            clock_skew_seconds=config_class.QR_CLOCK_SKEW_SECONDS,
            late_threshold_minutes=config_class.ATTENDANCE_LATE_THRESHOLD_MINUTES,
            retry_attempts=config_class.STORE_RETRY_ATTEMPTS,
            retry_base_delay=config_class.STORE_RETRY_BASE_DELAY,
            clock=clock
        )

    def process_scan(self, payload: Union[QRToken, Dict[str, Any], str, bytes],
                     student_id: str, context: Optional[ScanContext] = None,
                     max_attempts: Optional[int] = None) -> ScanOutcome:
        """
        Parse a scanned payload and validate it, retrying store failures.

        Only STORE_UNAVAILABLE is retried; every other outcome is final for
        this scan attempt.

        Args:
            payload: JSON string, decoded object, deep-link URL or QRToken
            student_id (str): Authenticated student identity
            context (ScanContext): Device fingerprint, network address and time
            max_attempts (int): Overrides the configured retry attempts

        Returns:
            ScanOutcome: Final outcome
        """
        try:
            token = QRToken.parse(payload)
        except MalformedTokenError as e:
            self.logger.warning(f"Malformed QR payload from student {student_id}: {str(e)}")
            return ScanOutcome(RejectionReason.MALFORMED_TOKEN)

        attempts = max(1, max_attempts or self.retry_attempts)
        for attempt in range(1, attempts + 1):
            outcome = self.validate(token, student_id, context)
            if not outcome.retryable or attempt == attempts:
                return outcome

            delay = self.retry_base_delay * (2 ** (attempt - 1))
            self.logger.warning(
                f"Store unavailable for session {token.session_id}, "
                f"retrying in {delay:.2f}s (attempt {attempt}/{attempts})"
            )
            self._sleep(delay)

    def validate(self, token: QRToken, student_id: str,
                 context: Optional[ScanContext] = None) -> ScanOutcome:
        """
        Run the ordered scan checks for one token and student.

        Args:
            token (QRToken): Scanned token
            student_id (str): Authenticated student identity, never taken from the token
            context (ScanContext): Device fingerprint, network address and time

        Returns:
            ScanOutcome: Accepted with the new record, or the first failing reason
        """
        if not student_id:
            raise ValueError("student_id is required")

        context = context or ScanContext()
        now = self._clock() if context.now_ms is None else context.now_ms

        # Step 1: freshness
        age = now - token.timestamp
        if age > self.ttl_ms:
            return self._reject(RejectionReason.EXPIRED, token, student_id)
        if age < -self.clock_skew_ms:
            return self._reject(RejectionReason.INVALID_TIMESTAMP, token, student_id)

        # Step 2: authenticity
        if not self.signer.verify(token.session_id, token.timestamp, token.nonce, token.signature):
            return self._reject(RejectionReason.INVALID_SIGNATURE, token, student_id)

        try:
            # Step 3: session state
            session = self.sessions.get_active_session(token.session_id)
            if session is None:
                return self._reject(RejectionReason.SESSION_NOT_ACTIVE, token, student_id)

            # Step 4: enrollment
            if not self.sessions.is_enrolled(session.class_id, student_id):
                return self._reject(RejectionReason.NOT_ENROLLED, token, student_id)

            # Step 5: replay check
            existing = self._check_existing_attendance(token.session_id, student_id)
            if existing:
                return self._reject(RejectionReason.ALREADY_RECORDED, token, student_id, existing)

            # Step 6: status determination
            scanned_at = datetime.fromtimestamp(now / 1000)
            status = self.determine_status(session, scanned_at)
            if status is None:
                return self._reject(RejectionReason.SESSION_NOT_ACTIVE, token, student_id)
            attendance_status, minutes_late = status

            # Step 7: commit
            record = self._record_attendance(
                token, student_id, scanned_at, attendance_status, minutes_late, context
            )
        except StoreUnavailableError as e:
            self.logger.error(f"Attendance store unavailable for session {token.session_id}: {str(e)}")
            return ScanOutcome(RejectionReason.STORE_UNAVAILABLE)

        if record is None:
            # Lost the insert race to a concurrent scan by the same student
            try:
                existing = self._check_existing_attendance(token.session_id, student_id)
            except StoreUnavailableError:
                existing = None
            return self._reject(RejectionReason.ALREADY_RECORDED, token, student_id, existing)

        self.logger.info(
            f"Attendance recorded: student {student_id}, session {token.session_id}, "
            f"status {record.status}"
        )
        return ScanOutcome(record=record)

    def determine_status(self, session: ClassSession,
                         scanned_at: datetime) -> Optional[Tuple[str, int]]:
        """
        Determine attendance status from the session's scheduled times.

        Args:
            session (ClassSession): Active session
            scanned_at (datetime): Local time of the scan

        Returns:
            tuple: (status, minutes_late), or None once the scheduled end has passed
        """
        if session.end_time is not None and scanned_at > session.end_time:
            return None

        # Whole minutes after the scheduled start; 5:59 counts as 5
        elapsed = scanned_at - session.start_time
        minutes_late = max(0, int(elapsed.total_seconds() // 60))

        if minutes_late > self.late_threshold_minutes:
            return self.STATUS_LATE, minutes_late
        return self.STATUS_PRESENT, 0

    def _reject(self, reason: RejectionReason, token: QRToken, student_id: str,
                existing: Optional[AttendanceRecord] = None) -> ScanOutcome:
        if reason is RejectionReason.ALREADY_RECORDED:
            self.logger.info(f"Duplicate scan: student {student_id}, session {token.session_id}")
        else:
            self.logger.warning(
                f"Scan rejected ({reason.value}): student {student_id}, session {token.session_id}"
            )
        return ScanOutcome(reason, existing)

    def _check_existing_attendance(self, session_id: str,
                                   student_id: str) -> Optional[AttendanceRecord]:
        """
        Look up the redemption for a student in a session.

        Returns:
            AttendanceRecord: Existing record or None
        """
        row = self.db.execute_query(
            """SELECT * FROM attendance_records
               WHERE session_id = ? AND student_id = ?""",
            (session_id, student_id),
            fetch_all=False
        )
        return AttendanceRecord.from_row(row) if row else None

    def _record_attendance(self, token: QRToken, student_id: str, scanned_at: datetime,
                           status: str, minutes_late: int,
                           context: ScanContext) -> Optional[AttendanceRecord]:
        """
        Persist the redemption, the usage log row and the session counter together.

        Returns:
            AttendanceRecord: The new record, or None when the uniqueness
            constraint rejected a concurrent duplicate
        """
        scanned_at_str = scanned_at.strftime(TIME_FORMAT)

        try:
            with self.db.transaction() as cursor:
                cursor.execute(
                    """INSERT INTO attendance_records
                       (session_id, student_id, scanned_at, status, minutes_late,
                        device_fingerprint, ip_address)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (token.session_id, student_id, scanned_at_str, status, minutes_late,
                     context.device_fingerprint, context.ip_address)
                )
                record_id = cursor.lastrowid

                cursor.execute(
                    """INSERT INTO qr_usage (session_id, nonce, used_by, used_at, device_fingerprint)
                       VALUES (?, ?, ?, ?, ?)""",
                    (token.session_id, token.nonce, student_id, scanned_at_str,
                     context.device_fingerprint)
                )

                cursor.execute(
                    """UPDATE class_sessions
                       SET attendance_count = attendance_count + 1
                       WHERE id = ?""",
                    (token.session_id,)
                )
        except sqlite3.IntegrityError:
            return None

        return AttendanceRecord(
            id=record_id,
            session_id=token.session_id,
            student_id=student_id,
            scanned_at=scanned_at_str,
            status=status,
            minutes_late=minutes_late,
            device_fingerprint=context.device_fingerprint,
            ip_address=context.ip_address
        )

    def get_session_attendance(self, session_id: str) -> List[AttendanceRecord]:
        """
        Get all redemptions for a session, earliest first.

        Args:
            session_id (str): Session identifier

        Returns:
            List[AttendanceRecord]: Attendance records
        """
        rows = self.db.execute_query(
            """SELECT * FROM attendance_records
               WHERE session_id = ?
               ORDER BY scanned_at ASC, id ASC""",
            (session_id,)
        )
        return [AttendanceRecord.from_row(row) for row in rows]

    def get_session_summary(self, session_id: str) -> Dict[str, int]:
        """Count redemptions per status for a session."""
        rows = self.db.execute_query(
            """SELECT status, COUNT(*) as count FROM attendance_records
               WHERE session_id = ?
               GROUP BY status""",
            (session_id,)
        )
        counts = {row['status']: row['count'] for row in rows}

        return {
            'present': counts.get(self.STATUS_PRESENT, 0),
            'late': counts.get(self.STATUS_LATE, 0),
            'total': sum(counts.values())
        }
