from datetime import datetime, timedelta

import pytest

from qr_attendance.modules.attendance_manager import AttendanceManager
from qr_attendance.modules.database_manager import DatabaseManager
from qr_attendance.modules.qr_generator import QRGenerator
from qr_attendance.modules.qr_signing import QRSigner
from qr_attendance.modules.session_manager import SessionManager

# 2025-10-09, whole seconds so stored session times match exactly
T0 = 1_760_000_000_000

SESSION_ID = 'session-S'

ENROLLED_STUDENTS = ('student-A', 'student-B', 'student-C')


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += int(seconds * 1000)


def local_time(timestamp_ms):
    return datetime.fromtimestamp(timestamp_ms / 1000)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def signer():
    return QRSigner('test-qr-secret')


@pytest.fixture
def db_manager(tmp_path):
    manager = DatabaseManager(tmp_path / 'attendance.db', timeout=5.0)
    yield manager
    manager.close_all_connections()


@pytest.fixture
def session_manager(db_manager):
    manager = SessionManager(db_manager)
    for student_id in ENROLLED_STUDENTS:
        manager.enroll_student('CS101', student_id)
    return manager


@pytest.fixture
def qr_generator(signer, clock):
    return QRGenerator(signer, ttl_seconds=30, scan_base_url='https://attendance.example.edu', clock=clock)


@pytest.fixture
def attendance_manager(db_manager, signer, session_manager, clock):
    return AttendanceManager(
        db_manager, signer, session_manager,
        ttl_seconds=30, clock_skew_seconds=5, late_threshold_minutes=5,
        retry_attempts=3, retry_base_delay=0, clock=clock
    )


@pytest.fixture
def active_session(session_manager):
    start = local_time(T0)
    return session_manager.create_session(
        'CS101', start, start + timedelta(hours=1), session_id=SESSION_ID
    )
