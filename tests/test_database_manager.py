import sqlite3

import pytest

from qr_attendance.modules.database_manager import DatabaseManager, StoreUnavailableError


def table_names(db_manager):
    rows = db_manager.execute_query("SELECT name FROM sqlite_master WHERE type = 'table'")
    return {row['name'] for row in rows}


def test_schema_is_created(db_manager):
    assert {'class_sessions', 'attendance_records', 'qr_usage', 'enrollments'} <= table_names(db_manager)


def test_initialize_database_is_idempotent(db_manager):
    db_manager.initialize_database()
    db_manager.initialize_database()

    assert {'class_sessions', 'attendance_records', 'qr_usage', 'enrollments'} <= table_names(db_manager)


def test_execute_update_returns_row_id_for_inserts_and_rowcount_otherwise(db_manager):
    db_manager.execute_update(
        "INSERT INTO class_sessions (id, class_id, start_time) VALUES (?, ?, ?)",
        ('s1', 'CS101', '2025-10-09 10:00:00')
    )
    row_id = db_manager.execute_update(
        """INSERT INTO attendance_records (session_id, student_id, scanned_at)
           VALUES (?, ?, ?)""",
        ('s1', 'student-A', '2025-10-09 10:01:00')
    )
    affected = db_manager.execute_update(
        "UPDATE class_sessions SET is_active = 0 WHERE id = ?", ('s1',)
    )

    assert row_id == 1
    assert affected == 1


def test_one_redemption_per_student_per_session(db_manager):
    db_manager.execute_update(
        "INSERT INTO class_sessions (id, class_id, start_time) VALUES (?, ?, ?)",
        ('s1', 'CS101', '2025-10-09 10:00:00')
    )
    insert = """INSERT INTO attendance_records (session_id, student_id, scanned_at)
                VALUES (?, ?, ?)"""
    db_manager.execute_update(insert, ('s1', 'student-A', '2025-10-09 10:01:00'))

    with pytest.raises(sqlite3.IntegrityError):
        db_manager.execute_update(insert, ('s1', 'student-A', '2025-10-09 10:02:00'))


def test_transaction_rolls_back_on_error(db_manager):
    with pytest.raises(sqlite3.IntegrityError):
        with db_manager.transaction() as cursor:
            cursor.execute(
                "INSERT INTO class_sessions (id, class_id, start_time) VALUES (?, ?, ?)",
                ('s1', 'CS101', '2025-10-09 10:00:00')
            )
            cursor.execute(
                "INSERT INTO class_sessions (id, class_id, start_time) VALUES (?, ?, ?)",
                ('s1', 'CS101', '2025-10-09 10:00:00')
            )

    assert db_manager.execute_query("SELECT * FROM class_sessions") == []


def test_locked_database_raises_store_unavailable(tmp_path):
    db_path = tmp_path / 'locked.db'
    db_manager = DatabaseManager(db_path, timeout=0.1)

    blocker = sqlite3.connect(str(db_path), isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreUnavailableError):
            with db_manager.transaction() as cursor:
                cursor.execute(
                    "INSERT INTO class_sessions (id, class_id, start_time) VALUES (?, ?, ?)",
                    ('s1', 'CS101', '2025-10-09 10:00:00')
                )
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
        db_manager.close_all_connections()


def test_close_all_connections_allows_reconnect(db_manager):
    db_manager.execute_query("SELECT 1")
    db_manager.close_all_connections()

    assert db_manager.execute_query("SELECT 1 as one", fetch_all=False) == {'one': 1}
