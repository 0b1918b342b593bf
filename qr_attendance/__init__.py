# QR Attendance Token Service - Package
"""
Main package for the QR Attendance Token Service.
Contains the signed, time-boxed QR token scheme and the store-backed
managers around it.
"""

__version__ = "1.0.0"
__description__ = "Signed rotating QR code attendance tokens for class sessions"

# Import core components for easy access
from .modules.database_manager import DatabaseManager, StoreUnavailableError
from .modules.qr_signing import QRSigner
from .modules.qr_generator import QRGenerator, QRToken, IssuedQRCode, MalformedTokenError, QRGenerationError
from .modules.session_manager import SessionManager, ClassSession
from .modules.attendance_manager import (
    AttendanceManager, AttendanceRecord, RejectionReason, ScanContext, ScanOutcome
)

__all__ = [
    'DatabaseManager',
    'StoreUnavailableError',
    'QRSigner',
    'QRGenerator',
    'QRToken',
    'IssuedQRCode',
    'MalformedTokenError',
    'QRGenerationError',
    'SessionManager',
    'ClassSession',
    'AttendanceManager',
    'AttendanceRecord',
    'RejectionReason',
    'ScanContext',
    'ScanOutcome'
]
