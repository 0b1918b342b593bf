# QR Attendance Token Service - Modules Package
"""
Core modules of the QR attendance token scheme.

- database_manager: database operations and schema management
- qr_signing: HMAC signing shared by issuer and validator
- qr_generator: token issuance, wire format and QR rendering
- session_manager: class session lifecycle
- attendance_manager: token validation and attendance recording
"""

__version__ = "1.0.0"
