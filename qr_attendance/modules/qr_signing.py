"""
QR Signing Module - QR Attendance Token Service

Keyed HMAC-SHA256 signing shared by the token issuer and the token validator.
The signer is built once at startup from configuration and handed to both
sides.
"""

import hashlib
import hmac


class QRSigner:
    """Signs and verifies the canonical string of an attendance token."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("QR signing secret must not be empty")
        self._key = secret.encode('utf-8')

    def __repr__(self) -> str:
        return '<QRSigner>'

    @staticmethod
    def canonical_string(session_id: str, timestamp: int, nonce: str) -> str:
        """
        Build the string that gets signed.

        Args:
            session_id (str): Class session identifier
            timestamp (int): Issue time in epoch milliseconds
            nonce (str): Hex nonce

        Returns:
            str: ``"{session_id}-{timestamp}-{nonce}"``
        """
        return f"{session_id}-{timestamp}-{nonce}"

    def sign(self, session_id: str, timestamp: int, nonce: str) -> str:
        """Return the hex HMAC-SHA256 signature for the token fields."""
        data = self.canonical_string(session_id, timestamp, nonce)
        return hmac.new(self._key, data.encode('utf-8'), hashlib.sha256).hexdigest()

    def verify(self, session_id: str, timestamp: int, nonce: str, signature: str) -> bool:
        """
        Check a signature in constant time.

        Returns False rather than raising for signatures that are not
        plain ASCII strings.
        """
        if not isinstance(signature, str):
            return False
        expected = self.sign(session_id, timestamp, nonce)
        try:
            return hmac.compare_digest(expected, signature)
        except TypeError:
            # compare_digest refuses non-ASCII str
            return False
