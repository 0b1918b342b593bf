"""
QR Code Generator Module - QR Attendance Token Service

This module issues the short-lived signed tokens shown on the professor's
display and renders them as scannable QR codes. A token binds one class
session to one issue time and a random nonce; its HMAC signature can only be
produced with the server secret held by the injected QRSigner.

Features:
- Signed, time-boxed token issuance
- Token wire format (JSON) encoding and parsing
- Deep-link URLs for camera-less redemption
- QR code rendering to PNG and data URLs
- Display refresh helpers (time remaining, expiring soon)
"""

import qrcode
from qrcode.image.pil import PilImage
import io
import base64
import json
import secrets
import time
from datetime import datetime, timezone
from urllib.parse import urlencode, urlparse, parse_qs
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union

from qr_attendance.modules.qr_signing import QRSigner

NONCE_BYTES = 16

ERROR_CORRECTION_LEVELS = {
    'L': qrcode.constants.ERROR_CORRECT_L,  # ~7% error correction
    'M': qrcode.constants.ERROR_CORRECT_M,  # ~15% error correction
    'Q': qrcode.constants.ERROR_CORRECT_Q,  # ~25% error correction
    'H': qrcode.constants.ERROR_CORRECT_H   # ~30% error correction
}

REQUIRED_FIELDS = ('sessionId', 'timestamp', 'nonce', 'signature')


class MalformedTokenError(ValueError):
    """Raised when a scanned payload does not parse into a token."""


class QRGenerationError(RuntimeError):
    """Raised when a token cannot be issued or rendered."""


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def iso_from_ms(timestamp_ms: int) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC string ending in 'Z'."""
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@dataclass(frozen=True)
class QRToken:
    """The externally visible attendance token."""
    session_id: str
    timestamp: int
    nonce: str
    signature: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'timestamp': self.timestamp,
            'nonce': self.nonce,
            'signature': self.signature
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QRToken':
        """
        Build a token from its decoded JSON object.

        Raises:
            MalformedTokenError: Missing fields or wrong field types
        """
        if not isinstance(data, dict):
            raise MalformedTokenError("QR payload is not a JSON object")

        missing = [field for field in REQUIRED_FIELDS if field not in data]
        if missing:
            raise MalformedTokenError(f"Missing required QR code fields: {', '.join(missing)}")

        session_id = data['sessionId']
        nonce = data['nonce']
        signature = data['signature']
        timestamp = data['timestamp']

        for name, value in (('sessionId', session_id), ('nonce', nonce), ('signature', signature)):
            if not isinstance(value, str) or not value:
                raise MalformedTokenError(f"Field {name} must be a non-empty string")

        # bool is an int subclass; JSON true is not a timestamp
        if isinstance(timestamp, bool):
            raise MalformedTokenError("Field timestamp must be a number")
        if isinstance(timestamp, float):
            if not timestamp.is_integer():
                raise MalformedTokenError("Field timestamp must be whole milliseconds")
            timestamp = int(timestamp)
        if not isinstance(timestamp, int):
            raise MalformedTokenError("Field timestamp must be a number")

        return cls(session_id=session_id, timestamp=timestamp, nonce=nonce, signature=signature)

    @classmethod
    def parse(cls, payload: Union['QRToken', Dict[str, Any], str, bytes]) -> 'QRToken':
        """
        Parse an untrusted scanned payload.

        Accepts a token, a decoded JSON object, the JSON string read from the
        QR image, or a deep-link URL carrying the JSON in its ``data`` query
        parameter.

        Raises:
            MalformedTokenError: The payload is not a well-formed token
        """
        if isinstance(payload, cls):
            return payload
        if isinstance(payload, dict):
            return cls.from_dict(payload)
        if isinstance(payload, bytes):
            try:
                payload = payload.decode('utf-8')
            except UnicodeDecodeError:
                raise MalformedTokenError("Invalid QR code format")
        if not isinstance(payload, str):
            raise MalformedTokenError("Invalid QR code format")

        text = payload.strip()
        if not text:
            raise MalformedTokenError("Empty QR code payload")

        if not text.startswith('{'):
            text = _extract_url_data(text)

        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            raise MalformedTokenError("Invalid QR code format")

        return cls.from_dict(decoded)


def _extract_url_data(url: str) -> str:
    try:
        parsed = urlparse(url)
    except ValueError:
        raise MalformedTokenError("Invalid QR code format")
    values = parse_qs(parsed.query).get('data')
    if not parsed.query or not values:
        raise MalformedTokenError("Invalid QR code format")
    return values[0]


@dataclass
class IssuedQRCode:
    """A freshly issued token together with its rendered QR image."""
    token: QRToken
    qr_code: str
    expires_at: str
    expires_in: int
    scan_url: str

    @property
    def session_id(self) -> str:
        return self.token.session_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'qr_code': self.qr_code,
            'qr_data': self.token.to_dict(),
            'expires_at': self.expires_at,
            'expires_in': self.expires_in,
            'scan_url': self.scan_url
        }


class QRGenerator:
    """
    Token issuer for the attendance service.
    Issues signed, time-boxed tokens for a class session and renders them as
    QR codes. The issuer keeps no state between calls; the display is
    expected to call ``issue`` again before the current token expires.
    """

    def __init__(self, signer: QRSigner, ttl_seconds: int = 30,
                 scan_base_url: str = 'http://localhost:5000',
                 expiring_soon_seconds: int = 5,
                 image_settings: Optional[Dict[str, Any]] = None,
                 clock=None):
        """
        Initialize the QR code generator.

        Args:
            signer (QRSigner): Signer holding the server secret
            ttl_seconds (int): Token lifetime shown to the display
            scan_base_url (str): Base URL of the student scan page for deep links
            expiring_soon_seconds (int): Threshold for ``is_expiring_soon``
            image_settings (dict): Overrides for the QR image settings
            clock (callable): Returns current epoch milliseconds; defaults to ``now_ms``
        """
        self.logger = logging.getLogger(__name__)
        self.signer = signer
        self.ttl_seconds = ttl_seconds
        self.scan_base_url = scan_base_url.rstrip('/')
        self.expiring_soon_seconds = expiring_soon_seconds
        self._clock = clock or now_ms

        # Default QR code settings
        self.default_settings = {
            'error_correction': 'M',
            'box_size': 10,  # Size of each box in pixels
            'border': 1,
            'fill_color': 'black',
            'back_color': 'white'
        }
        if image_settings:
            self.default_settings.update(image_settings)

    @classmethod
    def from_config(cls, signer: QRSigner, config_class, clock=None) -> 'QRGenerator':
        """Build an issuer from a Config class."""
        return cls(
            signer,
            ttl_seconds=config_class.QR_TOKEN_TTL_SECONDS,
            scan_base_url=config_class.QR_SCAN_BASE_URL,
            expiring_soon_seconds=config_class.QR_EXPIRING_SOON_SECONDS,
            image_settings={
                'error_correction': config_class.QR_CODE_ERROR_CORRECT,
                'box_size': config_class.QR_CODE_SIZE,
                'border': config_class.QR_CODE_BORDER,
                'fill_color': config_class.QR_CODE_FILL_COLOR,
                'back_color': config_class.QR_CODE_BACK_COLOR
            },
            clock=clock
        )

    @property
    def ttl_ms(self) -> int:
        return self.ttl_seconds * 1000

    def create_token(self, session_id: str) -> QRToken:
        """
        Create a signed token for a session without rendering it.

        Args:
            session_id (str): Active session identifier (checked by the caller)

        Returns:
            QRToken: Signed token
        """
        if not session_id:
            raise ValueError("session_id is required")

        timestamp = self._clock()
        nonce = secrets.token_hex(NONCE_BYTES)
        signature = self.signer.sign(session_id, timestamp, nonce)
        return QRToken(session_id=session_id, timestamp=timestamp, nonce=nonce, signature=signature)

    def issue(self, session_id: str) -> IssuedQRCode:
        """
        Issue a new token for a session and render it as a QR code.

        Args:
            session_id (str): Active session identifier (checked by the caller)

        Returns:
            IssuedQRCode: Token, data URL image, expiry and deep link

        Raises:
            QRGenerationError: Randomness, signing or rendering failed
        """
        try:
            token = self.create_token(session_id)
            png = self.render_png(token.to_json())
        except ValueError:
            raise
        except Exception as e:
            self.logger.error(f"QR code generation failed for session {session_id}: {str(e)}")
            raise QRGenerationError("Failed to generate QR code") from e

        issued = IssuedQRCode(
            token=token,
            qr_code='data:image/png;base64,' + base64.b64encode(png).decode('ascii'),
            expires_at=iso_from_ms(token.timestamp + self.ttl_ms),
            expires_in=self.ttl_seconds,
            scan_url=self.build_scan_url(token)
        )

        self.logger.debug(f"QR code issued for session {session_id}, expires at {issued.expires_at}")
        return issued

    def render_png(self, data: str) -> bytes:
        """
        Render arbitrary text as a PNG QR code.

        Args:
            data (str): Text to encode

        Returns:
            bytes: PNG image data
        """
        settings = self.default_settings
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECTION_LEVELS[settings['error_correction']],
            box_size=settings['box_size'],
            border=settings['border'],
            image_factory=PilImage
        )
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(
            fill_color=settings['fill_color'],
            back_color=settings['back_color']
        )

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        return buffer.getvalue()

    def build_scan_url(self, token: QRToken) -> str:
        """Deep link to the student scan page with the token in ``data``."""
        return f"{self.scan_base_url}/student/scan?{urlencode({'data': token.to_json()})}"

    def time_remaining_ms(self, token: QRToken, now: Optional[int] = None) -> int:
        """Milliseconds until the token expires, never negative."""
        current = self._clock() if now is None else now
        return max(0, self.ttl_ms - (current - token.timestamp))

    def is_expiring_soon(self, token: QRToken, now: Optional[int] = None) -> bool:
        """True when the display should already be fetching a replacement."""
        return self.time_remaining_ms(token, now) <= self.expiring_soon_seconds * 1000
