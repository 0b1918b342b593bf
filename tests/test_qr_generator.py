import base64
import json
from urllib.parse import urlparse, parse_qs

import pytest

from config import TestingConfig
from qr_attendance.modules.qr_generator import (
    QRGenerator, QRToken, MalformedTokenError, QRGenerationError, iso_from_ms
)

from conftest import T0


def test_issue_returns_signed_token_and_png_data_url(qr_generator, signer):
    issued = qr_generator.issue('session-S')
    token = issued.token

    assert token.session_id == 'session-S'
    assert token.timestamp == T0
    assert len(token.nonce) == 32
    int(token.nonce, 16)
    assert token.signature == signer.sign('session-S', T0, token.nonce)

    prefix = 'data:image/png;base64,'
    assert issued.qr_code.startswith(prefix)
    png = base64.b64decode(issued.qr_code[len(prefix):])
    assert png.startswith(b'\x89PNG\r\n\x1a\n')


def test_expiry_is_issue_time_plus_ttl(qr_generator):
    issued = qr_generator.issue('session-S')

    assert issued.expires_in == 30
    assert issued.expires_at == iso_from_ms(T0 + 30000)
    assert issued.expires_at.endswith('Z')


def test_tokens_for_same_session_and_time_never_collide(qr_generator):
    first = qr_generator.issue('session-S').token
    second = qr_generator.issue('session-S').token

    assert first.timestamp == second.timestamp
    assert first.nonce != second.nonce
    assert first.signature != second.signature


def test_wire_format_uses_camel_case_fields(qr_generator):
    token = qr_generator.create_token('session-S')

    assert json.loads(token.to_json()) == {
        'sessionId': 'session-S',
        'timestamp': T0,
        'nonce': token.nonce,
        'signature': token.signature
    }


def test_scan_url_carries_token_in_data_parameter(qr_generator):
    issued = qr_generator.issue('session-S')
    parsed = urlparse(issued.scan_url)

    assert issued.scan_url.startswith('https://attendance.example.edu/student/scan?')
    assert json.loads(parse_qs(parsed.query)['data'][0]) == issued.token.to_dict()
    assert QRToken.parse(issued.scan_url) == issued.token


def test_to_dict_exposes_display_fields(qr_generator):
    data = qr_generator.issue('session-S').to_dict()

    assert set(data) == {'session_id', 'qr_code', 'qr_data', 'expires_at', 'expires_in', 'scan_url'}
    assert data['qr_data']['sessionId'] == 'session-S'


def test_time_remaining_and_expiring_soon(qr_generator, clock):
    token = qr_generator.create_token('session-S')

    assert qr_generator.time_remaining_ms(token) == 30000
    assert not qr_generator.is_expiring_soon(token)

    clock.advance(20)
    assert qr_generator.time_remaining_ms(token) == 10000
    assert not qr_generator.is_expiring_soon(token)

    clock.advance(5)
    assert qr_generator.is_expiring_soon(token)

    clock.advance(60)
    assert qr_generator.time_remaining_ms(token) == 0


def test_missing_session_id_is_a_caller_error(qr_generator):
    with pytest.raises(ValueError):
        qr_generator.issue('')


def test_render_failure_surfaces_as_generation_error(qr_generator, monkeypatch):
    def broken_render(data):
        raise OSError('encoder unavailable')

    monkeypatch.setattr(qr_generator, 'render_png', broken_render)

    with pytest.raises(QRGenerationError):
        qr_generator.issue('session-S')


def test_from_config_applies_configured_settings(signer):
    generator = QRGenerator.from_config(signer, TestingConfig)

    assert generator.ttl_seconds == TestingConfig.QR_TOKEN_TTL_SECONDS
    assert generator.default_settings['error_correction'] == TestingConfig.QR_CODE_ERROR_CORRECT
    assert generator.default_settings['box_size'] == TestingConfig.QR_CODE_SIZE


class TestTokenParsing:

    def test_parses_json_string_and_dict(self, qr_generator):
        token = qr_generator.create_token('session-S')

        assert QRToken.parse(token.to_json()) == token
        assert QRToken.parse(token.to_dict()) == token
        assert QRToken.parse(token.to_json().encode('utf-8')) == token

    def test_integral_float_timestamp_is_accepted(self):
        token = QRToken.parse({'sessionId': 's', 'timestamp': 1700000000000.0, 'nonce': 'ab', 'signature': 'cd'})

        assert token.timestamp == 1700000000000
        assert isinstance(token.timestamp, int)

    @pytest.mark.parametrize('payload', [
        None,
        42,
        '',
        'invalid-json',
        '{"sessionId": "s"',
        '[1, 2, 3]',
        'https://attendance.example.edu/student/scan',
        'https://attendance.example.edu/student/scan?data=not-json',
        'http://[broken/student/scan?data=x',
        b'\xff\xfe',
        {'sessionId': 's', 'timestamp': 1},
        {'sessionId': '', 'timestamp': 1, 'nonce': 'ab', 'signature': 'cd'},
        {'sessionId': 's', 'timestamp': '1700000000000', 'nonce': 'ab', 'signature': 'cd'},
        {'sessionId': 's', 'timestamp': True, 'nonce': 'ab', 'signature': 'cd'},
        {'sessionId': 's', 'timestamp': 1.5, 'nonce': 'ab', 'signature': 'cd'},
        {'sessionId': 's', 'timestamp': 1, 'nonce': 7, 'signature': 'cd'},
    ])
    def test_malformed_payloads_are_rejected(self, payload):
        with pytest.raises(MalformedTokenError):
            QRToken.parse(payload)
