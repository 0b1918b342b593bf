"""
Flask QR Attendance Token Service - Main Application

This module serves as the main entry point for the attendance token service.
It builds the Flask application from configuration, wires the signer, issuer,
validator and store together, and exposes the JSON API used by the
professor's display and the student's scanner.

Features:
- Rotating signed QR codes for active class sessions
- Scan validation with specific, user-safe outcomes
- Class session creation and ending
- Class rosters for the enrollment check
- Per-session attendance listing
"""

from flask import Flask, Blueprint, current_app, request, jsonify, session, send_file
from werkzeug.exceptions import HTTPException
from functools import wraps
import io
import logging

from config import init_config
from qr_attendance.modules.database_manager import DatabaseManager, StoreUnavailableError
from qr_attendance.modules.qr_signing import QRSigner
from qr_attendance.modules.qr_generator import QRGenerator, QRGenerationError
from qr_attendance.modules.session_manager import SessionManager
from qr_attendance.modules.attendance_manager import (
    AttendanceManager, RejectionReason, ScanContext
)

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')

# HTTP status per scan outcome; ALREADY_RECORDED is informational
OUTCOME_STATUS_CODES = {
    None: 201,
    RejectionReason.ALREADY_RECORDED: 200,
    RejectionReason.MALFORMED_TOKEN: 400,
    RejectionReason.EXPIRED: 400,
    RejectionReason.INVALID_TIMESTAMP: 400,
    RejectionReason.INVALID_SIGNATURE: 400,
    RejectionReason.SESSION_NOT_ACTIVE: 409,
    RejectionReason.NOT_ENROLLED: 403,
    RejectionReason.STORE_UNAVAILABLE: 503
}


def create_app(config_name=None, clock=None):
    """
    Build the Flask application.

    Args:
        config_name: Key of ``config.config`` or a Config subclass
        clock (callable): Epoch-milliseconds clock shared by issuer and validator

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    config_class = init_config(app, config_name)

    logging.basicConfig(
        level=config_class.LOG_LEVEL,
        format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    )

    # Built once; the secret is read-only for the life of the process
    signer = QRSigner(config_class.QR_SECRET)
    db_manager = DatabaseManager(config_class.DATABASE_PATH, timeout=config_class.STORE_TIMEOUT_SECONDS)
    session_manager = SessionManager(db_manager)

    app.extensions['qr_attendance'] = {
        'db_manager': db_manager,
        'session_manager': session_manager,
        'qr_generator': QRGenerator.from_config(signer, config_class, clock=clock),
        'attendance_manager': AttendanceManager.from_config(
            db_manager, signer, session_manager, config_class, clock=clock
        )
    }

    app.register_blueprint(api)
    logger.info(f"Application created with {config_class.__name__}")
    return app


def component(name):
    return current_app.extensions['qr_attendance'][name]


def json_body():
    """Request body as a dict; anything but a JSON object reads as empty"""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def login_required(f):
    """Decorator to require an authenticated user for protected routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'success': False, 'message': 'Authentication required'}), 401
        return f(*args, **kwargs)
    return decorated_function


def professor_required(f):
    """Decorator to require professor privileges for protected routes"""
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if session.get('user_type') != 'professor':
            return jsonify({'success': False, 'message': 'Professor privileges required'}), 403
        return f(*args, **kwargs)
    return decorated_function


def student_required(f):
    """Decorator to require student privileges for protected routes"""
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if session.get('user_type') != 'student':
            return jsonify({'success': False, 'message': 'Student privileges required'}), 403
        return f(*args, **kwargs)
    return decorated_function


@api.errorhandler(StoreUnavailableError)
def handle_store_unavailable(error):
    logger.error(f"Store unavailable: {str(error)}")
    response = jsonify({
        'success': False,
        'message': RejectionReason.STORE_UNAVAILABLE.message
    })
    response.headers['Retry-After'] = '1'
    return response, 503


@api.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return error
    logger.error(f"Unhandled error on {request.path}: {str(error)}", exc_info=True)
    return jsonify({'success': False, 'message': 'Internal server error'}), 500


@api.route('/health')
def health():
    return jsonify({'status': 'ok'})


@api.route('/sessions', methods=['POST'])
@professor_required
def create_session():
    """Open a new class session"""
    data = json_body()

    try:
        class_session = component('session_manager').create_session(
            class_id=data.get('class_id'),
            start_time=data.get('start_time'),
            end_time=data.get('end_time')
        )
    except (ValueError, TypeError) as e:
        return jsonify({'success': False, 'message': f"Invalid session data: {str(e)}"}), 400

    logger.info(f"Session {class_session.id} opened by {session['user_id']}")
    return jsonify({'success': True, 'data': class_session.to_dict()}), 201


@api.route('/sessions/<session_id>')
@login_required
def get_session(session_id):
    class_session = component('session_manager').get_session(session_id)
    if class_session is None:
        return jsonify({'success': False, 'message': 'Session not found'}), 404
    return jsonify({'success': True, 'data': class_session.to_dict()})


@api.route('/sessions/<session_id>/end', methods=['POST'])
@professor_required
def end_session(session_id):
    if not component('session_manager').end_session(session_id):
        return jsonify({'success': False, 'message': 'Session not found or already ended'}), 404
    return jsonify({'success': True, 'message': 'Session ended'})


@api.route('/classes/<class_id>/students', methods=['POST'])
@professor_required
def enroll_student(class_id):
    """Add a student to a class roster"""
    student_id = json_body().get('student_id')
    if not isinstance(student_id, str) or not student_id:
        return jsonify({'success': False, 'message': 'student_id is required'}), 400

    if not component('session_manager').enroll_student(class_id, student_id):
        return jsonify({'success': True, 'message': 'Student already enrolled'})
    return jsonify({'success': True, 'message': 'Student enrolled'}), 201


@api.route('/sessions/<session_id>/qr')
@professor_required
def generate_qr(session_id):
    """Issue a fresh QR code for the display of an active session"""
    if component('session_manager').get_active_session(session_id) is None:
        return jsonify({'success': False, 'message': 'Session not found or inactive'}), 404

    try:
        issued = component('qr_generator').issue(session_id)
    except QRGenerationError:
        return jsonify({'success': False, 'message': 'Failed to generate QR code'}), 500

    response = jsonify({'success': True, 'data': issued.to_dict()})
    response.headers['Cache-Control'] = 'no-store'
    return response


@api.route('/sessions/<session_id>/qr.png')
@professor_required
def generate_qr_image(session_id):
    """Issue a fresh QR code as a bare PNG for kiosk displays"""
    if component('session_manager').get_active_session(session_id) is None:
        return jsonify({'success': False, 'message': 'Session not found or inactive'}), 404

    qr_generator = component('qr_generator')
    try:
        token = qr_generator.create_token(session_id)
        png = qr_generator.render_png(token.to_json())
    except Exception as e:
        logger.error(f"QR image generation failed for session {session_id}: {str(e)}")
        return jsonify({'success': False, 'message': 'Failed to generate QR code'}), 500

    response = send_file(io.BytesIO(png), mimetype='image/png')
    response.headers['Cache-Control'] = 'no-store'
    response.headers['X-QR-Expires-In'] = str(qr_generator.ttl_seconds)
    return response


@api.route('/attendance/scan', methods=['POST'])
@student_required
def scan_qr():
    """Validate a scanned QR payload and record attendance"""
    data = json_body()
    payload = data.get('qr_data') or data.get('scan_url')

    context = ScanContext(
        device_fingerprint=data.get('device_fingerprint'),
        ip_address=request.remote_addr
    )

    outcome = component('attendance_manager').process_scan(
        payload, str(session['user_id']), context
    )

    response = jsonify(outcome.to_dict())
    if outcome.retryable:
        response.headers['Retry-After'] = '1'
    return response, OUTCOME_STATUS_CODES[outcome.reason]


@api.route('/sessions/<session_id>/attendance')
@professor_required
def session_attendance(session_id):
    """Attendance records and status counts for a session"""
    class_session = component('session_manager').get_session(session_id)
    if class_session is None:
        return jsonify({'success': False, 'message': 'Session not found'}), 404

    attendance_manager = component('attendance_manager')
    records = attendance_manager.get_session_attendance(session_id)

    return jsonify({
        'success': True,
        'data': {
            'session': class_session.to_dict(),
            'summary': attendance_manager.get_session_summary(session_id),
            'records': [record.to_dict() for record in records]
        }
    })


if __name__ == '__main__':
    application = create_app()
    application.run(debug=application.debug, host='0.0.0.0', port=5000)
