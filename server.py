# =================================================================
#   SchoolDesk Server - Production Build
# =================================================================


from flask import Flask, jsonify, request, send_file
import datetime
import jwt
import bcrypt
import html as html_module
from functools import wraps

import logging
from logging.handlers import RotatingFileHandler
from apscheduler.schedulers.background import BackgroundScheduler
import atexit
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_cors import CORS

import sys
import os
import time

import analytics
import admissions
import exports
import fees
import message_templates as templates
import outbox
from db_client import BackendClient, BackendError, fetch_all, fetch_in_chunks, insert_chunked

# Fix console encoding for Windows to support emoji/unicode
if sys.platform == "win32":
    os.environ['PYTHONIOENCODING'] = 'utf-8'
    if hasattr(sys.stdout, 'reconfigure'):
        sys.stdout.reconfigure(encoding='utf-8')
    if hasattr(sys.stderr, 'reconfigure'):
        sys.stderr.reconfigure(encoding='utf-8')


class UTF8StreamHandler(logging.StreamHandler):
    """Custom handler that forces UTF-8 encoding for emoji support"""

    def emit(self, record):
        try:
            msg = self.format(record)
            if sys.platform == "win32":
                stream = sys.stderr
                stream.write(msg.encode('utf-8', errors='replace').decode('utf-8'))
            else:
                self.stream.write(msg)
            self.stream.write(self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


# Load configuration
from config import (
    Config,
    MINIMUM_ATTENDANCE_PERCENTAGE,
    ATTENDANCE_WARNING_THRESHOLD,
)


# --- Configure logging with rotation ---
log_file_handler = RotatingFileHandler(
    Config.LOG_FILE,
    maxBytes=10 * 1024 * 1024,  # 10 MB per file
    backupCount=5,
    encoding='utf-8'
)
log_file_handler.setLevel(logging.INFO)
log_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
log_file_handler.setFormatter(log_formatter)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        log_file_handler,
        UTF8StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

# Reduce werkzeug (Flask web server) logging - only show warnings and errors
logging.getLogger('werkzeug').setLevel(logging.WARNING)

# Reduce APScheduler logging - only show warnings and errors
logging.getLogger('apscheduler').setLevel(logging.WARNING)
logging.getLogger('apscheduler.executors.default').setLevel(logging.ERROR)
logging.getLogger('apscheduler.scheduler').setLevel(logging.WARNING)


# --- App Initialization ---
app = Flask(__name__)
app.config['SECRET_KEY'] = Config.SECRET_KEY
app.config['DEBUG'] = Config.DEBUG
app.config['TESTING'] = Config.TESTING
app.config['DATABASE_PATH'] = Config.DATABASE_PATH
app.config['MAX_ROWS_PER_REQUEST'] = Config.MAX_ROWS_PER_REQUEST
app.config['RATELIMIT_ENABLED'] = Config.RATELIMIT_ENABLED

# --- CORS: Allow configurable cross-origin requests ---
CORS(app, resources={r"/api/*": {"origins": "*"}})

# --- Rate Limiting: Protect against brute-force attacks ---
limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    default_limits=[Config.RATE_LIMIT_API],
    storage_uri="memory://"
)

ATTENDANCE_STATUSES = ('Present', 'Absent')
COMPLAINT_STATUSES = ('New', 'In Progress', 'Resolved', 'Closed')
TEST_TYPES = ('Midterm-1', 'Midterm-2', 'Terminal-1', 'Terminal-2', 'Monthly')
ADVANCE_DECISIONS = ('approved', 'rejected')


# --- Security Headers Middleware ---
@app.after_request
def add_security_headers(response):
    """Add security headers to every response for production safety."""
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'SAMEORIGIN'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    if not Config.DEBUG:
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    return response


# --- Input Sanitization Helper ---
def sanitize_input(value):
    """Sanitize user input to prevent XSS attacks."""
    if value is None:
        return None
    if isinstance(value, str):
        return html_module.escape(value.strip())
    return value


# --- Password Hashing Helpers (bcrypt) ---
def hash_password(password):
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password, hashed):
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        return False


# --- Request/Response Logging Middleware ---
SKIP_LOG_PATHS = ['/api/health']


@app.before_request
def log_request_info():
    """Log every incoming request with method, path, and client IP."""
    if request.path in SKIP_LOG_PATHS:
        return
    request._start_time = time.time()
    logger.info(f"[REQUEST] {request.method} {request.path} - Client: {request.remote_addr}")


@app.after_request
def log_response_info(response):
    """Log non-200 responses and slow requests."""
    if request.path in SKIP_LOG_PATHS:
        return response
    duration = 0
    if hasattr(request, '_start_time'):
        duration = (time.time() - request._start_time) * 1000  # ms
    if response.status_code != 200 or duration > 500:
        logger.info(f"[RESPONSE] {request.method} {request.path} - Status: {response.status_code} - {duration:.0f}ms")
    return response


# --- Store & Token Helper Functions ---

def get_client():
    """Store client for the configured database, capped at the per-request row limit."""
    return BackendClient(app.config['DATABASE_PATH'], max_rows=app.config['MAX_ROWS_PER_REQUEST'])


def school_today():
    """Today's date in the school's timezone."""
    now = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=Config.UTC_OFFSET_HOURS)
    return now.date()


def utc_now():
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec='seconds')


def token_required(f):
    """Checks for a valid JWT in the "Authorization: Bearer <token>" header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = None
        parts = request.headers.get('Authorization', '').split(" ")
        if len(parts) == 2 and parts[0] == 'Bearer':
            token = parts[1]

        if not token:
            return jsonify({'message': 'Authorization Token is missing!'}), 401

        try:
            data = jwt.decode(token, app.config['SECRET_KEY'], algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            return jsonify({'message': 'Token has expired!'}), 401
        except jwt.InvalidTokenError:
            return jsonify({'message': 'Token is invalid!'}), 401

        return f(data, *args, **kwargs)
    return decorated


def admin_required(f):
    @wraps(f)
    @token_required
    def decorated(user_data, *args, **kwargs):
        if user_data.get('role') != 'admin':
            logger.warning(f"Admin route refused - UserID: {user_data.get('user_id')}, Path: {request.path}")
            return jsonify({'message': 'Admin access required'}), 403
        return f(user_data, *args, **kwargs)
    return decorated


# --- Input Validation Helpers ---
class ApiError(Exception):
    """Bad request data; answered as {"error": message} with `status_code`."""

    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.status_code = status_code


def validate_required_fields(data, required_fields):
    """
    Validates that request data contains all required fields and they're not empty.

    Returns:
        (is_valid, error_message) tuple
    """
    if not data:
        return False, "No data provided in request body"

    for field in required_fields:
        if field not in data or data[field] is None:
            return False, f"Missing required field: '{field}'"
        if not str(data[field]).strip():
            return False, f"Field '{field}' cannot be empty"

    return True, None


def require_fields(data, required_fields):
    valid, error = validate_required_fields(data, required_fields)
    if not valid:
        logger.warning(f"{request.method} {request.path} rejected - {error}")
        raise ApiError(error)


def date_arg(value, field, default=None):
    if value in (None, ''):
        if default is not None:
            return default
        raise ApiError(f"Missing required field: '{field}'")
    try:
        return datetime.date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ApiError(f"Field '{field}' must be a date (YYYY-MM-DD)")


def int_arg(value, field, default=None):
    if value in (None, ''):
        if default is not None:
            return default
        raise ApiError(f"Missing required field: '{field}'")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ApiError(f"Field '{field}' must be a whole number")


def int_list(value, field):
    """Accepts a list or a comma separated string of ids."""
    if value in (None, ''):
        return []
    if isinstance(value, str):
        value = [v for v in value.split(',') if v.strip()]
    if not isinstance(value, list):
        raise ApiError(f"Field '{field}' must be a list of ids")
    return [int_arg(v, field) for v in value]


def amount_arg(value, field):
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        raise ApiError(f"Field '{field}' must be a number")


# --- Error Handlers ---
@app.errorhandler(ApiError)
def handle_api_error(e):
    return jsonify({"error": str(e)}), e.status_code


@app.errorhandler(fees.FeeError)
def handle_fee_error(e):
    logger.warning(f"Fee request refused - {request.path}: {e}")
    return jsonify({"error": str(e)}), e.status_code


@app.errorhandler(BackendError)
def handle_backend_error(e):
    if e.code == 'unique_violation':
        return jsonify({"error": "Record already exists", "detail": str(e)}), 409
    if e.code == 'not_found':
        return jsonify({"error": "Record not found"}), 404
    logger.error(f"Store error on {request.method} {request.path}: {e}", exc_info=True)
    return jsonify({'message': 'Internal Server Error', 'error': str(e)}), 500


# --- Health Check Endpoint (for monitoring and cloud deployment) ---
@app.route('/api/health', methods=['GET'])
@limiter.exempt
def health_check():
    """Server status and store connectivity."""
    status = {
        "status": "healthy",
        "version": "1.0.0",
        "environment": "production" if not Config.DEBUG else "development",
        "database": "unknown"
    }

    try:
        get_client().ping()
        status["database"] = "connected"
    except BackendError as e:
        status["status"] = "degraded"
        status["database"] = f"error: {str(e)}"
        logger.error(f"Health check - Database error: {e}")

    http_code = 200 if status["status"] == "healthy" else 503
    return jsonify(status), http_code


# =================================================================
#   AUTH & STAFF
# =================================================================

@app.route('/api/login', methods=['POST'])
@limiter.limit(Config.RATE_LIMIT_LOGIN)
def login():
    """Handles a staff or admin login request."""
    data = request.get_json(silent=True)
    if not data or not data.get('email') or not data.get('password'):
        logger.warning("Login failed - Missing email or password")
        return jsonify({"message": "Email and password are required"}), 400

    email = sanitize_input(data['email'])
    logger.info(f"Login attempt - Email: {email}")

    profile = get_client().table('profiles').eq('email', email).maybe_single()

    if profile and verify_password(data['password'], profile['password']):
        token = jwt.encode({
            'user_id': profile['id'],
            'role': profile['role'],
            'exp': datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=Config.TOKEN_HOURS)
        }, app.config['SECRET_KEY'], algorithm="HS256")
        logger.info(f"Login successful - Email: {email}, UserID: {profile['id']}")
        return jsonify({'token': token, 'role': profile['role'], 'user_id': profile['id']})

    logger.warning(f"Login failed - Invalid credentials for: {email}")
    return jsonify({"message": "Invalid credentials"}), 401


@app.route('/api/staff', methods=['GET'])
@token_required
def list_staff(user_data):
    rows = fetch_all(get_client().table('profiles').select('id', 'email', 'role').order('email'))
    return jsonify(rows)


@app.route('/api/staff', methods=['POST'])
@admin_required
def create_staff(user_data):
    data = request.get_json(silent=True)
    require_fields(data, ['email', 'password'])
    role = data.get('role', 'staff')
    if role not in ('staff', 'admin'):
        raise ApiError("Role must be 'staff' or 'admin'")

    try:
        profile = get_client().table('profiles').insert({
            'email': sanitize_input(data['email']),
            'password': hash_password(data['password']),
            'role': role,
        })[0]
    except BackendError as e:
        if e.code != 'unique_violation':
            raise
        logger.error(f"Staff creation failed - Duplicate email: {data['email']}")
        return jsonify({"error": "A user with that email already exists"}), 409

    logger.info(f"Staff created - Email: {profile['email']}, Role: {role}")
    return jsonify({"status": "success", "id": profile['id']}), 201


# =================================================================
#   CLASSES & STUDENTS
# =================================================================

@app.route('/api/classes', methods=['GET', 'POST'])
@token_required
def manage_classes(user_data):
    client = get_client()
    if request.method == 'GET':
        return jsonify(fetch_all(client.table('classes').order('name')))

    data = request.get_json(silent=True)
    require_fields(data, ['name'])
    row = client.table('classes').insert({
        'name': sanitize_input(data['name']),
        'description': sanitize_input(data.get('description')),
    })[0]
    logger.info(f"Class created - Name: {row['name']}")
    return jsonify({"status": "success", "class": row}), 201


STUDENT_FIELDS = ('name', 'fathername', 'mobilenumber', 'dob', 'address', 'gender',
                  'class_id', 'monthly_fee', 'joining_date')


@app.route('/api/students', methods=['GET'])
@token_required
def list_students(user_data):
    query = get_client().table('students').order('name')
    if request.args.get('class_id'):
        query.eq('class_id', int_arg(request.args['class_id'], 'class_id'))
    if request.args.get('include_inactive', 'false').lower() != 'true':
        query.eq('status', 'active')
    if request.args.get('search'):
        query.ilike('name', f"%{request.args['search'].strip()}%")
    return jsonify(fetch_all(query, page_size=Config.FETCH_PAGE_SIZE, order_key='studentid'))


@app.route('/api/students', methods=['POST'])
@token_required
def admit_student(user_data):
    """
    New admission. An optional "invoice" object
    ({admission_fee, annual_charges, stationery_charges, discount, invoice_date})
    also raises the admission invoice.
    """
    data = request.get_json(silent=True)
    require_fields(data, ['studentid', 'name', 'class_id'])

    client = get_client()
    student = {
        'studentid': int_arg(data['studentid'], 'studentid'),
        'class_id': int_arg(data['class_id'], 'class_id'),
        'monthly_fee': amount_arg(data.get('monthly_fee'), 'monthly_fee'),
        'joining_date': date_arg(data.get('joining_date'), 'joining_date', default=school_today()).isoformat(),
        'status': 'active',
    }
    for field in ('name', 'fathername', 'mobilenumber', 'dob', 'address', 'gender'):
        student[field] = sanitize_input(data.get(field))

    try:
        stored = client.table('students').insert(student)[0]
    except BackendError as e:
        if e.code != 'unique_violation':
            raise
        logger.error(f"Admission failed - Duplicate student ID: {student['studentid']}")
        return jsonify({"error": f"Student ID {student['studentid']} already exists"}), 409

    invoice = None
    invoice_data = data.get('invoice')
    if isinstance(invoice_data, dict):
        invoice = fees.create_admission_invoice(
            client, stored,
            admission_fee=amount_arg(invoice_data.get('admission_fee'), 'admission_fee'),
            annual_charges=amount_arg(invoice_data.get('annual_charges'), 'annual_charges'),
            stationery_charges=amount_arg(invoice_data.get('stationery_charges'), 'stationery_charges'),
            discount=amount_arg(invoice_data.get('discount'), 'discount'),
            invoice_date=date_arg(invoice_data.get('invoice_date'), 'invoice_date', default=school_today()),
        )

    logger.info(f"Student admitted - ID: {stored['studentid']}, Name: {stored['name']}, "
                f"Invoice: {invoice['id'] if invoice else 'none'}")
    return jsonify({"status": "success", "student": stored, "invoice": invoice}), 201


@app.route('/api/students/<int:studentid>', methods=['PUT'])
@token_required
def update_student(user_data, studentid):
    data = request.get_json(silent=True) or {}
    values = {}
    for field in STUDENT_FIELDS:
        if field not in data:
            continue
        if field == 'class_id':
            values[field] = int_arg(data[field], field)
        elif field == 'monthly_fee':
            values[field] = amount_arg(data[field], field)
        else:
            values[field] = sanitize_input(data[field])
    if not values:
        raise ApiError("No student fields to update")

    if get_client().table('students').eq('studentid', studentid).update(values) == 0:
        return jsonify({"message": "Student not found"}), 404
    logger.info(f"Student updated - ID: {studentid}, Fields: {', '.join(values)}")
    return jsonify({"message": "Operation successful."})


def _set_student_status(studentid, status):
    if get_client().table('students').eq('studentid', studentid).update({'status': status}) == 0:
        return jsonify({"message": "Student not found"}), 404
    logger.info(f"Student status changed - ID: {studentid}, Status: {status}")
    return jsonify({"message": "Operation successful.", "status": status})


@app.route('/api/students/<int:studentid>/leave', methods=['POST'])
@token_required
def student_leave(user_data, studentid):
    return _set_student_status(studentid, 'inactive')


@app.route('/api/students/<int:studentid>/reactivate', methods=['POST'])
@token_required
def student_reactivate(user_data, studentid):
    return _set_student_status(studentid, 'active')


def _bulk_update(data, values, action):
    studentids = int_list((data or {}).get('studentids'), 'studentids')
    if not studentids:
        raise ApiError("Select at least one student")
    updated = 0
    client = get_client()
    for i in range(0, len(studentids), Config.IN_FILTER_CHUNK_SIZE):
        updated += client.table('students').in_('studentid', studentids[i:i + Config.IN_FILTER_CHUNK_SIZE]).update(values)
    logger.info(f"Bulk {action} - Students: {updated}")
    return jsonify({"status": "success", "updated": updated})


@app.route('/api/students/bulk/move', methods=['POST'])
@token_required
def bulk_move_students(user_data):
    data = request.get_json(silent=True)
    require_fields(data, ['class_id'])
    return _bulk_update(data, {'class_id': int_arg(data['class_id'], 'class_id')}, 'class move')


@app.route('/api/students/bulk/fee', methods=['POST'])
@token_required
def bulk_update_fee(user_data):
    data = request.get_json(silent=True)
    require_fields(data, ['monthly_fee'])
    return _bulk_update(data, {'monthly_fee': amount_arg(data['monthly_fee'], 'monthly_fee')}, 'fee update')


@app.route('/api/students/bulk/clear', methods=['POST'])
@token_required
def bulk_clear_students(user_data):
    data = request.get_json(silent=True) or {}
    return _bulk_update(data, {'clear': 1 if data.get('clear', True) else 0}, 'clearance')


# =================================================================
#   ATTENDANCE
# =================================================================

def _active_students(client, class_id):
    return fetch_all(
        client.table('students').eq('class_id', class_id).eq('status', 'active').order('name'),
        page_size=Config.FETCH_PAGE_SIZE,
        order_key='studentid'
    )


def _attendance_report(client, class_id, start, end):
    rows = fetch_all(
        client.table('attendance')
        .select('studentid', 'date', 'status')
        .eq('class_id', class_id)
        .gte('date', start.isoformat())
        .lte('date', end.isoformat()),
        page_size=Config.FETCH_PAGE_SIZE
    )
    student_ids = list({row['studentid'] for row in rows})
    students = fetch_in_chunks(client, 'students', 'studentid', student_ids,
                               chunk_size=Config.IN_FILTER_CHUNK_SIZE, order_key='studentid')
    students_by_id = {s['studentid']: s for s in students}
    summaries, overall = analytics.summarize_attendance(rows, students_by_id)
    return rows, summaries, overall


def _report_range():
    class_id = int_arg(request.args.get('class_id'), 'class_id')
    start = date_arg(request.args.get('start'), 'start')
    end = date_arg(request.args.get('end'), 'end')
    if start > end:
        raise ApiError("Start date must be on or before end date")
    return class_id, start, end


@app.route('/api/attendance/<int:class_id>', methods=['POST'])
@token_required
def mark_attendance(user_data, class_id):
    """
    Save one day's attendance for a class, replacing anything already saved
    for that day. Every active student must be Present or Absent.
    """
    data = request.get_json(silent=True)
    require_fields(data, ['date', 'records'])
    day = date_arg(data['date'], 'date')
    if not isinstance(data['records'], list):
        raise ApiError("Field 'records' must be a list")

    client = get_client()
    students = _active_students(client, class_id)
    by_id = {s['studentid']: s for s in students}

    statuses = {}
    for record in data['records']:
        if not isinstance(record, dict):
            raise ApiError("Each attendance record must be an object with 'studentid' and 'status'")
        sid = int_arg(record.get('studentid'), 'studentid')
        if sid not in by_id:
            raise ApiError(f"Student {sid} is not an active student of this class")
        statuses[sid] = record.get('status')

    unmarked = [s['name'] for s in students if statuses.get(s['studentid']) not in ATTENDANCE_STATUSES]
    if unmarked:
        logger.warning(f"Attendance save rejected - ClassID: {class_id}, Unmarked: {len(unmarked)}")
        return jsonify({"error": "Every student must be marked Present or Absent", "unmarked": unmarked}), 400

    rows = [
        {'studentid': sid, 'class_id': class_id, 'date': day.isoformat(), 'status': status}
        for sid, status in statuses.items()
    ]
    absent = [by_id[sid] for sid, status in statuses.items() if status == 'Absent']
    queued = 0

    # The day is replaced as a whole or not at all
    with client.transaction():
        client.table('attendance').eq('class_id', class_id).eq('date', day.isoformat()).delete()
        insert_chunked(client, 'attendance', rows, chunk_size=Config.INSERT_CHUNK_SIZE)

        if data.get('notify_absentees', True):
            queued = outbox.queue_messages(client, [
                {
                    'number': s['mobilenumber'],
                    'text': templates.absentee_message(s.get('fathername') or 'Parent', s['name'], day),
                    'student_id': s['studentid'],
                    'class_id': class_id,
                }
                for s in absent if s.get('mobilenumber')
            ], chunk_size=Config.INSERT_CHUNK_SIZE)

    logger.info(f"Attendance saved - ClassID: {class_id}, Date: {day}, Records: {len(rows)}, "
                f"Absent: {len(absent)}, Messages: {queued}")
    return jsonify({"status": "success", "saved": len(rows), "absent": len(absent), "messages_queued": queued})


@app.route('/api/attendance/<int:class_id>', methods=['GET'])
@token_required
def attendance_day_sheet(user_data, class_id):
    day = date_arg(request.args.get('date'), 'date', default=school_today())
    client = get_client()
    students = _active_students(client, class_id)
    rows = fetch_all(
        client.table('attendance').eq('class_id', class_id).eq('date', day.isoformat()),
        page_size=Config.FETCH_PAGE_SIZE
    )
    return jsonify(analytics.merge_day_sheet(students, rows, day.isoformat()))


@app.route('/api/attendance/report', methods=['GET'])
@token_required
def attendance_report(user_data):
    class_id, start, end = _report_range()
    _, summaries, overall = _attendance_report(get_client(), class_id, start, end)
    return jsonify({
        "class_id": class_id,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "students": summaries,
        "overall_percentage": round(overall, 2),
        "at_risk": analytics.get_at_risk_students(
            summaries, MINIMUM_ATTENDANCE_PERCENTAGE, ATTENDANCE_WARNING_THRESHOLD),
    })


@app.route('/api/attendance/report/send', methods=['POST'])
@token_required
def send_attendance_report(user_data):
    data = request.get_json(silent=True)
    require_fields(data, ['class_id', 'start', 'end'])
    class_id = int_arg(data['class_id'], 'class_id')
    start = date_arg(data['start'], 'start')
    end = date_arg(data['end'], 'end')

    client = get_client()
    _, summaries, _ = _attendance_report(client, class_id, start, end)
    messages = [
        {
            'number': s['mobilenumber'],
            'text': templates.attendance_report_message(s, start, end),
            'student_id': s['studentid'],
            'class_id': class_id,
        }
        for s in summaries if (s.get('mobilenumber') or '').strip()
    ]
    if not messages:
        return jsonify({"error": "No students with mobile numbers in this report"}), 400

    queued = outbox.queue_messages(client, messages, chunk_size=Config.INSERT_CHUNK_SIZE)
    logger.info(f"Attendance report queued - ClassID: {class_id}, Messages: {queued}")
    return jsonify({"status": "success", "messages_queued": queued})


@app.route('/api/attendance/report/export', methods=['GET'])
@token_required
def export_attendance_report(user_data):
    class_id, start, end = _report_range()
    client = get_client()
    _, summaries, overall = _attendance_report(client, class_id, start, end)
    klass = client.table('classes').eq('id', class_id).maybe_single() or {}
    class_name = klass.get('name', str(class_id))

    stream = exports.attendance_report_workbook(summaries, overall, class_name, start, end)
    logger.info(f"Attendance export complete - ClassID: {class_id}, Students: {len(summaries)}")
    return send_file(
        stream,
        as_attachment=True,
        download_name=f"Attendance_Report_{class_name}_{start}_{end}.xlsx",
        mimetype=exports.XLSX_MIMETYPE
    )


@app.route('/api/attendance/trend/<int:class_id>', methods=['GET'])
@token_required
def attendance_trend(user_data, class_id):
    days = int_arg(request.args.get('days'), 'days', default=30)
    end = school_today()
    start = end - datetime.timedelta(days=days)
    rows = fetch_all(
        get_client().table('attendance')
        .select('studentid', 'date', 'status')
        .eq('class_id', class_id)
        .gte('date', start.isoformat())
        .lte('date', end.isoformat()),
        page_size=Config.FETCH_PAGE_SIZE
    )
    daily = analytics.daily_attendance(rows)
    return jsonify({
        "days": daily,
        "graph": analytics.generate_attendance_trend_graph(daily, MINIMUM_ATTENDANCE_PERCENTAGE),
    })


@app.route('/api/attendance/status/<int:studentid>', methods=['GET'])
@token_required
def student_attendance_status(user_data, studentid):
    query = get_client().table('attendance').select('id', 'status').eq('studentid', studentid)
    if request.args.get('start'):
        query.gte('date', date_arg(request.args['start'], 'start').isoformat())
    if request.args.get('end'):
        query.lte('date', date_arg(request.args['end'], 'end').isoformat())
    rows = fetch_all(query, page_size=Config.FETCH_PAGE_SIZE)

    present = sum(1 for r in rows if r['status'] == 'Present')
    result = analytics.calculate_status_and_improvement(
        present, len(rows), MINIMUM_ATTENDANCE_PERCENTAGE, ATTENDANCE_WARNING_THRESHOLD)
    result.update({"studentid": studentid, "present": present, "total_days": len(rows)})
    return jsonify(result)


# =================================================================
#   FEES
# =================================================================

@app.route('/api/fees/eligible', methods=['GET'])
@token_required
def eligible_for_invoice(user_data):
    class_id = int_arg(request.args.get('class_id'), 'class_id')
    invoice_date = date_arg(request.args.get('invoice_date'), 'invoice_date', default=school_today())
    eligible, excluded = fees.eligible_students(get_client(), class_id, invoice_date)
    return jsonify({"students": eligible, "already_invoiced": excluded})


@app.route('/api/fees/generate', methods=['POST'])
@admin_required
def generate_invoices(user_data):
    data = request.get_json(silent=True)
    require_fields(data, ['student_ids', 'invoice_date'])
    student_ids = int_list(data['student_ids'], 'student_ids')
    if not student_ids:
        raise ApiError("Select at least one student")

    result = fees.generate_invoices(
        get_client(),
        student_ids,
        invoice_date=date_arg(data['invoice_date'], 'invoice_date'),
        due_date=date_arg(data.get('due_date'), 'due_date', default=date_arg(data['invoice_date'], 'invoice_date')),
        annual_charges=amount_arg(data.get('annual_charges'), 'annual_charges'),
        stationery_charges=amount_arg(data.get('stationery_charges'), 'stationery_charges'),
        fee_label=sanitize_input(data.get('fee_label')) or None,
    )
    return jsonify(dict(result, status="success"))


def _listing_filters(args):
    filters = {'search': args.get('search')}
    if args.get('class_id'):
        filters['class_id'] = int_arg(args['class_id'], 'class_id')
    if args.get('start'):
        filters['start_date'] = date_arg(args['start'], 'start')
    if args.get('end'):
        filters['end_date'] = date_arg(args['end'], 'end')
    return filters


@app.route('/api/fees/invoices', methods=['GET'])
@token_required
def list_invoices(user_data):
    status = request.args.get('status')
    if status and status not in fees.INVOICE_STATUSES:
        raise ApiError(f"Status must be one of {', '.join(fees.INVOICE_STATUSES)}")
    page = int_arg(request.args.get('page'), 'page', default=0)
    return jsonify(fees.list_invoices(
        get_client(), page=page, page_size=Config.LIST_PAGE_SIZE, status=status,
        **_listing_filters(request.args)
    ))


@app.route('/api/fees/invoices/<int:invoice_id>', methods=['GET'])
@token_required
def get_invoice(user_data, invoice_id):
    state = fees.invoice_with_balances(get_client(), invoice_id)
    if state['superseded_by']:
        return jsonify({
            "error": f"Invoice #{invoice_id} has been superseded by invoice #{state['superseded_by']}",
            "superseded_by": state['superseded_by'],
        }), 409
    return jsonify(state)


@app.route('/api/fees/invoices/<int:invoice_id>/pay', methods=['POST'])
@token_required
def pay_invoice(user_data, invoice_id):
    """Body: {"amounts": {detail_id: amount}, "notes": "", "payment_method": "cash"}"""
    data = request.get_json(silent=True)
    require_fields(data, ['amounts'])
    if not isinstance(data['amounts'], dict):
        raise ApiError("Field 'amounts' must map invoice line ids to amounts")

    receipt = fees.pay_invoice(
        get_client(), invoice_id, data['amounts'],
        notes=sanitize_input(data.get('notes')) or '',
        payment_method=sanitize_input(data.get('payment_method')) or 'cash',
    )
    return jsonify(dict(receipt, message="Payment recorded"))


@app.route('/api/fees/receipts', methods=['GET'])
@token_required
def list_receipts(user_data):
    page = int_arg(request.args.get('page'), 'page', default=0)
    return jsonify(fees.list_receipts(
        get_client(), page=page, page_size=Config.LIST_PAGE_SIZE, **_listing_filters(request.args)))


@app.route('/api/fees/receipts/export', methods=['GET'])
@token_required
def export_receipts(user_data):
    report = fees.collection_report(get_client(), **_listing_filters(request.args))
    stream = exports.receipts_workbook(report['payments'])
    logger.info(f"Receipts export complete - Payments: {len(report['payments'])}")
    return send_file(
        stream,
        as_attachment=True,
        download_name=f"Receipts_{school_today()}.xlsx",
        mimetype=exports.XLSX_MIMETYPE
    )


@app.route('/api/fees/collection', methods=['GET'])
@token_required
def collection_summary(user_data):
    report = fees.collection_report(get_client(), **_listing_filters(request.args))
    report['payment_count'] = len(report['payments'])
    if request.args.get('include_payments', 'false').lower() != 'true':
        report.pop('payments')
    return jsonify(report)


def _defaulters_from(source):
    client = get_client()
    class_ids = int_list(source.get('class_ids'), 'class_ids')
    if not class_ids:
        class_ids = [c['id'] for c in fetch_all(client.table('classes').select('id'))]
    start = date_arg(source.get('start'), 'start')
    end = date_arg(source.get('end'), 'end')
    return client, fees.find_defaulters(
        client, class_ids, start, end, today=school_today(),
        chunk_size=Config.IN_FILTER_CHUNK_SIZE, page_size=Config.FETCH_PAGE_SIZE
    )


@app.route('/api/fees/defaulters', methods=['GET'])
@token_required
def list_defaulters(user_data):
    _, defaulters = _defaulters_from(request.args)
    return jsonify({
        "defaulters": defaulters,
        "total_pending": sum(d['total_pending'] for d in defaulters),
        "count": len(defaulters),
    })


@app.route('/api/fees/defaulters/export', methods=['GET'])
@token_required
def export_defaulters(user_data):
    _, defaulters = _defaulters_from(request.args)
    stream = exports.defaulters_workbook(defaulters)
    logger.info(f"Defaulters export complete - Students: {len(defaulters)}")
    return send_file(
        stream,
        as_attachment=True,
        download_name=f"Defaulters_{school_today()}.xlsx",
        mimetype=exports.XLSX_MIMETYPE
    )


@app.route('/api/fees/reminders', methods=['POST'])
@token_required
def send_fee_reminders(user_data):
    """Queue a dues notice for each selected defaulter (all of them when none are selected)."""
    data = request.get_json(silent=True)
    require_fields(data, ['start', 'end'])
    client, defaulters = _defaulters_from(data)

    selected = set(int_list(data.get('student_ids'), 'student_ids'))
    if selected:
        defaulters = [d for d in defaulters if d['studentid'] in selected]

    messages = [
        {
            'number': d['mobilenumber'],
            'text': templates.fee_reminder_message(d),
            'student_id': d['studentid'],
            'class_id': d['class_id'],
        }
        for d in defaulters if d.get('mobilenumber')
    ]
    if not messages:
        return jsonify({"error": "No defaulters with mobile numbers selected"}), 400

    queued = outbox.queue_messages(client, messages, chunk_size=Config.INSERT_CHUNK_SIZE)
    logger.info(f"Fee reminders queued - Messages: {queued}")
    return jsonify({"status": "success", "messages_queued": queued})


# =================================================================
#   TESTS, MARKS & RESULTS
# =================================================================

@app.route('/api/tests', methods=['GET'])
@token_required
def list_tests(user_data):
    query = get_client().table('tests').order('date', desc=True)
    if request.args.get('class_id'):
        query.eq('class_id', int_arg(request.args['class_id'], 'class_id'))
    return jsonify(fetch_all(query, page_size=Config.FETCH_PAGE_SIZE))


@app.route('/api/tests', methods=['POST'])
@token_required
def create_test(user_data):
    data = request.get_json(silent=True)
    require_fields(data, ['test_name', 'test_type', 'subject', 'class_id', 'date'])
    if data['test_type'] not in TEST_TYPES:
        raise ApiError(f"Test type must be one of {', '.join(TEST_TYPES)}")

    client = get_client()
    class_id = int_arg(data['class_id'], 'class_id')
    klass = client.table('classes').eq('id', class_id).maybe_single()
    if klass is None:
        return jsonify({"message": "Class not found"}), 404

    test = client.table('tests').insert({
        'test_name': sanitize_input(data['test_name']),
        'test_type': data['test_type'],
        'subject': sanitize_input(data['subject']),
        'class_id': class_id,
        'class_name': klass['name'],
        'date': date_arg(data['date'], 'date').isoformat(),
    })[0]
    logger.info(f"Test created - ID: {test['id']}, Name: {test['test_name']}, ClassID: {class_id}")
    return jsonify({"status": "success", "test": test}), 201


@app.route('/api/tests/<int:test_id>', methods=['DELETE'])
@token_required
def delete_test(user_data, test_id):
    client = get_client()
    removed_marks = client.table('marks').eq('test_id', test_id).delete()
    if client.table('tests').eq('id', test_id).delete() == 0:
        return jsonify({"message": "Test not found"}), 404
    logger.info(f"Test deleted - ID: {test_id}, Marks removed: {removed_marks}")
    return jsonify({"message": "Operation successful."})


@app.route('/api/tests/<int:test_id>/marks', methods=['GET'])
@token_required
def get_marks(user_data, test_id):
    client = get_client()
    test = client.table('tests').eq('id', test_id).maybe_single()
    if test is None:
        return jsonify({"message": "Test not found"}), 404

    students = _active_students(client, test['class_id'])
    marks = {m['studentid']: m for m in fetch_all(client.table('marks').eq('test_id', test_id))}
    sheet = []
    for s in students:
        mark = marks.get(s['studentid'])
        sheet.append({
            'studentid': s['studentid'],
            'name': s['name'],
            'fathername': s.get('fathername'),
            'obtained_marks': mark['obtained_marks'] if mark else None,
            'total_marks': mark['total_marks'] if mark else None,
        })
    return jsonify({"test": test, "marks": sheet})


@app.route('/api/tests/<int:test_id>/marks', methods=['POST'])
@token_required
def save_marks(user_data, test_id):
    """Body: {"total_marks": 50, "marks": [{"studentid": 1, "obtained_marks": 40}, ...]}"""
    data = request.get_json(silent=True)
    require_fields(data, ['total_marks', 'marks'])
    total = analytics.parse_total_marks(data['total_marks'])
    if total is None:
        raise ApiError("Total marks must be a number of 0 or more")
    if not isinstance(data['marks'], list):
        raise ApiError("Field 'marks' must be a list")
    if not all(isinstance(entry, dict) for entry in data['marks']):
        raise ApiError("Each marks entry must be an object with 'studentid' and 'obtained_marks'")

    client = get_client()
    test = client.table('tests').eq('id', test_id).maybe_single()
    if test is None:
        return jsonify({"message": "Test not found"}), 404

    rows = [
        {
            'test_id': test_id,
            'studentid': int_arg(entry.get('studentid'), 'studentid'),
            'class_id': test['class_id'],
            'total_marks': total,
            'obtained_marks': analytics.clamp_obtained(entry.get('obtained_marks'), total),
        }
        for entry in data['marks']
    ]
    saved = client.table('marks').upsert(rows, on_conflict='test_id,studentid')
    logger.info(f"Marks saved - TestID: {test_id}, Rows: {saved}")
    return jsonify({"status": "success", "saved": saved})


@app.route('/api/results/class/<int:class_id>', methods=['GET'])
@token_required
def class_results(user_data, class_id):
    client = get_client()
    query = client.table('tests').eq('class_id', class_id)
    if request.args.get('start'):
        query.gte('date', date_arg(request.args['start'], 'start').isoformat())
    if request.args.get('end'):
        query.lte('date', date_arg(request.args['end'], 'end').isoformat())
    tests = fetch_all(query, page_size=Config.FETCH_PAGE_SIZE)
    tests_by_id = {t['id']: t for t in tests}

    marks = fetch_in_chunks(client, 'marks', 'test_id', list(tests_by_id),
                            chunk_size=Config.IN_FILTER_CHUNK_SIZE, page_size=Config.FETCH_PAGE_SIZE)
    student_ids = list({m['studentid'] for m in marks})
    students = fetch_in_chunks(client, 'students', 'studentid', student_ids,
                               chunk_size=Config.IN_FILTER_CHUNK_SIZE, order_key='studentid')
    results = analytics.build_class_results(marks, tests_by_id, {s['studentid']: s for s in students})
    return jsonify({"class_id": class_id, "tests": len(tests), "results": results})


# =================================================================
#   COMPLAINTS
# =================================================================

def _profile_emails(client, ids):
    ids = [i for i in set(ids) if i]
    return {p['id']: p['email'] for p in fetch_in_chunks(client, 'profiles', 'id', ids, columns=('id', 'email'))}


@app.route('/api/complaints', methods=['GET'])
@token_required
def list_complaints(user_data):
    status = request.args.get('status')
    client = get_client()
    query = client.table('complaints').order('created_at', desc=True)
    if status and status != 'All':
        if status not in COMPLAINT_STATUSES:
            raise ApiError(f"Status must be one of {', '.join(COMPLAINT_STATUSES)}")
        query.eq('status', status)
    complaints = fetch_all(query, page_size=Config.FETCH_PAGE_SIZE)

    emails = _profile_emails(client, [c['against_user_id'] for c in complaints] +
                             [c['assigned_to_user_id'] for c in complaints])
    students = {s['studentid']: s for s in fetch_in_chunks(
        client, 'students', 'studentid', list({c['student_id'] for c in complaints if c['student_id']}),
        columns=('studentid', 'name', 'class_id'), order_key='studentid')}
    for c in complaints:
        c['student'] = students.get(c['student_id'])
        c['against_user'] = emails.get(c['against_user_id'])
        c['assigned_to'] = emails.get(c['assigned_to_user_id'])
    return jsonify(complaints)


@app.route('/api/complaints', methods=['POST'])
@token_required
def create_complaint(user_data):
    data = request.get_json(silent=True)
    require_fields(data, ['student_id', 'title', 'complaint_text', 'against_user_id', 'assigned_to_user_id'])

    client = get_client()
    student = client.table('students').eq('studentid', int_arg(data['student_id'], 'student_id')).maybe_single()
    if student is None:
        return jsonify({"message": "Student not found"}), 404
    against_id = int_arg(data['against_user_id'], 'against_user_id')
    assigned_id = int_arg(data['assigned_to_user_id'], 'assigned_to_user_id')
    emails = _profile_emails(client, [against_id, assigned_id])

    title = sanitize_input(data['title'])
    text = sanitize_input(data['complaint_text'])
    complaint = client.table('complaints').insert({
        'student_id': student['studentid'],
        'parent_number': student.get('mobilenumber'),
        'title': title,
        'complaint_text': text,
        'status': 'New',
        'against_user_id': against_id,
        'assigned_to_user_id': assigned_id,
        'created_at': utc_now(),
    })[0]

    messages = []
    if student.get('mobilenumber'):
        messages.append({'number': student['mobilenumber'], 'text': templates.complaint_received_message(title)})
        messages.append({'number': student['mobilenumber'], 'text': templates.complaint_assigned_message(title)})
    messages.append({
        'number': Config.ADMIN_NOTIFY_NUMBER,
        'text': templates.complaint_admin_alert(student['name'], title, text,
                                                emails.get(against_id), emails.get(assigned_id)),
    })
    for m in messages:
        m.update(student_id=student['studentid'], class_id=student['class_id'])
    queued = outbox.queue_messages(client, messages, chunk_size=Config.INSERT_CHUNK_SIZE)

    logger.info(f"Complaint lodged - ID: {complaint['id']}, StudentID: {student['studentid']}, Messages: {queued}")
    return jsonify({"status": "success", "complaint": complaint, "messages_queued": queued}), 201


@app.route('/api/complaints/<int:complaint_id>', methods=['PUT'])
@token_required
def update_complaint(user_data, complaint_id):
    data = request.get_json(silent=True) or {}
    client = get_client()
    complaint = client.table('complaints').eq('id', complaint_id).maybe_single()
    if complaint is None:
        return jsonify({"message": "Complaint not found"}), 404

    status = data.get('status', complaint['status'])
    if status not in COMPLAINT_STATUSES:
        raise ApiError(f"Status must be one of {', '.join(COMPLAINT_STATUSES)}")
    notes = sanitize_input(data.get('resolution_notes', complaint['resolution_notes']))
    against_id = int_arg(data.get('against_user_id'), 'against_user_id', default=complaint['against_user_id'] or 0) or None
    assigned_id = int_arg(data.get('assigned_to_user_id'), 'assigned_to_user_id',
                          default=complaint['assigned_to_user_id'] or 0) or None

    client.table('complaints').eq('id', complaint_id).update({
        'status': status,
        'resolution_notes': notes,
        'against_user_id': against_id,
        'assigned_to_user_id': assigned_id,
    })

    student = client.table('students').eq('studentid', complaint['student_id']).maybe_single() or {}
    student_name = student.get('name', '-')
    parent = student.get('mobilenumber') or complaint['parent_number']
    title = complaint['title']
    emails = _profile_emails(client, [complaint['against_user_id'], complaint['assigned_to_user_id'],
                                      against_id, assigned_id])

    messages = []
    if against_id != complaint['against_user_id']:
        messages.append({'number': Config.ADMIN_NOTIFY_NUMBER, 'text': templates.complaint_against_changed_message(
            title, student_name, emails.get(complaint['against_user_id']), emails.get(against_id))})
    if assigned_id != complaint['assigned_to_user_id']:
        messages.append({'number': Config.ADMIN_NOTIFY_NUMBER, 'text': templates.complaint_reassigned_admin_message(
            title, student_name, emails.get(complaint['assigned_to_user_id']), emails.get(assigned_id))})
        if parent:
            messages.append({'number': parent, 'text': templates.complaint_reassigned_parent_message(title)})
    if status != complaint['status'] and status in ('Resolved', 'Closed'):
        if parent:
            messages.append({'number': parent, 'text': templates.complaint_closed_parent_message(title, status, notes)})
        messages.append({'number': Config.ADMIN_NOTIFY_NUMBER, 'text': templates.complaint_closed_admin_message(
            title, student_name, status, notes)})

    for m in messages:
        m.update(student_id=complaint['student_id'], class_id=student.get('class_id'))
    queued = outbox.queue_messages(client, messages, chunk_size=Config.INSERT_CHUNK_SIZE)

    logger.info(f"Complaint updated - ID: {complaint_id}, Status: {status}, Messages: {queued}")
    return jsonify({"status": "success", "messages_queued": queued})


# =================================================================
#   ADMISSION INQUIRIES
# =================================================================

@app.route('/api/inquiries', methods=['GET'])
@token_required
def list_inquiries(user_data):
    status = request.args.get('status')
    query = get_client().table('inquiries').order('id', desc=True)
    if status and status != 'All':
        if status not in admissions.INQUIRY_STATUSES:
            raise ApiError(f"Status must be one of {', '.join(admissions.INQUIRY_STATUSES)}")
        query.eq('status', status)
    inquiries = fetch_all(query, page_size=Config.FETCH_PAGE_SIZE)

    term = request.args.get('search')
    inquiries = [i for i in inquiries if admissions.matches_search(i, term)]
    for inquiry in inquiries:
        inquiry['fee'] = admissions.parse_fee(inquiry['quoted_fee'])

    if request.args.get('grouped', 'false').lower() == 'true':
        return jsonify(admissions.group_by_phone(inquiries))
    return jsonify(inquiries)


@app.route('/api/inquiries', methods=['POST'])
@token_required
def add_family_inquiry(user_data):
    """
    One row per child, sharing the parent's details and quoted fee. A
    single welcome message is queued for the family.
    """
    data = request.get_json(silent=True)
    require_fields(data, ['fathername', 'mobilenumber', 'students'])
    children = data['students']
    if not isinstance(children, list) or not children:
        raise ApiError("Add at least one student to the inquiry")
    if any(not str((child or {}).get('name') or '').strip() for child in children):
        raise ApiError("Every student needs a name")

    today = school_today()
    shared = {
        'fathername': sanitize_input(data['fathername']),
        'mobilenumber': sanitize_input(data['mobilenumber']),
        'address': sanitize_input(data.get('address')),
        'session': sanitize_input(data.get('session')),
        'year': today.year,
        'date': today.isoformat(),
        'quoted_fee': admissions.quoted_fee_json(data.get('quoted_fee')),
        'status': 'Inquiry',
    }
    rows = [
        dict(shared,
             name=sanitize_input(child['name']),
             **{'class': sanitize_input(child.get('class')),
                'previous_school': sanitize_input(child.get('previous_school'))})
        for child in children
    ]

    client = get_client()
    stored = client.table('inquiries').insert(rows)
    outbox.queue_message(
        client, shared['mobilenumber'],
        templates.family_welcome_message(shared['fathername'], [r['name'] for r in stored])
    )
    logger.info(f"Inquiry added - Family: {shared['fathername']}, Children: {len(stored)}")
    return jsonify({"status": "success", "inquiries": stored}), 201


@app.route('/api/inquiries/<int:inquiry_id>/status', methods=['PUT'])
@token_required
def update_inquiry_status(user_data, inquiry_id):
    data = request.get_json(silent=True)
    require_fields(data, ['status'])
    status = data['status']
    if status not in admissions.INQUIRY_STATUSES:
        raise ApiError(f"Status must be one of {', '.join(admissions.INQUIRY_STATUSES)}")

    client = get_client()
    inquiry = client.table('inquiries').eq('id', inquiry_id).maybe_single()
    if inquiry is None:
        return jsonify({"message": "Inquiry not found"}), 404

    values = {'status': status}
    if status == 'Test Scheduled':
        if not data.get('test_date'):
            raise ApiError("A test date is required to schedule the admission test")
        try:
            values['test_date'] = datetime.datetime.fromisoformat(str(data['test_date'])).isoformat()
        except ValueError:
            raise ApiError("Field 'test_date' must be a date and time")
    client.table('inquiries').eq('id', inquiry_id).update(values)

    template_type = admissions.STATUS_TEMPLATES.get(status)
    message = ''
    if template_type:
        message = templates.generate_message_template(template_type, inquiry, {'date': values.get('test_date')})
        if data.get('notify'):
            outbox.queue_message(client, inquiry['mobilenumber'], message)

    logger.info(f"Inquiry status updated - ID: {inquiry_id}, Status: {status}")
    return jsonify({"status": "success", "template_type": template_type, "message": message})


@app.route('/api/inquiries/<int:inquiry_id>/follow-up', methods=['POST'])
@token_required
def follow_up_inquiry(user_data, inquiry_id):
    client = get_client()
    inquiry = client.table('inquiries').eq('id', inquiry_id).maybe_single()
    if inquiry is None:
        return jsonify({"message": "Inquiry not found"}), 404

    text = templates.generate_message_template('FOLLOW_UP', inquiry)
    outbox.queue_message(client, inquiry['mobilenumber'], text)
    count = (inquiry['follow_up_count'] or 0) + 1
    client.table('inquiries').eq('id', inquiry_id).update({'follow_up_count': count})
    logger.info(f"Follow-up queued - InquiryID: {inquiry_id}, Count: {count}")
    return jsonify({"status": "success", "follow_up_count": count})


# =================================================================
#   MESSAGE OUTBOX
# =================================================================

@app.route('/api/messages', methods=['GET'])
@token_required
def list_outbox(user_data):
    class_id = int_arg(request.args.get('class_id'), 'class_id', default=0) or None
    since = request.args.get('since')
    try:
        rows = outbox.list_messages(
            get_client(),
            status=request.args.get('status', 'unsent'),
            class_id=class_id,
            since=date_arg(since, 'since').isoformat() if since else None,
            page_size=Config.FETCH_PAGE_SIZE,
        )
    except ValueError as e:
        raise ApiError(str(e))
    return jsonify(rows)


@app.route('/api/messages/<int:message_id>/sent', methods=['POST'])
@token_required
def mark_message_sent(user_data, message_id):
    if outbox.mark_sent(get_client(), message_id) == 0:
        return jsonify({"message": "Message not found"}), 404
    return jsonify({"message": "Operation successful."})


@app.route('/api/messages/<int:message_id>', methods=['DELETE'])
@token_required
def delete_message(user_data, message_id):
    if outbox.delete_message(get_client(), message_id) == 0:
        return jsonify({"message": "Message not found"}), 404
    return jsonify({"message": "Operation successful."})


def _dispatcher():
    return outbox.OutboxDispatcher(
        get_client(),
        gateway_url=Config.MESSAGE_GATEWAY_URL,
        token=Config.MESSAGE_GATEWAY_TOKEN,
        batch_size=Config.OUTBOX_BATCH_SIZE,
        max_attempts=Config.OUTBOX_MAX_ATTEMPTS,
    )


@app.route('/api/messages/dispatch', methods=['POST'])
@admin_required
def dispatch_messages(user_data):
    """Deliver one batch of queued messages now."""
    logger.info("[OUTBOX] Manual dispatch triggered by admin")
    result = _dispatcher().dispatch_pending()
    status_code = 503 if result['status'] == 'offline' else 200
    return jsonify(result), status_code


# =================================================================
#   NOTICES & CLASS DIARY
# =================================================================

def _class_or_404(client, class_id):
    klass = client.table('classes').eq('id', class_id).maybe_single()
    if klass is None:
        raise ApiError("Class not found", status_code=404)
    return klass


@app.route('/api/notices', methods=['POST'])
@token_required
def send_notice(user_data):
    """
    Personalised notice to selected students of one class.

    Body: {"class_id": 3, "student_ids": [101, 102], "message": "Dear {{fathername}}, ..."}
    Placeholders: {{name}}, {{fathername}}, {{id}}, {{class}}, {{date}}.
    Nothing is queued if any selected student has no mobile number.
    """
    data = request.get_json(silent=True)
    require_fields(data, ['class_id', 'student_ids', 'message'])
    class_id = int_arg(data['class_id'], 'class_id')
    student_ids = int_list(data['student_ids'], 'student_ids')
    if not student_ids:
        raise ApiError("Select at least one student")
    message = str(data['message'])
    if not message.strip():
        raise ApiError("Message cannot be empty")

    client = get_client()
    klass = _class_or_404(client, class_id)
    by_id = {s['studentid']: s for s in _active_students(client, class_id)}

    unknown = [sid for sid in student_ids if sid not in by_id]
    if unknown:
        raise ApiError(f"Students not in this class: {', '.join(str(sid) for sid in unknown)}")

    missing = [f"{by_id[sid]['name']} ({sid})" for sid in student_ids if not by_id[sid].get('mobilenumber')]
    if missing:
        logger.warning(f"Notice rejected - ClassID: {class_id}, Missing numbers: {len(missing)}")
        return jsonify({"error": "Selected students are missing mobile numbers", "missing": missing}), 400

    today = school_today()
    queued = outbox.queue_messages(client, [
        {
            'number': by_id[sid]['mobilenumber'],
            'text': templates.personalise_notice(message, by_id[sid], klass['name'], today),
            'student_id': sid,
            'class_id': class_id,
        }
        for sid in dict.fromkeys(student_ids)
    ], chunk_size=Config.INSERT_CHUNK_SIZE)

    logger.info(f"Notice queued - ClassID: {class_id}, Messages: {queued}")
    return jsonify({"status": "success", "messages_queued": queued})


@app.route('/api/diary', methods=['GET'])
@token_required
def list_diary(user_data):
    day = date_arg(request.args.get('date'), 'date', default=school_today())
    client = get_client()
    query = client.table('diary').eq('date', day.isoformat()).order('created_at', desc=True)
    class_id = int_arg(request.args.get('class_id'), 'class_id', default=0)
    if class_id:
        query.eq('class_id', class_id)
    entries = fetch_all(query, page_size=Config.FETCH_PAGE_SIZE)

    class_names = {c['id']: c['name'] for c in fetch_all(client.table('classes').select('id', 'name'))}
    for entry in entries:
        entry['class_name'] = class_names.get(entry['class_id'])
    return jsonify(entries)


@app.route('/api/diary', methods=['POST'])
@token_required
def add_diary(user_data):
    """Save a class diary entry and queue it to every parent in the class."""
    data = request.get_json(silent=True)
    require_fields(data, ['class_id', 'diary'])
    class_id = int_arg(data['class_id'], 'class_id')
    day = date_arg(data.get('date'), 'date', default=school_today())

    client = get_client()
    klass = _class_or_404(client, class_id)
    text = templates.diary_message(str(data['diary']), klass['name'], day)
    students = _active_students(client, class_id)
    reachable = [s for s in students if s.get('mobilenumber')]

    with client.transaction():
        entry = client.table('diary').insert({
            'class_id': class_id,
            'diary': sanitize_input(text),
            'date': day.isoformat(),
            'created_by': user_data.get('user_id'),
            'created_at': utc_now(),
        })[0]
        queued = outbox.queue_messages(client, [
            {'number': s['mobilenumber'], 'text': text, 'student_id': s['studentid'], 'class_id': class_id}
            for s in reachable
        ], chunk_size=Config.INSERT_CHUNK_SIZE)

    logger.info(f"Diary saved - ClassID: {class_id}, Date: {day}, Messages: {queued}")
    return jsonify({
        "status": "success",
        "diary": entry,
        "messages_queued": queued,
        "without_number": len(students) - len(reachable),
    }), 201


# =================================================================
#   STAFF ADVANCES
# =================================================================

def _with_repayments(client, advances):
    payments = fetch_in_chunks(client, 'staff_advance_payments', 'advance_id', [a['id'] for a in advances],
                               chunk_size=Config.IN_FILTER_CHUNK_SIZE)
    repaid = {}
    for p in payments:
        repaid[p['advance_id']] = repaid.get(p['advance_id'], 0) + p['amount']
    for a in advances:
        a['repaid'] = repaid.get(a['id'], 0)
        a['remaining'] = a['amount'] - a['repaid']
    return advances


@app.route('/api/advances', methods=['GET'])
@token_required
def list_advances(user_data):
    client = get_client()
    query = client.table('staff_advances').order('created_at', desc=True)
    if user_data.get('role') == 'admin':
        if request.args.get('staff_id'):
            query.eq('staff_id', int_arg(request.args['staff_id'], 'staff_id'))
    else:
        query.eq('staff_id', user_data['user_id'])
    if request.args.get('status'):
        query.eq('status', request.args['status'])
    return jsonify(_with_repayments(client, fetch_all(query, page_size=Config.FETCH_PAGE_SIZE)))


@app.route('/api/advances', methods=['POST'])
@token_required
def request_advance(user_data):
    data = request.get_json(silent=True)
    require_fields(data, ['amount'])
    amount = amount_arg(data['amount'], 'amount')
    if amount <= 0:
        raise ApiError("Advance amount must be greater than zero")

    staff_id = user_data['user_id']
    if user_data.get('role') == 'admin' and data.get('staff_id'):
        staff_id = int_arg(data['staff_id'], 'staff_id')

    advance = get_client().table('staff_advances').insert({
        'staff_id': staff_id,
        'amount': amount,
        'reason': sanitize_input(data.get('reason')),
        'status': 'pending',
        'created_at': utc_now(),
    })[0]
    logger.info(f"Advance requested - ID: {advance['id']}, StaffID: {staff_id}, Amount: {amount}")
    return jsonify({"status": "success", "advance": advance}), 201


@app.route('/api/advances/<int:advance_id>/decision', methods=['POST'])
@admin_required
def decide_advance(user_data, advance_id):
    data = request.get_json(silent=True)
    require_fields(data, ['status'])
    if data['status'] not in ADVANCE_DECISIONS:
        raise ApiError("Status must be 'approved' or 'rejected'")

    client = get_client()
    advance = client.table('staff_advances').eq('id', advance_id).maybe_single()
    if advance is None:
        return jsonify({"message": "Advance not found"}), 404
    if advance['status'] != 'pending':
        return jsonify({"error": f"Advance is already {advance['status']}"}), 409

    client.table('staff_advances').eq('id', advance_id).update({
        'status': data['status'],
        'approved_at': utc_now(),
        'approved_by': user_data['user_id'],
    })
    logger.info(f"Advance {data['status']} - ID: {advance_id}, By: {user_data['user_id']}")
    return jsonify({"status": "success", "advance_status": data['status']})


@app.route('/api/advances/<int:advance_id>/payments', methods=['POST'])
@admin_required
def repay_advance(user_data, advance_id):
    data = request.get_json(silent=True)
    require_fields(data, ['amount'])
    amount = amount_arg(data['amount'], 'amount')
    if amount <= 0:
        raise ApiError("Repayment amount must be greater than zero")

    client = get_client()
    advance = client.table('staff_advances').eq('id', advance_id).maybe_single()
    if advance is None:
        return jsonify({"message": "Advance not found"}), 404
    if advance['status'] != 'approved':
        return jsonify({"error": "Only approved advances can be repaid"}), 409

    advance = _with_repayments(client, [advance])[0]
    if amount > advance['remaining'] + fees.OVERPAY_TOLERANCE:
        raise ApiError(f"Repayment exceeds the remaining balance of {advance['remaining']}")

    client.table('staff_advance_payments').insert({
        'advance_id': advance_id,
        'amount': amount,
        'added_by': user_data['user_id'],
        'created_at': utc_now(),
    })
    logger.info(f"Advance repayment - AdvanceID: {advance_id}, Amount: {amount}")
    return jsonify({"status": "success", "remaining": advance['remaining'] - amount})


# =================================================================
#   SCHEDULED OUTBOX DELIVERY
# =================================================================

def dispatch_outbox():
    """Background job: deliver one batch of queued messages."""
    try:
        _dispatcher().dispatch_pending()
    except BackendError as e:
        logger.error(f"Error in dispatch_outbox: {e}", exc_info=True)


if Config.START_SCHEDULER:
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        func=dispatch_outbox,
        trigger="interval",
        seconds=Config.OUTBOX_INTERVAL_SECONDS,
        id='dispatch_outbox',
        name='Deliver queued WhatsApp messages',
        replace_existing=True
    )
    scheduler.start()
    logger.info("Server started - Outbox scheduler active")

    # Ensure scheduler shuts down when app exits
    atexit.register(lambda: scheduler.shutdown())


# =================================================================
#   Server Startup
# =================================================================

if __name__ == '__main__':
    # host='0.0.0.0' makes the server accessible from other devices on your network
    app.run(host=Config.HOST, port=Config.PORT, debug=False, use_reloader=False)
