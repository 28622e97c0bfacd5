# app.py
from functools import wraps
from datetime import datetime, timedelta, timezone
from flask import Flask, request, jsonify, make_response
from flask_cors import CORS
from dotenv import load_dotenv
from collections import defaultdict
from werkzeug.exceptions import HTTPException
import hashlib
import time
import threading
import secrets, requests
import jwt
import re
import os
import uuid
from markupsafe import escape

from betting import (
    BET_TYPES,
    MAX_SELECTIONS,
    TERMINAL_RESULTS,
    BettingError,
    allowed_from,
    betting_stats,
    can_transition,
    follow_profit,
    parse_odds,
    parse_stake,
    price_bet,
    settlement_return,
    wallet_summary,
)
from passwords import check_password, hash_password, is_strong_password
from repository import (
    DuplicateRecordError,
    RepositoryError,
    StaleRecordError,
    build_repository,
)

# --------------------------------------------------------
# ----------------- Environment variables  ---------------
# --------------------------------------------------------

class APIError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

# load .env
load_dotenv()

FLASK_ENV = os.getenv("FLASK_ENV", "development")

TIPS_STORE = os.getenv("TIPS_STORE", "supabase")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY") or os.getenv("SUPABASE_SERVICE_KEY")

JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    if FLASK_ENV == "production":
        raise RuntimeError("JWT_SECRET must be set in production")
    JWT_SECRET = "dev_secret"
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_HOURS = int(os.getenv("JWT_EXPIRES_HOURS", "24"))

DISABLE_RATE_LIMITS = os.getenv("DISABLE_RATE_LIMITS", "0") == "1"

# ✅ Healthcheck secret (optional; if set, /api/health requires it)
HEALTHCHECK_TOKEN = os.getenv("HEALTHCHECK_TOKEN")

# Direct sign-up with a password; when off, /api/auth/register files a request instead
OPEN_REGISTRATION = os.getenv("OPEN_REGISTRATION", "1") == "1"

ACTIVATION_CODE_TTL_HOURS = int(os.getenv("ACTIVATION_CODE_TTL_HOURS", "72"))
RESET_TOKEN_TTL_HOURS = 24

# Notional stake used by the wallet when a tip is followed without one
DEFAULT_FOLLOW_STAKE = float(os.getenv("DEFAULT_FOLLOW_STAKE", "100"))

EMAIL_REGEX = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

ROLES = ("user", "admin")
REQUEST_STATUSES = ("pending", "approved", "completed", "rejected")
PREDICTION_STATUSES = ("pending",) + TERMINAL_RESULTS
MAX_MESSAGE_LENGTH = 1000

FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN")  # e.g. "https://vertex-tips.app"
FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", FRONTEND_ORIGIN or "http://localhost:5173")

BREVO_API_KEY = os.getenv("BREVO_API_KEY")

SENSITIVE_TOKENS = [t for t in [
    os.getenv("SUPABASE_KEY"),
    os.getenv("SUPABASE_SERVICE_KEY"),
    os.getenv("JWT_SECRET"),
    os.getenv("BREVO_API_KEY"),
    HEALTHCHECK_TOKEN,
] if t]

# Optional: enable noisy debug logging only in dev
ENABLE_DEBUG_LOGS = os.getenv("ENABLE_DEBUG_LOGS", "0") == "1"


def redact(s: str) -> str:
    if not isinstance(s, str):
        return s
    redacted = s
    for token in SENSITIVE_TOKENS:
        if token and token in redacted:
            redacted = redacted.replace(token, "[REDACTED]")
    return redacted


def safe_print(*args, **kwargs):
    parts = []
    for a in args:
        parts.append(redact(str(a)))
    print(*parts, **kwargs)


store = build_repository(TIPS_STORE, SUPABASE_URL, SUPABASE_KEY)
if store.name == "memory":
    safe_print("⚠️ TIPS_STORE=memory: data lives in this process only and is lost on restart.")

app = Flask(__name__)

# CORS configuration
# -------------------
# In production: only allow the real frontend origin
# In development: allow the local dev frontends
if FLASK_ENV == "production" and FRONTEND_ORIGIN:
    CORS(app, origins=[FRONTEND_ORIGIN])
else:
    CORS(app, origins=[
        "http://localhost:3000",
        "http://localhost:5173",
    ])


# --------------------------------------------------------
# ---------------- In-memory rate limiting  --------------
# --------------------------------------------------------

RATE_LIMITS = {
    # bucket_name: (max_attempts, window_seconds)
    "login_ip": (10, 60),              # 10 login attempts per IP per 60s
    "login_identifier": (5, 60),       # 5 login attempts per email per 60s

    "forgot_ip": (5, 300),             # 5 forgot-password requests per IP per 5min
    "forgot_identifier": (3, 300),     # 3 forgot-password per email per 5min

    "register_ip": (5, 3600),          # 5 sign-ups / access requests per IP per hour
    "activate_ip": (10, 600),          # 10 activation attempts per IP per 10min

    "health_ip": (30, 60),             # 30 checks per IP per minute
}

_rate_events = defaultdict(list)
_rate_lock = threading.Lock()


def get_client_ip():
    """
    Try to get the real client IP, honoring X-Forwarded-For when behind a proxy.
    """
    xfwd = request.headers.get("X-Forwarded-For", "")
    if xfwd:
        # X-Forwarded-For: client, proxy1, proxy2, ...
        return xfwd.split(",")[0].strip()
    return request.remote_addr or "unknown"


def is_rate_limited(bucket: str, key: str) -> bool:
    """
    Returns True if this (bucket, key) has exceeded its limit within the window.
    Otherwise records the attempt and returns False.
    """
    if DISABLE_RATE_LIMITS:
        return False

    try:
        limit, window = RATE_LIMITS[bucket]
    except KeyError:
        # Unknown bucket: fail open, never log the key
        if ENABLE_DEBUG_LOGS:
            safe_print(f"[RL] Unknown bucket: {bucket}")
        return False

    now = time.time()

    with _rate_lock:
        events = [t for t in _rate_events[(bucket, key)] if now - t < window]

        if len(events) >= limit:
            _rate_events[(bucket, key)] = events
            if ENABLE_DEBUG_LOGS:
                safe_print(f"[RL] 🚫 RATE LIMITED bucket={bucket}")
            return True

        events.append(now)
        _rate_events[(bucket, key)] = events

        if ENABLE_DEBUG_LOGS:
            safe_print(f"[RL] ✅ recorded bucket={bucket} new_count={len(events)}")

    return False


# --------------------------------------------------------
# ----------------------- Helpers  -----------------------
# --------------------------------------------------------

def now_utc():
    return datetime.now(timezone.utc)


def parse_iso8601_utc(val):
    """
    Accepts:
      - ISO-8601 strings ('2026-04-12T18:59:50Z', '2026-04-12T11:59:50-07:00', '2026-04-12')
      - datetime (naive or tz-aware)
      - None / empty
    Returns a timezone-aware UTC datetime, or None if not set/parsable.
    """
    if not val:
        return None

    try:
        if isinstance(val, datetime):
            dt = val
        else:
            s = str(val).strip()
            if s.endswith("Z"):
                s = s[:-1] + "+00:00"
            dt = datetime.fromisoformat(s)

        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (TypeError, ValueError):
        if ENABLE_DEBUG_LOGS:
            safe_print(f"⚠️ Could not parse datetime value: {val}")
        return None


def is_uuid(value) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except (ValueError, TypeError):
        return False


def normalize_email(value) -> str:
    return (value or "").strip().lower() if isinstance(value, str) else ""


def digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def get_json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise APIError("JSON object body expected", 400)
    return data


def user_summary(user):
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user.get("name"),
        "role": user.get("role", "user"),
        "created_at": user.get("created_at"),
    }


def request_summary(req):
    # activation code digests never leave the server
    return {k: v for k, v in req.items() if k != "activation_code_hash"}


def notify(user_ids, kind, title, message, **refs):
    """
    Best-effort fan-out: the originating action has already been committed,
    so a failure here is logged and swallowed.
    """
    rows = []
    for uid in dict.fromkeys(user_ids):
        row = {
            "user_id": uid,
            "type": kind,
            "title": title,
            "message": message,
            "read": False,
        }
        row.update({k: v for k, v in refs.items() if v is not None})
        rows.append(row)

    if not rows:
        return 0
    try:
        return store.insert_notifications(rows)
    except RepositoryError as e:
        safe_print(f"🔴 Failed to store {kind} notifications (class):", type(e).__name__)
        return 0


# --------------------------------------------------------
# ------------------ Tokens & decorators  ----------------
# --------------------------------------------------------

def generate_token(user):
    payload = {
        "user_id": user["id"],
        "email": user["email"],
        "role": user.get("role", "user"),
        "exp": now_utc() + timedelta(hours=JWT_EXPIRES_HOURS),
    }
    token = jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)
    return token


def decode_token(token):
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def bearer_payload():
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return decode_token(auth_header.split(" ", 1)[1].strip())


def require_auth(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Missing or invalid Authorization header"}), 401

        payload = bearer_payload()
        if not payload:
            return jsonify({"error": "Invalid or expired token"}), 401

        request.user = payload
        return f(*args, **kwargs)
    return wrapper


def require_admin(f):
    @wraps(f)
    @require_auth
    def wrapper(*args, **kwargs):
        user_info = request.user or {}

        # First line of defense: token says not admin
        if user_info.get("role") != "admin":
            return jsonify({"error": "Forbidden"}), 403

        # Role changes apply immediately, so confirm against the store too
        admin = store.get_user(user_info.get("user_id"))
        if not admin or admin.get("role") != "admin":
            return jsonify({"error": "Forbidden"}), 403

        request.admin = admin
        return f(*args, **kwargs)
    return wrapper


# --------------------------------------------------------
# -------------------- Error handlers  -------------------
# --------------------------------------------------------

@app.errorhandler(APIError)
def handle_api_error(err: APIError):
    if ENABLE_DEBUG_LOGS:
        safe_print(f"APIError: {err.message}")
    return jsonify({"error": err.message}), err.status_code


@app.errorhandler(BettingError)
def handle_betting_error(err: BettingError):
    return jsonify({"error": str(err)}), 400


@app.errorhandler(DuplicateRecordError)
def handle_duplicate(err: DuplicateRecordError):
    return jsonify({"error": "Record already exists"}), 400


@app.errorhandler(StaleRecordError)
def handle_stale(err: StaleRecordError):
    safe_print("⚠️ Conflicting update:", str(err))
    return jsonify({"error": "This record was changed by another request"}), 409


@app.errorhandler(RepositoryError)
def handle_repository_error(err: RepositoryError):
    safe_print("🔴 DB error (class):", type(err.__cause__ or err).__name__)
    return jsonify({"error": "Database error"}), 500


@app.errorhandler(HTTPException)
def handle_http_exception(e: HTTPException):
    return jsonify({"error": e.description or e.name}), e.code


@app.errorhandler(Exception)
def handle_any(e):
    # Avoid logging the full exception message; just the class name
    safe_print("🔴 Unhandled exception (class):", type(e).__name__)
    return jsonify({"error": "Internal server error"}), 500


# --------------------------------------------------------
# ------------------- Service endpoints  -----------------
# --------------------------------------------------------

@app.route("/", methods=["GET"])
def home():
    return jsonify({"message": "Vertex Tips backend running"}), 200


def _no_cache(resp):
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    resp.headers["Pragma"] = "no-cache"
    return resp


@app.route("/api/health", methods=["GET", "HEAD"])
def health():
    supplied = None
    if HEALTHCHECK_TOKEN:
        supplied = (
            request.headers.get("X-Health-Token")
            or request.args.get("token")
        )

    # Blessed callers skip the rate limit; everyone else is limited per IP
    if not HEALTHCHECK_TOKEN or supplied != HEALTHCHECK_TOKEN:
        if is_rate_limited("health_ip", get_client_ip()):
            return _no_cache(make_response(jsonify({"error": "Too Many Requests"}), 429))

        # Token configured but missing/wrong → hide the endpoint
        if HEALTHCHECK_TOKEN:
            return _no_cache(make_response(jsonify({"error": "Not Found"}), 404))

    return _no_cache(make_response(jsonify({
        "status": "OK",
        "timestamp": now_utc().isoformat(),
        "store": store.name,
    }), 200))


# --------------------------------------------------------
# --------------- Authentication endpoints  --------------
# --------------------------------------------------------
# NOTE ON CSRF:
# --------------
# We authenticate using JWTs sent in the Authorization: Bearer header.
# Browsers don't attach this header automatically on cross-site requests,
# so classic cookie-based CSRF does not apply here.

@app.route("/api/auth/register", methods=["POST"])
def register():
    data = get_json_body()

    ip = get_client_ip()
    if is_rate_limited("register_ip", ip):
        return jsonify({
            "error": "Too many sign-up attempts from this IP. Please try again later."
        }), 429

    password = data.get("password")
    wants_request = not password and ("name" in data or "message" in data)
    if wants_request or not OPEN_REGISTRATION:
        # "Request access" flow: never stores a password, an admin approves it later
        return _create_registration_request(data)

    email = normalize_email(data.get("email"))
    name = (data.get("name") or "").strip()

    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400

    if not re.match(EMAIL_REGEX, email):
        return jsonify({"error": "Invalid email format"}), 400

    ok, msg = is_strong_password(password)
    if not ok:
        return jsonify({"error": msg}), 400

    if store.find_user_by_email(email):
        return jsonify({"error": "Email already registered"}), 400

    try:
        user = store.insert_user({
            "email": email,
            "password": hash_password(password),
            "role": "user",
            "name": name or email.split("@")[0],
        })
    except DuplicateRecordError:
        # Lost the race against a concurrent sign-up with the same email
        return jsonify({"error": "Email already registered"}), 400

    return jsonify({
        "message": "User registered successfully",
        "token": generate_token(user),
        "user": user_summary(user),
    }), 201


@app.route("/api/auth/request-access", methods=["POST"])
def request_access():
    data = get_json_body()

    if is_rate_limited("register_ip", get_client_ip()):
        return jsonify({
            "error": "Too many sign-up attempts from this IP. Please try again later."
        }), 429

    return _create_registration_request(data)


def _create_registration_request(data):
    email = normalize_email(data.get("email"))
    name = (data.get("name") or "").strip()
    message = (data.get("message") or "").strip()

    if not email or not name:
        return jsonify({"error": "Email and name are required"}), 400

    if not re.match(EMAIL_REGEX, email):
        return jsonify({"error": "Invalid email format"}), 400

    if len(message) > MAX_MESSAGE_LENGTH:
        return jsonify({"error": f"Message must be at most {MAX_MESSAGE_LENGTH} characters"}), 400

    if store.find_user_by_email(email):
        return jsonify({"error": "Email already registered"}), 400

    if store.find_open_registration_request(email):
        return jsonify({"error": "A registration request for this email is already open"}), 400

    try:
        req = store.insert_registration_request({
            "email": email,
            "name": name,
            "message": message,
            "status": "pending",
        })
    except DuplicateRecordError:
        return jsonify({"error": "A registration request for this email is already open"}), 400

    return jsonify({
        "message": "Registration request received. An administrator will review it shortly.",
        "request": {"id": req["id"], "email": req["email"], "status": req["status"]},
    }), 202


@app.route("/api/auth/login", methods=["POST"])
def login():
    data = get_json_body()

    # 1) Per-IP rate limit
    ip = get_client_ip()
    if is_rate_limited("login_ip", ip):
        return jsonify({
            "error": "Too many login attempts. Please wait a bit and try again."
        }), 429

    email = normalize_email(data.get("email"))
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400

    # 2) Per-identifier rate limit
    if is_rate_limited("login_identifier", email):
        return jsonify({
            "error": "Too many login attempts. Please wait a bit and try again."
        }), 429

    user = store.find_user_by_email(email)
    if not user or not check_password(password, user.get("password")):
        return jsonify({"error": "Invalid email or password"}), 401

    return jsonify({
        "message": "Login successful",
        "token": generate_token(user),
        "user": user_summary(user),
    }), 200


@app.route("/api/auth/me", methods=["GET"])
@require_auth
def me():
    user = store.get_user(request.user.get("user_id"))
    if not user:
        return jsonify({"error": "User not found"}), 404
    return jsonify({"user": user_summary(user)}), 200


@app.route("/api/auth/change-password", methods=["POST"])
@require_auth
def change_password():
    data = get_json_body()
    current = data.get("current_password") or ""
    new_password = data.get("new_password")

    user = store.get_user(request.user.get("user_id"))
    if not user:
        return jsonify({"error": "User not found"}), 404

    if not check_password(current, user.get("password")):
        return jsonify({"error": "Current password is incorrect"}), 401

    ok, msg = is_strong_password(new_password)
    if not ok:
        return jsonify({"error": msg}), 400

    store.update_user_password(user["id"], hash_password(new_password))
    return jsonify({"message": "Password updated successfully"}), 200


FORGOT_NEUTRAL = "If an account exists for this email, a reset link will be sent."


@app.route("/api/auth/forgot-password", methods=["POST"])
def forgot_password():
    data = get_json_body()

    # Same neutral response everywhere to avoid account enumeration
    if is_rate_limited("forgot_ip", get_client_ip()):
        return jsonify({"message": FORGOT_NEUTRAL}), 200

    email = normalize_email(data.get("email"))
    if not re.match(EMAIL_REGEX, email):
        return jsonify({"message": FORGOT_NEUTRAL}), 200

    if is_rate_limited("forgot_identifier", email):
        return jsonify({"message": FORGOT_NEUTRAL}), 200

    user = store.find_user_by_email(email)
    if not user:
        return jsonify({"message": FORGOT_NEUTRAL}), 200

    token = secrets.token_urlsafe(32)
    store.insert_password_reset({
        "user_id": user["id"],
        "token_hash": digest(token),
        "expires_at": (now_utc() + timedelta(hours=RESET_TOKEN_TTL_HOURS)).isoformat(),
        "used": False,
    })

    reset_link = f"{FRONTEND_BASE_URL}/reset-password?token={token}"
    body = f"""
        <html>
          <body style="font-family: Arial, sans-serif; line-height: 1.6;">
            <p>Hello <strong>{escape(user.get('name') or user['email'])}</strong>,</p>
            <p>A password reset has been requested. Use the link below to set a new password:</p>
            <p><a href="{reset_link}" target="_blank">{reset_link}</a></p>
            <p>This link stays active for {RESET_TOKEN_TTL_HOURS} hours or until the password has been reset.</p>
            <p>Thanks,<br>Vertex Tips</p>
          </body>
        </html>
    """
    send_email_via_brevo(user["email"], "Vertex Tips password reset", body)

    return jsonify({"message": FORGOT_NEUTRAL}), 200


@app.route("/api/auth/reset-password", methods=["POST"])
def reset_password():
    data = get_json_body()
    token = data.get("token")
    new_password = data.get("new_password")

    if not token or not new_password:
        return jsonify({"error": "Token and new password are required"}), 400

    ok, msg = is_strong_password(new_password)
    if not ok:
        return jsonify({"error": msg}), 400

    reset = store.find_password_reset(digest(str(token)))
    if not reset:
        return jsonify({"error": "Invalid or expired token"}), 400

    if reset.get("used"):
        return jsonify({"error": "Token already used"}), 400

    expires_at = parse_iso8601_utc(reset.get("expires_at"))
    if not expires_at or now_utc() > expires_at:
        return jsonify({"error": "Token expired"}), 400

    # Claim the token first so two concurrent resets can't both apply
    try:
        store.consume_password_reset(reset["id"])
    except StaleRecordError:
        return jsonify({"error": "Token already used"}), 400

    store.update_user_password(reset["user_id"], hash_password(new_password))
    return jsonify({"message": "Password reset successfully"}), 200


@app.route("/api/auth/activate", methods=["POST"])
def activate_account():
    data = get_json_body()

    if is_rate_limited("activate_ip", get_client_ip()):
        return jsonify({
            "error": "Too many activation attempts. Please try again later."
        }), 429

    email = normalize_email(data.get("email"))
    code = (data.get("activation_code") or data.get("activationCode") or "").strip()
    password = data.get("password")

    if not email or not code or not password:
        return jsonify({"error": "Email, activation code and password are required"}), 400

    req = store.find_open_registration_request(email)
    if (
        not req
        or req.get("status") != "approved"
        or not req.get("activation_code_hash")
        or not secrets.compare_digest(digest(code), req["activation_code_hash"])
    ):
        return jsonify({"error": "Invalid activation code"}), 400

    expires_at = parse_iso8601_utc(req.get("activation_expires_at"))
    if not expires_at or now_utc() >= expires_at:
        return jsonify({"error": "Activation code expired"}), 400

    ok, msg = is_strong_password(password)
    if not ok:
        return jsonify({"error": msg}), 400

    if store.find_user_by_email(email):
        return jsonify({"error": "Email already registered"}), 400

    # Redeem the code before creating the account: a second attempt hits the CAS
    store.transition_registration_request(
        req["id"],
        allowed_from("registration_request", "completed"),
        "completed",
        {"completed_at": now_utc().isoformat()},
    )

    try:
        user = store.insert_user({
            "email": email,
            "password": hash_password(password),
            "role": req.get("role") or "user",
            "name": req.get("name") or email.split("@")[0],
        })
    except RepositoryError as e:
        # No account was created: hand the code back so the applicant can retry
        store.transition_registration_request(req["id"], ("completed",), "approved", {"completed_at": None})
        if isinstance(e, DuplicateRecordError):
            return jsonify({"error": "Email already registered"}), 400
        raise

    return jsonify({
        "message": "Account activated successfully",
        "token": generate_token(user),
        "user": user_summary(user),
    }), 201


def send_email_via_brevo(to_email, subject, body):
    """Send an email using Brevo's transactional email API."""
    if not BREVO_API_KEY:
        if ENABLE_DEBUG_LOGS:
            safe_print("📭 BREVO_API_KEY not set, skipping email")
        return False

    url = "https://api.brevo.com/v3/smtp/email"
    headers = {
        "accept": "application/json",
        "api-key": BREVO_API_KEY,
        "content-type": "application/json"
    }
    data = {
        "sender": {
            "name": "Vertex Tips",
            "email": os.getenv("BREVO_SENDER_EMAIL", "no-reply@vertex-tips.app")
        },
        "to": [{"email": to_email}],
        "subject": subject,
        "htmlContent": body
    }

    try:
        response = requests.post(url, json=data, headers=headers, timeout=20)
        safe_print(f"📬 Brevo response: {response.status_code}")
        return response.status_code in (200, 201)
    except requests.RequestException as e:
        safe_print("🚨 Error sending email via Brevo (class):", type(e).__name__)
        return False


# --------------------------------------------------------
# -------------- Registration request admin  -------------
# --------------------------------------------------------

@app.route("/api/admin/registration-requests", methods=["GET"])
@require_admin
def list_registration_requests():
    status = request.args.get("status")
    if status and status not in REQUEST_STATUSES:
        return jsonify({"error": f"status must be one of {', '.join(REQUEST_STATUSES)}"}), 400

    rows = store.list_registration_requests(status=status)
    return jsonify({"requests": [request_summary(r) for r in rows]}), 200


def _load_request(request_id):
    if not is_uuid(request_id):
        raise APIError("Invalid request id", 400)
    req = store.get_registration_request(request_id)
    if not req:
        raise APIError("Registration request not found", 404)
    return req


@app.route("/api/admin/registration-requests/<request_id>/approve", methods=["POST"])
@require_admin
def approve_registration_request(request_id):
    data = get_json_body()
    role = data.get("role") or "user"
    if role not in ROLES:
        return jsonify({"error": f"role must be one of {', '.join(ROLES)}"}), 400

    req = _load_request(request_id)
    if not can_transition("registration_request", req["status"], "approved"):
        return jsonify({"error": f"Request is already {req['status']}"}), 409

    code = secrets.token_urlsafe(12)
    expires_at = now_utc() + timedelta(hours=ACTIVATION_CODE_TTL_HOURS)
    updated = store.transition_registration_request(
        request_id,
        allowed_from("registration_request", "approved"),
        "approved",
        {
            "activation_code_hash": digest(code),
            "activation_expires_at": expires_at.isoformat(),
            "role": role,
            "approved_by": request.admin["email"],
            "approved_at": now_utc().isoformat(),
        },
    )

    body = f"""
        <html>
          <body style="font-family: Arial, sans-serif; line-height: 1.6;">
            <p>Hello <strong>{escape(updated.get('name') or updated['email'])}</strong>,</p>
            <p>Your access request has been approved. Your activation code is:</p>
            <p style="font-size: 18px;"><strong>{code}</strong></p>
            <p>Complete your registration at <a href="{FRONTEND_BASE_URL}/activate" target="_blank">{FRONTEND_BASE_URL}/activate</a>
               before {expires_at.strftime('%Y-%m-%d %H:%M')} UTC.</p>
            <p>Thanks,<br>Vertex Tips</p>
          </body>
        </html>
    """
    emailed = send_email_via_brevo(updated["email"], "Your Vertex Tips activation code", body)

    return jsonify({
        "message": f"Request approved with role: {role}",
        "request": request_summary(updated),
        "activation_code": code,
        "emailed": emailed,
    }), 200


@app.route("/api/admin/registration-requests/<request_id>/reject", methods=["POST"])
@require_admin
def reject_registration_request(request_id):
    req = _load_request(request_id)
    if not can_transition("registration_request", req["status"], "rejected"):
        return jsonify({"error": f"Request is already {req['status']}"}), 409

    updated = store.transition_registration_request(
        request_id,
        allowed_from("registration_request", "rejected"),
        "rejected",
        {
            "rejected_by": request.admin["email"],
            "rejected_at": now_utc().isoformat(),
            "activation_code_hash": None,
        },
    )
    return jsonify({"message": "Request rejected", "request": request_summary(updated)}), 200


# --------------------------------------------------------
# ----------------- Prediction endpoints  ----------------
# --------------------------------------------------------

@app.route("/api/predictions", methods=["GET"])
@app.route("/api/predictions/all", methods=["GET"])
def list_predictions():
    sport = request.args.get("sport")
    status = request.args.get("status")
    if status and status not in PREDICTION_STATUSES:
        return jsonify({"error": f"status must be one of {', '.join(PREDICTION_STATUSES)}"}), 400

    predictions = store.list_predictions(sport=sport or None, status=status or None)

    # Anonymous callers still get the list; a valid token adds isFollowed
    payload = bearer_payload()
    followed = set()
    if payload:
        followed = {f["prediction_id"] for f in store.list_follows(payload.get("user_id"))}

    for p in predictions:
        p["isFollowed"] = p["id"] in followed

    return jsonify({"predictions": predictions}), 200


@app.route("/api/predictions/<prediction_id>", methods=["GET"])
def get_prediction(prediction_id):
    return jsonify({"prediction": _load_prediction(prediction_id)}), 200


def _load_prediction(prediction_id):
    if not is_uuid(prediction_id):
        raise APIError("Invalid prediction id", 400)
    prediction = store.get_prediction(prediction_id)
    if not prediction:
        raise APIError("Prediction not found", 404)
    return prediction


@app.route("/api/predictions", methods=["POST"])
@app.route("/api/admin/create-prediction", methods=["POST"])
@require_admin
def create_prediction():
    data = get_json_body()
    admin = request.admin

    match = (data.get("match") or "").strip()
    sport = (data.get("sport") or "").strip()
    raw_date = data.get("date") or data.get("event_date")

    if not match or not sport or data.get("odds") in (None, "") or not raw_date:
        return jsonify({"error": "Match, sport, odds and date are required"}), 400

    odds = parse_odds(data.get("odds"))

    event_date = parse_iso8601_utc(raw_date)
    if not event_date:
        return jsonify({"error": "Invalid date, expected ISO-8601"}), 400

    confidence = data.get("confidence")
    if confidence not in (None, ""):
        try:
            confidence = int(confidence)
        except (TypeError, ValueError):
            return jsonify({"error": "confidence must be an integer"}), 400
        if not 0 <= confidence <= 100:
            return jsonify({"error": "confidence must be between 0 and 100"}), 400
    else:
        confidence = None

    prediction = store.insert_prediction({
        "match": match,
        "sport": sport,
        "league": (data.get("league") or "").strip() or None,
        "pick": (data.get("pick") or data.get("prediction") or "").strip() or None,
        "odds": odds,
        "event_date": event_date.isoformat(),
        "tipster": (data.get("tipster") or "").strip() or admin.get("name"),
        "confidence": confidence,
        "analysis": (data.get("analysis") or "").strip() or None,
        "status": "pending",
        "created_by": admin["id"],
    })

    subscribers = [u["id"] for u in store.list_users() if u.get("role") != "admin"]
    notify(
        subscribers,
        "new_tip",
        "New tip published",
        f"{prediction['match']} ({prediction['sport']}) @ {prediction['odds']}",
        prediction_id=prediction["id"],
    )

    return jsonify(prediction), 201


@app.route("/api/admin/predictions/<prediction_id>/status", methods=["PATCH"])
@require_admin
def update_prediction_status(prediction_id):
    data = get_json_body()
    status = data.get("status")

    if status not in TERMINAL_RESULTS:
        return jsonify({"error": f"status must be one of {', '.join(TERMINAL_RESULTS)}"}), 400

    prediction = _load_prediction(prediction_id)
    if not can_transition("prediction", prediction["status"], status):
        return jsonify({"error": f"Prediction is already {prediction['status']}"}), 409

    updated = store.transition_prediction_status(
        prediction_id,
        prediction["status"],
        status,
        {
            "result_note": (data.get("result_note") or "").strip() or None,
            "settled_at": now_utc().isoformat(),
        },
    )

    audience = store.list_followers(prediction_id) + store.list_bettors(prediction_id)
    notify(
        audience,
        "result",
        f"Tip {status}",
        f"{updated['match']}: {status.upper()}",
        prediction_id=prediction_id,
    )

    return jsonify({"message": "Status updated", "prediction": updated}), 200


@app.route("/api/predictions/follow", methods=["POST"])
@require_auth
def follow_prediction():
    data = get_json_body()
    prediction_id = data.get("predictionId") or data.get("prediction_id")
    if not prediction_id:
        return jsonify({"error": "predictionId is required"}), 400

    prediction = _load_prediction(prediction_id)
    if prediction["status"] != "pending":
        return jsonify({"error": "Only pending predictions can be followed"}), 400

    stake = data.get("stake")
    stake = DEFAULT_FOLLOW_STAKE if stake in (None, "") else parse_stake(stake)

    try:
        follow = store.insert_follow({
            "user_id": request.user["user_id"],
            "prediction_id": prediction_id,
            "stake": stake,
        })
    except DuplicateRecordError:
        return jsonify({"error": "Already following this prediction"}), 400

    return jsonify({"message": "Prediction followed", "follow": follow}), 201


@app.route("/api/predictions/<prediction_id>/follow", methods=["DELETE"])
@require_auth
def unfollow_prediction(prediction_id):
    if not is_uuid(prediction_id):
        return jsonify({"error": "Invalid prediction id"}), 400

    if not store.delete_follow(request.user["user_id"], prediction_id):
        return jsonify({"error": "Not following this prediction"}), 404
    return jsonify({"message": "Prediction unfollowed"}), 200


@app.route("/api/wallet", methods=["GET"])
@require_auth
def wallet():
    follows = store.list_follows(request.user["user_id"])
    predictions = {p["id"]: p for p in store.get_predictions(f["prediction_id"] for f in follows)}

    tips = []
    for f in follows:
        p = predictions.get(f["prediction_id"])
        if not p:
            continue
        stake = float(f.get("stake") or DEFAULT_FOLLOW_STAKE)
        odds = float(p["odds"])
        tips.append({
            "prediction_id": p["id"],
            "match": p["match"],
            "sport": p["sport"],
            "league": p.get("league"),
            "pick": p.get("pick"),
            "tipster": p.get("tipster"),
            "odds": odds,
            "stake": stake,
            "status": p["status"],
            "event_date": p.get("event_date"),
            "result_note": p.get("result_note"),
            "followed_at": f.get("created_at"),
            "profit": follow_profit(odds, stake, p["status"]),
        })

    return jsonify({"tips": tips, "stats": wallet_summary(tips)}), 200


# --------------------------------------------------------
# -------------------- Bet endpoints  --------------------
# --------------------------------------------------------

@app.route("/api/bets", methods=["GET"])
@require_auth
def list_bets():
    user_info = request.user
    if request.args.get("all") == "1":
        user = store.get_user(user_info.get("user_id"))
        if not user or user.get("role") != "admin":
            return jsonify({"success": False, "error": "Forbidden"}), 403
        return jsonify({"success": True, "bets": store.list_bets()}), 200

    return jsonify({"success": True, "bets": store.list_bets(user_id=user_info["user_id"])}), 200


@app.route("/api/bets", methods=["POST"])
@require_auth
def place_bet():
    data = get_json_body()
    tips = data.get("tips")
    stake = data.get("stake")
    bet_type = data.get("betType") or data.get("bet_type") or "single"

    if not isinstance(tips, list) or not tips or stake in (None, ""):
        return jsonify({"success": False, "error": "Missing required fields"}), 400

    if len(tips) > MAX_SELECTIONS:
        return jsonify({"success": False, "error": f"A bet can include at most {MAX_SELECTIONS} tips"}), 400

    # Accept ids or tip objects coming straight from the betting slip
    tip_ids = [t.get("id") if isinstance(t, dict) else t for t in tips]
    if not all(isinstance(t, str) and is_uuid(t) for t in tip_ids):
        return jsonify({"success": False, "error": "Invalid tip id"}), 400
    if len(set(tip_ids)) != len(tip_ids):
        return jsonify({"success": False, "error": "The same tip cannot be selected twice"}), 400
    if bet_type not in BET_TYPES:
        return jsonify({"success": False, "error": f"betType must be one of {', '.join(BET_TYPES)}"}), 400

    # Odds always come from the stored tips, never from the client
    by_id = {p["id"]: p for p in store.get_predictions(tip_ids)}
    missing = [t for t in tip_ids if t not in by_id]
    if missing:
        return jsonify({"success": False, "error": "Tip not found"}), 404

    closed = [by_id[t]["match"] for t in tip_ids if by_id[t]["status"] != "pending"]
    if closed:
        return jsonify({"success": False, "error": f"Tips already settled: {', '.join(closed)}"}), 400

    selections = [
        {"prediction_id": t, "match": by_id[t]["match"], "odds": float(by_id[t]["odds"])}
        for t in tip_ids
    ]
    priced = price_bet(stake, bet_type, selections)

    bet = store.insert_bet({
        "user_id": request.user["user_id"],
        "bet_type": priced["bet_type"],
        "stake": priced["stake"],
        "total_stake": priced["total_stake"],
        "total_odds": priced["total_odds"],
        "potential_return": priced["potential_return"],
        "selections": priced["selections"],
        "prediction_ids": tip_ids,
        "status": "pending",
        "placed_at": now_utc().isoformat(),
        "settled_at": None,
        "actual_return": None,
    })

    return jsonify({
        "success": True,
        "bet": bet,
        "message": "Bet placed successfully",
    }), 201


@app.route("/api/bets/stats", methods=["GET"])
@require_auth
def bet_stats():
    bets = store.list_bets(user_id=request.user["user_id"])
    return jsonify({"success": True, "stats": betting_stats(bets)}), 200


@app.route("/api/bets/<bet_id>/settle", methods=["PUT"])
@require_admin
def settle_bet(bet_id):
    data = get_json_body()
    status = data.get("status")
    actual = data.get("actualReturn", data.get("actual_return"))

    if not is_uuid(bet_id):
        return jsonify({"success": False, "error": "Invalid bet id"}), 400

    bet = store.get_bet(bet_id)
    if not bet:
        return jsonify({"success": False, "error": "Bet not found"}), 404

    if status in TERMINAL_RESULTS and not can_transition("bet", bet["status"], status):
        return jsonify({"success": False, "error": f"Bet is already {bet['status']}"}), 409

    amount = settlement_return(bet, status, actual)

    settled = store.settle_bet(bet_id, "pending", {
        "status": status,
        "actual_return": amount,
        "settled_at": now_utc().isoformat(),
        "settled_by": request.admin["id"],
    })

    notify(
        [settled["user_id"]],
        "bet_settled",
        f"Bet {status}",
        f"Your {settled['bet_type']} bet was settled as {status.upper()} (return {amount:.2f})",
        bet_id=bet_id,
    )

    return jsonify({"success": True, "bet": settled}), 200


# --------------------------------------------------------
# ---------------- Notification endpoints  ---------------
# --------------------------------------------------------

@app.route("/api/notifications", methods=["GET"])
@require_auth
def list_notifications():
    unread_only = request.args.get("unread") == "1"
    rows = store.list_notifications(request.user["user_id"], unread_only=unread_only)
    return jsonify(rows), 200


@app.route("/api/notifications/<notification_id>/read", methods=["PATCH"])
@require_auth
def mark_notification_read(notification_id):
    if not is_uuid(notification_id):
        return jsonify({"error": "Invalid notification id"}), 400

    row = store.mark_notification_read(notification_id, request.user["user_id"])
    if not row:
        return jsonify({"error": "Notification not found"}), 404
    return jsonify(row), 200


@app.route("/api/notifications/read-all", methods=["PATCH"])
@require_auth
def mark_all_notifications_read():
    count = store.mark_all_notifications_read(request.user["user_id"])
    return jsonify({"message": "Notifications marked as read", "updated": count}), 200


# --------------------------------------------------------
# ------------------ Admin user endpoints  ---------------
# --------------------------------------------------------

@app.route("/api/admin/users", methods=["GET"])
@require_admin
def list_users():
    return jsonify([user_summary(u) for u in store.list_users()]), 200


@app.route("/api/admin/users/<user_id>", methods=["PATCH"])
@require_admin
def update_user(user_id):
    data = get_json_body()
    role = data.get("role")

    if role not in ROLES:
        return jsonify({"error": f"role must be one of {', '.join(ROLES)}"}), 400

    if not is_uuid(user_id):
        return jsonify({"error": "Invalid user id"}), 400

    if user_id == request.admin["id"]:
        return jsonify({"error": "You cannot change your own role"}), 400

    user = store.update_user_role(user_id, role)
    if not user:
        return jsonify({"error": "User not found"}), 404

    return jsonify({"message": "User role updated", "user": user_summary(user)}), 200


# --------------------------------------------------------
# --------------------- M  A  I  N  ----------------------
# --------------------------------------------------------

if __name__ == "__main__":
    # Use FLASK_DEBUG=1 in your local env if you want debug mode
    debug_mode = os.getenv("FLASK_DEBUG", "0") == "1"
    app.run(port=int(os.getenv("PORT", "3001")), debug=debug_mode)
