"""
Flask application entry point.

Thin HTTP adapter over the usage metering engine. The chat backend calls
POST /api/v1/usage/consume once per model call before streaming a reply.
"""
import logging
from flask import Flask, request, jsonify, g
from flask_cors import CORS

from config import settings
from db import get_db
from services.atomic_writes import UsagePersistenceError
from services.max_mode import disable_max_mode, enable_max_mode, get_max_mode_status
from services.metering import build_meter_reporter
from services.usage import UsageLimitError, consume_usage, get_usage_summary

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


app = Flask(__name__)

# CORS configuration with explicit allowlist
ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

# Supports comma-separated list of origins (e.g., "https://app.example.com,https://staging.example.com")
for origin in settings.cors_allowed_origins.split(","):
    origin = origin.strip()
    if origin and origin not in ALLOWED_ORIGINS:
        ALLOWED_ORIGINS.append(origin)

# Note: supports_credentials=False because authentication uses JWT tokens in Authorization headers, not cookies
CORS(
    app,
    origins=ALLOWED_ORIGINS,
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["Content-Type"],
    supports_credentials=False,
    methods=["GET", "POST", "OPTIONS"],
    max_age=3600
)

# Import JWT utilities (will fail fast if JWT_SECRET is not set)
from auth.jwt import decode_and_verify_token  # noqa: E402

# Composition root: one reporter per process
meter_reporter = build_meter_reporter(settings)

PUBLIC_ROUTES = ["/", "/health", "/health/db"]


def _unauthorized(detail: str = "Unauthorized"):
    response = jsonify({"detail": detail})
    response.status_code = 401
    return response


@app.before_request
def check_auth():
    """
    JWT authentication middleware for all routes except health checks.
    Requires Authorization: Bearer <jwt> header.
    Extracts user_id and is_anonymous from JWT and stores them on flask.g.
    """
    # CORS preflight is handled by Flask-CORS
    if request.method == "OPTIONS":
        return None

    if request.path in PUBLIC_ROUTES:
        return None

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return _unauthorized()

    token = auth_header.replace("Bearer ", "").strip()
    payload, error = decode_and_verify_token(token)
    if error or not payload:
        logger.info(f"Rejected token: {error}")
        return _unauthorized()

    g.user_id = payload.get("sub")
    g.is_anonymous = bool(payload.get("is_anonymous", False))

    if not g.user_id:
        return _unauthorized("Invalid token: missing sub")

    return None


@app.route('/')
def health_check():
    """Health check endpoint."""
    return {'status': 'ok'}, 200


@app.route('/health', methods=['GET'])
def health():
    """Lightweight health check endpoint."""
    return jsonify({"ok": True}), 200


@app.route("/health/db", methods=["GET"])
def health_db():
    """
    Database connectivity health check endpoint.

    Returns:
        JSON with {"ok": true} on success, or {"ok": false, "error": "<message>"} on failure (HTTP 500).
    """
    try:
        from sqlalchemy import text

        db = next(get_db())
        try:
            db.execute(text("SELECT 1")).fetchone()
            return jsonify({"ok": True}), 200
        finally:
            db.close()
    except Exception as e:
        error_message = str(e)
        logger.warning(f"Database health check failed: {error_message}")
        return jsonify({"ok": False, "error": error_message}), 500


@app.route("/api/v1/usage/consume", methods=["POST"])
def consume():
    """
    Consume one unit of a usage category for the authenticated caller.

    Request body:
        {"category": "basic" | "premium"}

    Returns:
        200: {"ok": true, "tier", "limit", "remaining", "used_max_mode"}
        400: Invalid category
        402: {"ok": false, "error": "USAGE_LIMIT_REACHED", "reason": "usage_limit",
              "message", "max_mode_available"}
        503: Usage storage unavailable
    """
    data = request.get_json(silent=True) or {}

    db = next(get_db())
    try:
        result = consume_usage(
            db,
            g.user_id,
            data.get("category"),
            is_anonymous=g.is_anonymous,
            meter_reporter=meter_reporter,
        )
        return jsonify({"ok": True, **result.to_dict()}), 200
    except ValueError as e:
        return jsonify({"ok": False, "error": "INVALID_CATEGORY", "message": str(e)}), 400
    except UsageLimitError as e:
        return jsonify({
            "ok": False,
            "error": "USAGE_LIMIT_REACHED",
            "reason": "usage_limit",
            "message": e.message,
            "max_mode_available": e.max_mode_available,
        }), 402
    except UsagePersistenceError:
        return jsonify({"ok": False, "error": "USAGE_UNAVAILABLE"}), 503
    except Exception:
        app.logger.exception("Unexpected error in usage consume endpoint")
        return jsonify({"ok": False, "error": "Server error"}), 500
    finally:
        db.close()


@app.route("/api/v1/usage/summary", methods=["GET"])
def usage_summary():
    """Usage vs. limits for every category, plus tier and Max Mode flags."""
    db = next(get_db())
    try:
        summary = get_usage_summary(db, g.user_id, is_anonymous=g.is_anonymous)
        return jsonify({"ok": True, **summary.to_dict()}), 200
    except Exception:
        app.logger.exception("Unexpected error in usage summary endpoint")
        return jsonify({"ok": False, "error": "Server error"}), 500
    finally:
        db.close()


@app.route("/api/v1/billing/max-mode", methods=["GET"])
def max_mode_status():
    db = next(get_db())
    try:
        status = get_max_mode_status(db, g.user_id)
        return jsonify({"ok": True, **status.to_dict()}), 200
    except Exception:
        app.logger.exception("Unexpected error in Max Mode status endpoint")
        return jsonify({"ok": False, "error": "Server error"}), 500
    finally:
        db.close()


@app.route("/api/v1/billing/max-mode/enable", methods=["POST"])
def max_mode_enable():
    """
    Enable Max Mode (pay-as-you-go overage) for the authenticated user.

    Returns:
        200: {"ok": true, "enabled": true}
        400: {"ok": false, "error": "BILLING_RECORD_MISSING" | "MAX_MODE_NOT_ELIGIBLE" | "SUBSCRIPTION_INACTIVE"}
    """
    db = next(get_db())
    try:
        success, error_code = enable_max_mode(db, g.user_id)
        if not success:
            return jsonify({"ok": False, "error": error_code}), 400
        return jsonify({"ok": True, "enabled": True}), 200
    except Exception:
        app.logger.exception("Unexpected error in Max Mode enable endpoint")
        return jsonify({"ok": False, "error": "Server error"}), 500
    finally:
        db.close()


@app.route("/api/v1/billing/max-mode/disable", methods=["POST"])
def max_mode_disable():
    db = next(get_db())
    try:
        success, error_code = disable_max_mode(db, g.user_id)
        if not success:
            return jsonify({"ok": False, "error": error_code}), 400
        return jsonify({"ok": True, "enabled": False}), 200
    except Exception:
        app.logger.exception("Unexpected error in Max Mode disable endpoint")
        return jsonify({"ok": False, "error": "Server error"}), 500
    finally:
        db.close()


if __name__ == '__main__':
    app.run(debug=settings.debug, port=5050)
