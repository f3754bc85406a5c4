# Overview: Request guards for the integration and admin coupon routes.

import secrets
from functools import wraps

from flask import current_app, g, jsonify, make_response, request

from .services import coupon_policy_service, rate_limit_service
from .services.phone_normalizer import PhoneValidationError, normalize
from .services.rate_limit_service import ENDPOINT_CLAIM, ENDPOINT_CONSUME


def json_object() -> dict:
    """Request body when it is a JSON object, otherwise an empty dict."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _presented_key() -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip()
    return request.headers.get("X-API-Key")


def _key_matches(config_key: str) -> bool:
    expected = current_app.config.get(config_key)
    presented = _presented_key()
    if not expected or not presented:
        return False
    return secrets.compare_digest(presented, expected)


def require_integration_key(f):
    """
    Require the messaging integration's shared key.

    SECURITY: Returns 401 when INTEGRATION_API_KEY is unset, so a missing
    configuration never leaves the ledger open.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _key_matches("INTEGRATION_API_KEY"):
            return jsonify({"error": {"code": "UNAUTHORIZED", "message": "Invalid API key"}}), 401
        g.api_client = "integration"
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """
    Require the admin dashboard key.

    Sets g.actor from the X-Admin-User header for audit attribution.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _key_matches("ADMIN_API_KEY"):
            return jsonify({"error": "Authentication required"}), 401
        g.actor = (request.headers.get("X-Admin-User") or "admin").strip()[:64] or "admin"
        return f(*args, **kwargs)

    return decorated_function


def _daily_limit(endpoint: str) -> int:
    if endpoint == ENDPOINT_CONSUME:
        return coupon_policy_service.get_max_coupons_per_day()
    return current_app.config.get("COUPON_CLAIM_DAILY_LIMIT", 5)


def coupon_rate_limit(endpoint: str):
    """
    Enforce the per-phone daily quota for a coupon endpoint.

    The counter is only incremented when the wrapped view answers with a
    non-error status, so rejected tokens do not eat into the quota.
    """
    if endpoint not in (ENDPOINT_CONSUME, ENDPOINT_CLAIM):
        raise ValueError(f"Unknown rate-limited endpoint: {endpoint}")

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            data = json_object()
            phone = data.get("phone")
            if not phone or not isinstance(phone, str):
                return jsonify({"error": {"code": "MISSING_PHONE", "message": "Phone number is required"}}), 400

            try:
                identity = normalize(phone)
            except PhoneValidationError as e:
                return jsonify({"error": {"code": "INVALID_PHONE", "message": str(e)}}), 400

            decision = rate_limit_service.check_limit(identity, endpoint, _daily_limit(endpoint))
            if not decision.allowed:
                response = jsonify({
                    "error": {
                        "code": "RATE_LIMIT_EXCEEDED",
                        "message": "Too many requests. Please try again later.",
                        "retry_after": decision.retry_after_seconds,
                    }
                })
                response.status_code = 429
                response.headers["Retry-After"] = str(decision.retry_after_seconds)
                return response

            response = make_response(f(*args, **kwargs))
            if response.status_code < 400:
                rate_limit_service.increment_counter(identity, endpoint)
            return response

        return decorated_function
    return decorator
