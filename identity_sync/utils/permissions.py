# identity_sync/utils/permissions.py

import hmac
from functools import wraps
from http import HTTPStatus

from flask import current_app, jsonify, request

ADMIN_KEY_HEADER = "X-Admin-Key"


def check_admin_api_key(provided, config=None):
    """
    Return True when ``provided`` matches ``SYNC_ADMIN_API_KEY``.

    With no key configured the API stays open outside production and closed in
    production.
    """
    config = config if config is not None else current_app.config
    expected = config.get("SYNC_ADMIN_API_KEY")
    if not expected:
        return not config.get("ENV_IS_PRODUCTION", False)
    if not provided:
        return False
    return hmac.compare_digest(str(provided), str(expected))


def require_admin_api_key(f):
    """Decorator rejecting requests without a valid admin API key header."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not check_admin_api_key(request.headers.get(ADMIN_KEY_HEADER)):
            current_app.logger.warning(
                "Rejected sync API request with missing or invalid admin key",
                extra={"sync_endpoint": request.endpoint, "sync_remote_addr": request.remote_addr},
            )
            return jsonify({"ok": False, "error": "Unauthorized"}), HTTPStatus.UNAUTHORIZED
        return f(*args, **kwargs)

    return decorated_function
