"""
Bearer-token authentication for the status API.
"""

import hmac
from functools import wraps
from typing import Optional

from flask import current_app, jsonify, request


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    """
    Pull the token out of an Authorization header.

    Args:
        header: Raw header value, e.g. "Bearer abc123"

    Returns:
        The token, or None if the header is missing or not a bearer header
    """
    if not header:
        return None

    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def verify_token(expected: str, provided: Optional[str]) -> bool:
    """Constant-time token comparison."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode('utf-8'), provided.encode('utf-8'))


def api_token_required(view):
    """
    Require `Authorization: Bearer <DBKEEPER_API_TOKEN>` when a token is configured.

    With no token configured the API is open.
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get('DBKEEPER_API_TOKEN')
        if expected:
            provided = extract_bearer_token(request.headers.get('Authorization'))
            if not verify_token(expected, provided):
                return jsonify({'error': 'Unauthorized'}), 401
        return view(*args, **kwargs)
    return wrapper
