"""Signed token utilities."""

from __future__ import annotations

import os

from itsdangerous import BadSignature, URLSafeTimedSerializer

DEFAULT_MAX_AGE = int(os.environ.get("OAUTH_STATE_MAX_AGE", 60 * 30))


def _serializer() -> URLSafeTimedSerializer:
    secret = os.environ.get("SIGNING_SECRET", "change-me")
    return URLSafeTimedSerializer(secret_key=secret)


def generate_token(payload: dict[str, object], purpose: str) -> str:
    return _serializer().dumps(payload, salt=purpose)


def load_token(token: str, purpose: str, max_age: int = DEFAULT_MAX_AGE) -> dict[str, object]:
    data = _serializer().loads(token, max_age=max_age, salt=purpose)
    if not isinstance(data, dict):
        raise BadSignature("Invalid token payload")
    return data
