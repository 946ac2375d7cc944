from datetime import datetime
from typing import Any, Mapping, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings
from schemas import CurrentUser


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session-token")


def issue_session_token(user: Mapping[str, Any], login_time: Optional[datetime] = None) -> str:
    login_time = login_time or datetime.utcnow()
    token_data = {"id": user["id"], "name": user["name"], "login_time": login_time.isoformat()}
    return _serializer().dumps(token_data)


def read_session_token(token: str) -> Optional[CurrentUser]:
    """Return the user a token was issued for, or None if it is invalid or expired."""
    max_age = get_settings().session_max_age_hours * 3600
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadSignature:
        return None

    try:
        return CurrentUser(**data)
    except (TypeError, ValueError):
        return None
