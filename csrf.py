import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer, URLSafeTimedSerializer

from config import get_settings

CSRF_MAX_AGE_HOURS = 8
OAUTH_STATE_MAX_AGE = 15 * 60


def _serializer() -> URLSafeSerializer:
    return URLSafeSerializer(get_settings().secret_key, salt="cosbudget-csrf")


def generate_csrf_token(user_id: int = 0, max_age_hours: int = CSRF_MAX_AGE_HOURS) -> str:
    """Signed form token bound to a user id (0 for anonymous forms such as login)."""
    issued = int(time.time())
    return _serializer().dumps(
        {"u": user_id, "ts": issued, "exp": issued + max_age_hours * 3600}
    )


def validate_csrf_token(token: str, user_id: int = 0) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token)
    except BadSignature:
        return False
    if not isinstance(data, dict) or data.get("u") != user_id:
        return False
    return int(time.time()) <= int(data.get("exp", 0))


def _state_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().secret_key, salt="cosbudget-qb-state")


def sign_oauth_state(user_id: int, location_id: Optional[int], return_to: str) -> str:
    """OAuth ``state`` carrying where to link the realm and where to go afterwards."""
    return _state_serializer().dumps({"u": user_id, "l": location_id, "r": return_to})


def read_oauth_state(
    state: str, user_id: int, max_age: int = OAUTH_STATE_MAX_AGE
) -> Optional[tuple[Optional[int], str]]:
    """Returns ``(location_id, return_to)``, or None for a forged, stale or foreign state."""
    if not state:
        return None
    try:
        data = _state_serializer().loads(state, max_age=max_age)
    except BadSignature:
        return None
    if not isinstance(data, dict) or data.get("u") != user_id:
        return None
    location_id = data.get("l")
    if location_id is not None and not isinstance(location_id, int):
        return None
    return location_id, str(data.get("r") or "")
