import time

from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings

CSRF_HEADER = "X-CSRF-Token"


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.csrf_secret, salt="provisions-csrf")


def generate_csrf_token(user_id: int, group_id: int, max_age_hours: int = 2) -> str:
    timestamp = int(time.time())
    token_data = {
        "u": user_id,
        "g": group_id,
        "exp": timestamp + (max_age_hours * 3600),
    }
    return _serializer().dumps(token_data)


def validate_csrf_token(token: str | None, user_id: int, group_id: int) -> bool:
    """A token is valid for the user and group it was issued to, until it expires."""
    if not token:
        return False
    try:
        data = _serializer().loads(token)
    except BadSignature:
        return False

    if data.get("u") != user_id or data.get("g") != group_id:
        return False
    return int(time.time()) <= data.get("exp", 0)
