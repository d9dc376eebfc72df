from typing import Optional

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import AuthenticationError


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="bearer-token")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def issue_token(user_id: int, email: str) -> str:
    return _serializer().dumps({"u": user_id, "e": email})


def read_token(token: str, max_age_hours: Optional[int] = None) -> int:
    """Return the user id carried by a valid, unexpired token."""
    if max_age_hours is None:
        max_age_hours = get_settings().token_max_age_hours
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except SignatureExpired as exc:
        raise AuthenticationError("Token expired") from exc
    except BadSignature as exc:
        raise AuthenticationError("Invalid token") from exc
    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise AuthenticationError("Invalid token")
    return user_id


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise AuthenticationError("Missing bearer token")
    return token
