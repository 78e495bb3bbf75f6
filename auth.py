from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.api_secret, salt="family-token")


def issue_family_token(family_id: int, member: Optional[str] = None) -> str:
    token_data = {"f": family_id}
    if member:
        token_data["m"] = member
    return _serializer().dumps(token_data)


def read_family_token(token: str) -> Optional[dict]:
    """Decoded payload, or None when the token is forged, stale or malformed."""
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.api_token_max_age_secs)
    except BadSignature:
        return None

    family_id = data.get("f") if isinstance(data, dict) else None
    if isinstance(family_id, bool) or not isinstance(family_id, int) or family_id <= 0:
        return None
    return data


def family_id_from_token(token: str) -> Optional[int]:
    data = read_family_token(token)
    return data["f"] if data else None
