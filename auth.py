from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings


@dataclass(frozen=True)
class Identity:
    user_id: str
    display_name: str


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="identity")


def issue_token(identity: Identity) -> str:
    return _serializer().dumps({"uid": identity.user_id, "name": identity.display_name})


def verify_token(token: str, max_age: Optional[int] = None) -> Optional[Identity]:
    if not token:
        return None
    max_age = max_age if max_age is not None else get_settings().token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age)
    except (SignatureExpired, BadSignature):
        return None
    if not isinstance(data, dict):
        return None
    user_id = str(data.get("uid") or "").strip()
    if not user_id:
        return None
    display_name = str(data.get("name") or "").strip() or "Unknown"
    return Identity(user_id=user_id, display_name=display_name)


def require_identity(request: Request) -> Identity:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    identity = None
    if scheme.lower() == "bearer":
        identity = verify_token(token.strip())
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return identity
