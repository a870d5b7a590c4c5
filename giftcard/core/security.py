from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt

from giftcard.core.config import settings


class TokenError(Exception):
    pass


# -------------------------
# JWT tokens
# -------------------------
def create_access_token(*, user_id: int, minutes: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = settings.JWT_ACCESS_MINUTES if minutes is None else minutes
    payload = {
        "sub": str(user_id),
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl)).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.ExpiredSignatureError as e:
        raise TokenError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenError("Invalid token") from e
