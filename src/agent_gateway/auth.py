"""Device token issuing and verification (HS256 JWT).

A paired device authenticates its connection with a token carrying its
device id. Verification only proves the token was issued by us and is not
expired; whether the device still exists is checked by the session layer
against the device registry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"


class InvalidTokenError(Exception):
    """Token is malformed, forged, expired or missing its device id."""


@dataclass(frozen=True)
class TokenPayload:
    device_id: str
    device_name: str | None = None


class TokenVerifier:
    def __init__(self, secret: str, expires_days: int = 7) -> None:
        self._secret = secret
        self._expires_days = expires_days

    def sign_token(self, device_id: str, device_name: str | None = None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "deviceId": device_id,
            "iat": now,
            "exp": now + timedelta(days=self._expires_days),
        }
        if device_name:
            payload["deviceName"] = device_name
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify_token(self, token: str) -> TokenPayload:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[_ALGORITHM])
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("Token expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.debug("Rejected device token: %s", exc)
            raise InvalidTokenError("Invalid token") from exc

        device_id = payload.get("deviceId")
        if not isinstance(device_id, str) or not device_id:
            raise InvalidTokenError("Token has no device id")
        return TokenPayload(device_id=device_id, device_name=payload.get("deviceName"))
