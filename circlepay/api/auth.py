"""Request identity for the mini-app and admin APIs.

The mini-app sends Telegram WebApp ``initData`` as ``Authorization: tma <initData>``.
It is checked with the HMAC scheme Telegram documents for Web Apps: the secret
key is HMAC-SHA256("WebAppData", bot_token) and the hash covers every other
field, sorted, as ``key=value`` lines.
"""

import hashlib
import hmac
import json
import time
from collections.abc import Callable
from functools import lru_cache
from urllib.parse import parse_qsl

from fastapi import Depends, Header, HTTPException
from loguru import logger

from circlepay.config import Settings, get_settings
from circlepay.models.schemas import Identity


class InvalidInitData(Exception):
    pass


class TelegramInitDataVerifier:
    def __init__(
        self,
        bot_token: str,
        max_age_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def verify(self, init_data: str) -> Identity:
        fields = dict(parse_qsl(init_data, keep_blank_values=True))
        received_hash = fields.pop("hash", "")
        if not received_hash:
            raise InvalidInitData("hash is missing")

        check_string = "\n".join(f"{k}={v}" for k, v in sorted(fields.items()))
        expected = hmac.new(self._secret, check_string.encode(), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, received_hash):
            raise InvalidInitData("hash mismatch")

        try:
            auth_date = int(fields.get("auth_date", ""))
        except ValueError as e:
            raise InvalidInitData("auth_date is missing") from e
        if self.max_age_seconds and self._clock() - auth_date > self.max_age_seconds:
            raise InvalidInitData("init data expired")

        try:
            user = json.loads(fields.get("user", ""))
        except json.JSONDecodeError as e:
            raise InvalidInitData("user is missing") from e
        if not isinstance(user, dict) or "id" not in user:
            raise InvalidInitData("user id is missing")

        display_name = " ".join(
            part for part in (user.get("first_name"), user.get("last_name")) if part
        ) or user.get("username", "")
        return Identity(user_id=str(user["id"]), display_name=display_name)


@lru_cache
def get_verifier() -> TelegramInitDataVerifier:
    settings = get_settings()
    return TelegramInitDataVerifier(settings.telegram_bot_token, settings.init_data_max_age_seconds)


def current_identity(
    authorization: str | None = Header(default=None),
    verifier: TelegramInitDataVerifier = Depends(get_verifier),
) -> Identity:
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header is missing")
    scheme, _, init_data = authorization.partition(" ")
    if scheme.lower() != "tma" or not init_data:
        raise HTTPException(status_code=401, detail="Invalid authorization header format")
    try:
        return verifier.verify(init_data)
    except InvalidInitData as e:
        logger.warning("Mini-app auth failed: {}", e)
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_admin(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.admin_api_key:
        raise HTTPException(status_code=401, detail="Admin API is disabled")
    if not x_api_key or not hmac.compare_digest(x_api_key, settings.admin_api_key):
        logger.warning("Admin auth failed")
        raise HTTPException(status_code=401, detail="Unauthorized")
