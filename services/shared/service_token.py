"""
Shared — サービストークン (M2M 認証)

OAuth2 Client Credentials フローで Keycloak からサービス自身のトークンを取得し、
プロセス内にキャッシュする。

  1. キャッシュに有効なトークンがあればそれを返す (ネットワーク通信なし)
  2. なければトークンエンドポイントに client_id / client_secret を POST
  3. 有効期限の 60 秒前を期限としてキャッシュする

キャッシュは 1 スロットのみ。期限切れの瞬間に同時に呼ばれても
asyncio.Lock で 1 回のリクエストにまとめる (single-flight)。
リトライはしない (必要なら呼び出し側で行う)。
"""

import asyncio
import logging
import time
from collections.abc import Callable

import httpx

from . import errors
from .config import Settings

logger = logging.getLogger(__name__)

EXPIRY_BUFFER_SECONDS = 60
DEFAULT_EXPIRES_IN = 300


class ServiceTokenError(errors.UpstreamFailure):
    category = "ServiceTokenError"


class ServiceTokenClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._http = http
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._clock = clock
        self._token: str | None = None
        self._expires_at: float | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, settings: Settings) -> "ServiceTokenClient":
        return cls(
            http,
            settings.token_url,
            settings.client_id,
            settings.client_secret,
            timeout=settings.idp_timeout,
        )

    def has_valid_cached_token(self) -> bool:
        return (
            self._token is not None
            and self._expires_at is not None
            and self._clock() < self._expires_at
        )

    def clear_cache(self) -> None:
        self._token = None
        self._expires_at = None

    async def get_service_token(self) -> str:
        if self.has_valid_cached_token():
            return self._token

        async with self._lock:
            # ロック待ちの間に別の呼び出しが取得済み
            if self.has_valid_cached_token():
                return self._token

            requested_at = self._clock()
            payload = await self._request_token()
            expires_in = _expires_in(payload)

            self._token = payload["access_token"]
            self._expires_at = requested_at + (expires_in - EXPIRY_BUFFER_SECONDS)
            logger.info("Service token obtained, expires in %ss", expires_in)
            return self._token

    async def _request_token(self) -> dict:
        try:
            response = await self._http.post(
                self._token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
                timeout=self._timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to obtain service token: %s", exc)
            raise ServiceTokenError(
                "Failed to obtain service token for M2M communication"
            ) from exc

        if not isinstance(payload, dict) or not payload.get("access_token"):
            logger.error("Token endpoint response carries no access_token")
            raise ServiceTokenError("Failed to obtain service token for M2M communication")
        return payload


def _expires_in(payload: dict) -> int:
    raw = payload.get("expires_in")
    if raw is None or raw == "":
        return DEFAULT_EXPIRES_IN
    try:
        expires_in = int(raw)
    except (TypeError, ValueError) as exc:
        logger.error("Token endpoint returned an invalid expires_in: %r", raw)
        raise ServiceTokenError(
            "Failed to obtain service token for M2M communication"
        ) from exc
    return expires_in or DEFAULT_EXPIRES_IN
