"""
Shared — JWT 検証 (Inbound Authentication)

すべての保護エンドポイントは、Keycloak が発行した Bearer トークンを要求する。

  ┌─────────┐  Authorization   ┌──────────────┐  verify   ┌───────────────┐
  │ NoToken │ ───────────────▶ │ TokenPresent │ ────────▶ │ Authenticated │
  └────┬────┘                  └──────┬───────┘           └───────────────┘
       │ 401                          │ 401 (TokenExpired / InvalidSignature /
       ▼                              ▼      AuthenticationFailed)
                      Rejected

署名は Keycloak の公開鍵セット (JWKS) で検証する。JWKS は初回に取得して
キャッシュし、未知の kid が来たときだけ再取得する (鍵ローテーション対応)。

検証済みのクレームは 1 度だけ Principal に変換する:
  UserPrincipal           — ブラウザから来た対話ユーザーのトークン
  ServiceAccountPrincipal — Client Credentials で取得したサービスのトークン
                            (email クレームがなく azp / clientId を持つ)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
import jwt
from fastapi import Depends, Request
from jwt.exceptions import PyJWKError, PyJWKSetError

from . import errors
from .config import Settings

logger = logging.getLogger(__name__)

CLOCK_SKEW_SECONDS = 30
JWKS_REFRESH_COOLDOWN_SECONDS = 30.0
ALLOWED_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"]


# ── Principal ────────────────────────────────────


@dataclass(frozen=True)
class UserPrincipal:
    subject: str
    email: str | None
    name: str
    first_name: str | None
    last_name: str | None
    username: str | None
    roles: tuple[str, ...] = ()
    can_checkout: bool = False
    claims: dict[str, Any] = field(default_factory=dict, repr=False)

    is_service_account = False

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class ServiceAccountPrincipal:
    subject: str
    client_id: str
    roles: tuple[str, ...] = ()
    can_checkout: bool = False
    claims: dict[str, Any] = field(default_factory=dict, repr=False)

    is_service_account = True

    def has_role(self, role: str) -> bool:
        return role in self.roles


Principal = UserPrincipal | ServiceAccountPrincipal


def _roles(claims: dict) -> tuple[str, ...]:
    realm_access = claims.get("realm_access")
    if isinstance(realm_access, dict) and isinstance(realm_access.get("roles"), list):
        return tuple(realm_access["roles"])
    if isinstance(claims.get("roles"), list):
        return tuple(claims["roles"])
    return ()


def principal_from_claims(claims: dict) -> Principal:
    """検証済みクレームを UserPrincipal / ServiceAccountPrincipal に変換する。"""
    roles = _roles(claims)
    # Keycloak のユーザー属性は文字列 "true" で入ってくることがある
    can_checkout = claims.get("canCheckout") is True or claims.get("canCheckout") == "true"
    client_id = claims.get("azp") or claims.get("clientId")

    if not claims.get("email") and client_id:
        return ServiceAccountPrincipal(
            subject=claims.get("sub") or client_id,
            client_id=client_id,
            roles=roles,
            can_checkout=can_checkout,
            claims=claims,
        )

    # subject: sub → email → preferred_username
    subject = claims.get("sub") or claims.get("email") or claims.get("preferred_username")
    if not subject:
        raise errors.AuthenticationFailed("Token does not identify a subject")

    given_name = claims.get("given_name")
    family_name = claims.get("family_name")
    name = claims.get("name") or f"{given_name or ''} {family_name or ''}".strip()
    return UserPrincipal(
        subject=subject,
        email=claims.get("email"),
        name=name,
        first_name=given_name,
        last_name=family_name,
        username=claims.get("preferred_username"),
        roles=roles,
        can_checkout=can_checkout,
        claims=claims,
    )


def calling_service(principal: Principal) -> str:
    if isinstance(principal, ServiceAccountPrincipal):
        return principal.client_id
    return principal.claims.get("azp") or principal.claims.get("clientId") or "unknown"


# ── JWKS キャッシュ ──────────────────────────────


class JwksCache:
    """Keycloak の公開鍵セットを取得・キャッシュする。"""

    def __init__(
        self,
        http: httpx.AsyncClient,
        jwks_url: str,
        timeout: float = 10.0,
        refresh_cooldown: float = JWKS_REFRESH_COOLDOWN_SECONDS,
    ) -> None:
        self._http = http
        self._jwks_url = jwks_url
        self._timeout = timeout
        self._refresh_cooldown = refresh_cooldown
        self._keys: dict[str | None, jwt.PyJWK] = {}
        self._fetched_at: float | None = None
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    async def get_signing_key(self, kid: str | None) -> jwt.PyJWK:
        if self._fetched_at is None:
            await self._refresh(None)

        key = self._find(kid)
        if key is None and self._cooldown_elapsed():
            # 未知の kid: 鍵がローテーションされた可能性がある
            await self._refresh(self._fetched_at)
            key = self._find(kid)

        if key is None:
            logger.warning("No JWKS key matches kid=%s", kid)
            raise errors.AuthenticationFailed("No signing key matches the token")
        return key

    def _find(self, kid: str | None) -> jwt.PyJWK | None:
        if kid is None and len(self._keys) == 1:
            return next(iter(self._keys.values()))
        return self._keys.get(kid)

    def _cooldown_elapsed(self) -> bool:
        return (
            self._fetched_at is None
            or time.monotonic() - self._fetched_at >= self._refresh_cooldown
        )

    async def _refresh(self, seen_fetched_at: float | None) -> None:
        async with self._lock:
            # 待っている間に他のリクエストが取得済みならそれを使う
            if self._fetched_at is not None and self._fetched_at != seen_fetched_at:
                return
            try:
                response = await self._http.get(self._jwks_url, timeout=self._timeout)
                response.raise_for_status()
                document = response.json()
                if not isinstance(document, dict):
                    raise ValueError("JWKS document is not an object")
                jwk_set = jwt.PyJWKSet.from_dict(document)
            except (httpx.HTTPError, ValueError, PyJWKError, PyJWKSetError) as exc:
                logger.error("Failed to fetch JWKS from %s: %s", self._jwks_url, exc)
                # 失敗時もクールダウンを適用する (手元の鍵はそのまま)
                self._fetched_at = time.monotonic()
                raise errors.AuthenticationFailed(
                    "Unable to load identity provider keys"
                ) from exc

            self._keys = {key.key_id: key for key in jwk_set.keys}
            self._fetched_at = time.monotonic()
            self.fetch_count += 1
            logger.info("Loaded %d signing key(s) from %s", len(self._keys), self._jwks_url)


# ── トークン検証 ─────────────────────────────────


class TokenVerifier:
    def __init__(self, jwks: JwksCache, issuer: str, leeway: int = CLOCK_SKEW_SECONDS) -> None:
        self.jwks = jwks
        self.issuer = issuer
        self.leeway = leeway

    async def verify(self, token: str) -> Principal:
        """
        署名・issuer・有効期限を検証して Principal を返す。

        期限切れ (TokenExpired) と署名不正 (InvalidSignature) を区別するので、
        呼び出し側は「取り直して再試行」か「致命的」かを判断できる。
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise errors.AuthenticationFailed("Invalid or expired token") from exc

        signing_key = await self.jwks.get_signing_key(header.get("kid"))

        try:
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=ALLOWED_ALGORITHMS,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"verify_aud": False},
            )
        except jwt.ExpiredSignatureError as exc:
            raise errors.TokenExpired("Token expired") from exc
        except jwt.InvalidSignatureError as exc:
            raise errors.InvalidSignature("Token signature verification failed") from exc
        except jwt.PyJWTError as exc:
            raise errors.AuthenticationFailed("Invalid or expired token") from exc

        return principal_from_claims(claims)


def build_verifier(http: httpx.AsyncClient, settings: Settings) -> TokenVerifier:
    jwks = JwksCache(http, settings.jwks_url, timeout=settings.idp_timeout)
    return TokenVerifier(jwks, settings.issuer)


# ── FastAPI 依存関数 ─────────────────────────────


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


def _verifier(request: Request) -> TokenVerifier:
    return request.app.state.ctx.verifier


async def require_auth(request: Request) -> Principal:
    """Bearer トークン必須。検証済み Principal を request.state に載せる。"""
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        raise errors.Unauthenticated("No Bearer token provided")

    try:
        principal = await _verifier(request).verify(token)
    except errors.Unauthenticated as exc:
        logger.warning("JWT validation failed: %s (%s)", exc.message, exc.category)
        raise

    request.state.principal = principal
    request.state.access_token = token
    return principal


async def optional_auth(request: Request) -> Principal | None:
    """トークンがあれば検証し、無効なら匿名として続行する。"""
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        return None

    try:
        principal = await _verifier(request).verify(token)
    except errors.Unauthenticated as exc:
        logger.warning(
            "Optional auth: invalid token provided (%s), continuing without authentication",
            exc.category,
        )
        return None

    request.state.principal = principal
    request.state.access_token = token
    return principal


async def require_admin(principal: Principal = Depends(require_auth)) -> Principal:
    if not principal.has_role("admin"):
        raise errors.Forbidden("You do not have permission to access this resource")
    return principal


async def require_service_account(
    principal: Principal = Depends(require_auth),
) -> ServiceAccountPrincipal:
    """サービスアカウント (M2M) トークンのみ許可する。"""
    if not isinstance(principal, ServiceAccountPrincipal):
        logger.info("Rejected call: not a service account token")
        raise errors.Forbidden("This endpoint only accepts service account tokens")
    return principal
