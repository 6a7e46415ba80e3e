"""
Notification Service — FastAPI エントリーポイント

注文確認通知を受け付ける。ユーザーのトークンは拒否し、
Shop API のサービスアカウント (M2M トークン) からの呼び出しだけを許可する。

  ┌──────────┐  client_credentials  ┌──────────┐
  │ Shop API │ ───────────────────▶ │ Keycloak │
  │          │ ◀─── access_token ── │          │
  │          │                      └──────────┘
  │          │  Bearer (azp=shop-api)  ┌──────────────┐
  │          │ ──────────────────────▶ │ Notification │
  └──────────┘                         └──────────────┘

障害注入 (/config/*):
  simulate-timeout — 次の 1 件は応答を返さずに止まる (呼び出し側がタイムアウト)
  slow-template    — 指定ユーザーの通知を重いテンプレート (3 秒) でレンダリング
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request

from services.shared import errors
from services.shared.auth import (
    Principal,
    ServiceAccountPrincipal,
    TokenVerifier,
    build_verifier,
    require_auth,
    require_service_account,
)
from services.shared.config import Settings
from services.shared.errors import install_error_handlers
from services.shared.logging_config import configure_logging, install_request_logging
from services.shared.models import CamelModel

from . import dispatch

logger = logging.getLogger(__name__)

# 呼び出し側のタイムアウト (5 秒) より十分長く止める
HANG_SECONDS = 30.0


@dataclass
class FaultSwitches:
    timeout: bool = False
    slow_template_users: set[str] = field(default_factory=set)


@dataclass
class NotificationContext:
    settings: Settings
    verifier: TokenVerifier
    faults: FaultSwitches = field(default_factory=FaultSwitches)
    started_at: float = field(default_factory=time.monotonic)
    sent: int = 0


def get_ctx(request: Request) -> NotificationContext:
    return request.app.state.ctx


async def require_shop_api(
    principal: ServiceAccountPrincipal = Depends(require_service_account),
    ctx: NotificationContext = Depends(get_ctx),
) -> ServiceAccountPrincipal:
    allowed = ctx.settings.allowed_notification_client
    if principal.client_id != allowed:
        logger.info("Rejected notification: unexpected calling service %s", principal.client_id)
        raise errors.Forbidden(f"This endpoint only accepts calls from {allowed} service")
    return principal


# ── Request Models ───────────────────────────────


class OrderItemPayload(CamelModel):
    product_id: int | None = None
    product_name: str | None = None
    quantity: int | None = None
    price: float | None = None


class OrderNotificationRequest(CamelModel):
    order_id: str | int
    user_id: str | None = None
    user_email: str | None = None
    user_name: str | None = None
    total: float | None = None
    items: list[OrderItemPayload] = []
    timestamp: str | None = None


class SlowTemplateRequest(CamelModel):
    user_ids: list[Any] = []


router = APIRouter()


@router.post("/api/notifications/order")
async def notify_order(
    req: OrderNotificationRequest,
    principal: ServiceAccountPrincipal = Depends(require_shop_api),
    ctx: NotificationContext = Depends(get_ctx),
):
    """注文確認通知 (Shop API のサービスアカウントのみ)"""
    scale = ctx.settings.simulated_delay_scale

    if ctx.faults.timeout:
        ctx.faults.timeout = False
        logger.warning("SIMULATING TIMEOUT - request for order %s will hang", req.order_id)
        await asyncio.sleep(HANG_SECONDS * scale)
        raise errors.SimulatedFault("Notification delivery timed out (simulated)")

    template = dispatch.choose_template(req.user_id, ctx.faults.slow_template_users)
    logger.info("Auth: service account from %s (subject %s)", principal.client_id, principal.subject)

    result = await dispatch.send_order_confirmation(
        req.model_dump(by_alias=True),
        template,
        principal.client_id,
        scale,
    )
    ctx.sent += 1
    return result


@router.get("/api/notifications/stats")
async def notification_stats(
    principal: Principal = Depends(require_auth),
    ctx: NotificationContext = Depends(get_ctx),
):
    return {
        "service": "notification",
        "uptime": time.monotonic() - ctx.started_at,
        "notificationsSent": ctx.sent,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── 障害注入 (デモ・テスト用) ────────────────────


@router.post("/config/simulate-timeout")
async def simulate_timeout(ctx: NotificationContext = Depends(get_ctx)):
    ctx.faults.timeout = True
    logger.info("SIMULATION: Timeout mode enabled for next request")
    return {"success": True, "message": "Timeout simulation enabled"}


@router.post("/config/slow-template")
async def slow_template(req: SlowTemplateRequest, ctx: NotificationContext = Depends(get_ctx)):
    user_ids = [str(user_id) for user_id in req.user_ids]
    ctx.faults.slow_template_users.update(user_ids)
    logger.info("SIMULATION: Slow template enabled for users: %s", ", ".join(user_ids))
    return {"success": True, "affected": req.user_ids}


@router.post("/config/reset")
async def reset_simulations(ctx: NotificationContext = Depends(get_ctx)):
    ctx.faults = FaultSwitches()
    logger.info("SIMULATION: All simulations reset")
    return {"success": True, "message": "Simulations reset"}


@router.get("/health")
async def health():
    return {"status": "ok", "service": "notification"}


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env("notification")
    configure_logging(settings.service_name, settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with httpx.AsyncClient(transport=transport) as http:
            app.state.ctx = NotificationContext(
                settings=settings,
                verifier=build_verifier(http, settings),
            )
            logger.info(
                "Notification Service protected by Keycloak JWT (issuer: %s)", settings.issuer
            )
            yield

    app = FastAPI(title="Notification Service", lifespan=lifespan)
    install_error_handlers(app)
    install_request_logging(app)
    app.include_router(router)
    return app


app = create_app()
