"""
Payment Service — FastAPI エントリーポイント

決済処理のシミュレーション。Keycloak の JWT を持つ呼び出しのみ受け付ける。

障害注入 (/config/*):
  simulate-failure — 次の 1 件を 402 (Payment declined) にする
  simulate-slow    — 次の 1 件に 2 秒の遅延を入れる
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from services.shared import errors
from services.shared.auth import Principal, TokenVerifier, build_verifier, calling_service, require_auth
from services.shared.config import Settings
from services.shared.errors import install_error_handlers
from services.shared.logging_config import configure_logging, install_request_logging
from services.shared.models import CamelModel

from . import gateway

logger = logging.getLogger(__name__)

SLOW_GATEWAY_SECONDS = 2.0


@dataclass
class FaultSwitches:
    failure: bool = False
    slow: bool = False


@dataclass
class PaymentContext:
    settings: Settings
    verifier: TokenVerifier
    faults: FaultSwitches = field(default_factory=FaultSwitches)


def get_ctx(request: Request) -> PaymentContext:
    return request.app.state.ctx


class PaymentRequest(CamelModel):
    # 事前承認フローでは注文 ID がまだ存在しない
    order_id: str | int | None = None
    amount: float | None = None
    payment_method: str | None = None
    user_id: str | None = None


router = APIRouter()


@router.post("/api/payments/process")
async def process_payment(
    req: PaymentRequest,
    principal: Principal = Depends(require_auth),
    ctx: PaymentContext = Depends(get_ctx),
):
    """決済を処理する。userId 省略時はトークンの subject を使う。"""
    user_id = req.user_id or principal.subject
    payment_ref = str(req.order_id) if req.order_id is not None else f"pre-auth-{int(time.time() * 1000)}"

    if req.amount is None:
        logger.warning("Payment request missing amount: ref=%s user=%s", payment_ref, user_id)
        raise errors.ValidationError("Missing required field: amount", success=False)

    if not req.payment_method:
        logger.warning("Payment request missing paymentMethod: ref=%s user=%s", payment_ref, user_id)
        raise errors.ValidationError("Missing required field: paymentMethod", success=False)

    logger.info(
        "Received payment processing request: ref=%s user=%s amount=%s method=%s caller=%s",
        payment_ref,
        user_id,
        req.amount,
        req.payment_method,
        calling_service(principal),
    )

    scale = ctx.settings.simulated_delay_scale

    if ctx.faults.failure:
        ctx.faults.failure = False
        logger.error(
            "Payment processing failed: ref=%s user=%s amount=%s reason=Gateway declined transaction",
            payment_ref,
            user_id,
            req.amount,
        )
        raise errors.PaymentDeclined(
            "The payment gateway declined the transaction",
            success=False,
            paymentRef=payment_ref,
        )

    if ctx.faults.slow:
        ctx.faults.slow = False
        logger.warning("Payment gateway responding slowly: ref=%s", payment_ref)
        await asyncio.sleep(SLOW_GATEWAY_SECONDS * scale)
        processing_time = int(SLOW_GATEWAY_SECONDS * 1000) + await gateway.simulate_gateway_call(10, 20, scale)
    else:
        logger.info("Contacting payment gateway: ref=%s method=%s", payment_ref, req.payment_method)
        processing_time = await gateway.simulate_gateway_call(50, 100, scale)

    transaction_id = gateway.generate_transaction_id()
    logger.info(
        "Payment processed successfully: ref=%s transaction=%s processing=%dms",
        payment_ref,
        transaction_id,
        processing_time,
    )
    return {
        "success": True,
        "transactionId": transaction_id,
        "processingTime": processing_time,
        "paymentRef": payment_ref,
        "amount": req.amount,
        "paymentMethod": req.payment_method,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/api/payments/status/{transaction_id}")
async def payment_status(transaction_id: str, principal: Principal = Depends(require_auth)):
    """決済ステータス (デモ用のモック: 常に completed)"""
    logger.info("Payment status check: transaction=%s", transaction_id)
    return {
        "transactionId": transaction_id,
        "status": "completed",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── 障害注入 (デモ・テスト用) ────────────────────


@router.post("/config/simulate-failure")
async def simulate_failure(ctx: PaymentContext = Depends(get_ctx)):
    ctx.faults.failure = True
    logger.info("SIMULATION: Failure mode enabled for next payment")
    return {"success": True, "message": "Failure simulation enabled"}


@router.post("/config/simulate-slow")
async def simulate_slow(ctx: PaymentContext = Depends(get_ctx)):
    ctx.faults.slow = True
    logger.info("SIMULATION: Slow mode enabled for next payment")
    return {"success": True, "message": "Slow simulation enabled"}


@router.post("/config/reset")
async def reset_simulations(ctx: PaymentContext = Depends(get_ctx)):
    ctx.faults = FaultSwitches()
    logger.info("SIMULATION: All simulations reset")
    return {"success": True, "message": "Simulations reset"}


@router.get("/health")
async def health():
    return {"status": "ok", "service": "payment"}


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env("payment")
    configure_logging(settings.service_name, settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with httpx.AsyncClient(transport=transport) as http:
            app.state.ctx = PaymentContext(settings=settings, verifier=build_verifier(http, settings))
            logger.info("Payment Service protected by Keycloak JWT (issuer: %s)", settings.issuer)
            yield

    app = FastAPI(title="Payment Service", lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    install_error_handlers(app)
    install_request_logging(app)
    app.include_router(router)
    return app


app = create_app()
