"""
Inventory Service — FastAPI エントリーポイント

在庫管理サービス。在庫数と予約はプロセス内メモリで保持する。
すべての /api エンドポイントは Keycloak の JWT を要求する。

/config/* はデモ・テスト用の障害注入スイッチ (認証なし)。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Annotated

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import Field

from services.shared.auth import Principal, TokenVerifier, build_verifier, calling_service, require_auth
from services.shared.config import Settings
from services.shared.errors import install_error_handlers
from services.shared.logging_config import configure_logging, install_request_logging
from services.shared.models import CamelModel

from . import commands, queries
from .aggregate import StockLedger

logger = logging.getLogger(__name__)

SLOW_OPERATION_SECONDS = 1.5


@dataclass
class FaultSwitches:
    out_of_stock: bool = False
    slow: bool = False


@dataclass
class InventoryContext:
    settings: Settings
    verifier: TokenVerifier
    ledger: StockLedger = field(default_factory=StockLedger)
    faults: FaultSwitches = field(default_factory=FaultSwitches)


def get_ctx(request: Request) -> InventoryContext:
    return request.app.state.ctx


async def _maybe_slow_down(ctx: InventoryContext, what: str) -> None:
    # 1 回だけ遅延させてフラグを戻す
    if ctx.faults.slow:
        ctx.faults.slow = False
        logger.warning("Processing %s - this may take a while...", what)
        await asyncio.sleep(SLOW_OPERATION_SECONDS * ctx.settings.simulated_delay_scale)


# ── Request Models ───────────────────────────────


class StockLine(CamelModel):
    product_id: int
    quantity: int = Field(gt=0)


class CheckRequest(CamelModel):
    items: list[StockLine]


class ReserveRequest(CamelModel):
    order_id: Annotated[str, Field(min_length=1)] | int
    items: list[StockLine] = Field(min_length=1)


class ReleaseRequest(CamelModel):
    reservation_id: str


def _pairs(lines: list[StockLine]) -> list[tuple[int, int]]:
    return [(line.product_id, line.quantity) for line in lines]


router = APIRouter()


# ── Command Endpoints ────────────────────────────


@router.post("/api/inventory/reserve")
async def cmd_reserve(
    req: ReserveRequest,
    principal: Principal = Depends(require_auth),
    ctx: InventoryContext = Depends(get_ctx),
):
    """在庫引き当て (all-or-nothing)"""
    order_id = str(req.order_id)
    logger.info(
        "Processing inventory reservation: order=%s items=%d caller=%s",
        order_id,
        len(req.items),
        calling_service(principal),
    )
    await _maybe_slow_down(ctx, f"reservation for order {order_id}")
    return commands.reserve_inventory(ctx.ledger, order_id, _pairs(req.items))


@router.post("/api/inventory/release")
async def cmd_release(
    req: ReleaseRequest,
    principal: Principal = Depends(require_auth),
    ctx: InventoryContext = Depends(get_ctx),
):
    """予約の解放 (補償トランザクション)"""
    logger.info(
        "Processing inventory release: reservation=%s caller=%s",
        req.reservation_id,
        calling_service(principal),
    )
    await _maybe_slow_down(ctx, f"release of {req.reservation_id}")
    return commands.release_inventory(ctx.ledger, req.reservation_id)


# ── Query Endpoints ──────────────────────────────


@router.post("/api/inventory/check")
async def query_check(
    req: CheckRequest,
    principal: Principal = Depends(require_auth),
    ctx: InventoryContext = Depends(get_ctx),
):
    """在庫確認 (減算しない)"""
    logger.info(
        "Checking inventory availability: items=%d caller=%s",
        len(req.items),
        calling_service(principal),
    )
    await _maybe_slow_down(ctx, "inventory check")

    simulate = ctx.faults.out_of_stock
    if simulate:
        ctx.faults.out_of_stock = False
        logger.warning("Simulating out-of-stock condition")

    result = queries.check_availability(ctx.ledger, _pairs(req.items), simulate)
    logger.info(
        "Inventory check completed: available=%s items=%d",
        result["available"],
        len(req.items),
    )
    return result


@router.get("/api/inventory/stock")
async def query_stock(
    principal: Principal = Depends(require_auth),
    ctx: InventoryContext = Depends(get_ctx),
):
    """現在の在庫一覧 (デバッグ・管理用)"""
    return queries.stock_levels(ctx.ledger)


# ── 障害注入 (デモ・テスト用) ────────────────────


@router.post("/config/simulate-out-of-stock")
async def simulate_out_of_stock(ctx: InventoryContext = Depends(get_ctx)):
    ctx.faults.out_of_stock = True
    logger.info("SIMULATION: Out-of-stock mode enabled for next check")
    return {"success": True, "message": "Out-of-stock simulation enabled"}


@router.post("/config/simulate-slow")
async def simulate_slow(ctx: InventoryContext = Depends(get_ctx)):
    ctx.faults.slow = True
    logger.info("SIMULATION: Slow mode enabled for next operation")
    return {"success": True, "message": "Slow simulation enabled"}


@router.post("/config/reset")
async def reset_simulations(ctx: InventoryContext = Depends(get_ctx)):
    ctx.faults = FaultSwitches()
    logger.info("SIMULATION: All simulations reset")
    return {"success": True, "message": "Simulations reset"}


@router.get("/health")
async def health():
    return {"status": "ok", "service": "inventory"}


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env("inventory")
    configure_logging(settings.service_name, settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with httpx.AsyncClient(transport=transport) as http:
            app.state.ctx = InventoryContext(
                settings=settings,
                verifier=build_verifier(http, settings),
            )
            logger.info("Inventory Service protected by Keycloak JWT (issuer: %s)", settings.issuer)
            yield

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    install_error_handlers(app)
    install_request_logging(app)
    app.include_router(router)
    return app


app = create_app()
