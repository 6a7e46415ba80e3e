"""
Shop API — FastAPI エントリーポイント

TechStore のバックエンド。商品カタログ・セッションカート・チェックアウト・注文履歴を提供する。

  ┌─────────┐  cookie / Bearer  ┌──────────┐  SQL   ┌────────────┐
  │ Shop UI │ ────────────────▶ │ Shop API │ ─────▶ │ PostgreSQL │
  └─────────┘                   │          │        └────────────┘
                                │          │  M2M   ┌──────────────┐
                                │          │ ─────▶ │ Notification │
                                └──────────┘        └──────────────┘

  商品・カート — 匿名で利用可 (カートはセッション Cookie に紐づく)
  チェックアウト・注文履歴・プロフィール — Keycloak の JWT が必要
"""

import asyncio
import logging
import random
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from starlette.middleware.sessions import SessionMiddleware

from services.shared import errors
from services.shared.auth import (
    Principal,
    TokenVerifier,
    build_verifier,
    optional_auth,
    require_admin,
    require_auth,
)
from services.shared.config import Settings
from services.shared.errors import install_error_handlers
from services.shared.logging_config import configure_logging, install_request_logging
from services.shared.models import CamelModel
from services.shared.service_token import ServiceTokenClient

from . import queries
from .cart import CartStore
from .catalog import ProductCatalog
from .checkout import CheckoutOrchestrator, NotificationClient
from .schema import init_db

logger = logging.getLogger(__name__)

SESSION_MAX_AGE = 24 * 60 * 60
# 商品作成の遅延シミュレーション
CREATE_DELAY_PROBABILITY = 0.7
CREATE_DELAY_SECONDS = 3.0


@dataclass
class ShopContext:
    settings: Settings
    verifier: TokenVerifier
    engine: AsyncEngine
    session_factory: sessionmaker
    token_client: ServiceTokenClient
    checkout: CheckoutOrchestrator
    catalog: ProductCatalog = field(default_factory=ProductCatalog)
    carts: CartStore = field(default_factory=CartStore)


def get_ctx(request: Request) -> ShopContext:
    return request.app.state.ctx


def get_session_id(request: Request) -> str:
    """セッション ID (なければ採番して Cookie に載せる)"""
    session_id = request.session.get("sid")
    if session_id is None:
        session_id = uuid.uuid4().hex
        request.session["sid"] = session_id
    return session_id


async def product_writer(
    request: Request, ctx: ShopContext = Depends(get_ctx)
) -> Principal | None:
    # PRODUCT_ADMIN_REQUIRED=true のときだけ admin ロールを要求する
    if not ctx.settings.product_admin_required:
        return None
    principal = await require_auth(request)
    return await require_admin(principal)


# ── Request Models ───────────────────────────────


class ProductCreateRequest(CamelModel):
    name: str | None = None
    description: str | None = None
    price: float | None = None
    category: str | None = None
    image: str | None = None
    stock: int | None = None


class ProductUpdateRequest(CamelModel):
    name: str | None = None
    description: str | None = None
    price: float | None = Field(default=None, ge=0)
    category: str | None = None
    image: str | None = None
    stock: int | None = None

    @field_validator("*")
    @classmethod
    def reject_null(cls, value):
        # 省略したフィールドは据え置き。null で既存の値を消すことはできない
        if value is None:
            raise ValueError("must not be null")
        return value


class AddToCartRequest(CamelModel):
    product_id: int
    quantity: int = Field(default=1, gt=0)


class UpdateCartRequest(CamelModel):
    quantity: int


class CheckoutRequest(CamelModel):
    shipping_address: dict | None = None
    payment_method: str | None = None


router = APIRouter()


# ── 商品 ─────────────────────────────────────────


@router.get("/api/products")
async def list_products(
    category: str | None = None,
    search: str | None = None,
    sort: str | None = None,
    ctx: ShopContext = Depends(get_ctx),
):
    return ctx.catalog.list_products(category=category, search=search, sort=sort)


@router.get("/api/products/{product_id}")
async def get_product(product_id: int, ctx: ShopContext = Depends(get_ctx)):
    product = ctx.catalog.get(product_id)
    if product is None:
        raise errors.NotFound("Product not found")
    return product


@router.get("/api/categories")
async def list_categories(ctx: ShopContext = Depends(get_ctx)):
    return ctx.catalog.categories()


@router.post("/api/products", status_code=201)
async def create_product(
    req: ProductCreateRequest,
    _writer: Principal | None = Depends(product_writer),
    ctx: ShopContext = Depends(get_ctx),
):
    if random.random() < CREATE_DELAY_PROBABILITY:
        delay = CREATE_DELAY_SECONDS * ctx.settings.simulated_delay_scale
        logger.info("[API DELAY] Adding a %ss delay to POST /api/products", delay)
        await asyncio.sleep(delay)

    if not req.name or req.price is None or not req.category:
        raise errors.ValidationError("Name, price, and category are required fields.")
    if req.price < 0:
        raise errors.ValidationError("Price must not be negative.")

    if ctx.catalog.find_by_name(req.name) is not None:
        raise errors.Conflict(f'Product name "{req.name}" is already in use.')

    product = ctx.catalog.create(
        name=req.name,
        price=req.price,
        category=req.category,
        description=req.description,
        image=req.image,
        stock=req.stock,
    )
    logger.info("Product %s created: %s", product["id"], product["name"])
    return product


@router.put("/api/products/{product_id}")
async def update_product(
    product_id: int,
    req: ProductUpdateRequest,
    _writer: Principal | None = Depends(product_writer),
    ctx: ShopContext = Depends(get_ctx),
):
    product = ctx.catalog.update(product_id, req.model_dump(exclude_unset=True))
    if product is None:
        raise errors.NotFound("Product not found")
    return product


@router.delete("/api/products/{product_id}")
async def delete_product(
    product_id: int,
    _writer: Principal | None = Depends(product_writer),
    ctx: ShopContext = Depends(get_ctx),
):
    product = ctx.catalog.delete(product_id)
    if product is None:
        raise errors.NotFound("Product not found")
    logger.info("Product %s deleted", product_id)
    return {"success": True, "product": product}


# ── ユーザー ─────────────────────────────────────


@router.get("/api/user/profile")
async def user_profile(principal: Principal = Depends(require_auth)):
    if principal.is_service_account:
        return {
            "id": principal.subject,
            "clientId": principal.client_id,
            "canCheckout": principal.can_checkout,
            "role": "admin" if principal.has_role("admin") else "user",
            "roles": list(principal.roles),
        }
    return {
        "id": principal.subject,
        "email": principal.email,
        "username": principal.username or principal.name,
        "firstName": principal.first_name,
        "lastName": principal.last_name,
        "name": principal.name,
        "canCheckout": principal.can_checkout,
        "role": "admin" if principal.has_role("admin") else "user",
        "roles": list(principal.roles),
    }


# ── カート ───────────────────────────────────────


@router.get("/api/cart")
async def get_cart(request: Request, ctx: ShopContext = Depends(get_ctx)):
    return ctx.carts.items(get_session_id(request))


@router.post("/api/cart")
async def add_to_cart(
    req: AddToCartRequest,
    request: Request,
    principal: Principal | None = Depends(optional_auth),
    ctx: ShopContext = Depends(get_ctx),
):
    product = ctx.catalog.get(req.product_id)
    if product is None:
        raise errors.NotFound("Product not found")

    session_id = get_session_id(request)
    cart = ctx.carts.add(session_id, product, req.quantity)
    logger.info(
        "Added product %s x%d to cart (owner=%s)",
        req.product_id,
        req.quantity,
        principal.subject if principal else "anonymous",
    )
    return {"success": True, "cart": cart}


@router.put("/api/cart/{product_id}")
async def update_cart_item(
    product_id: int,
    req: UpdateCartRequest,
    request: Request,
    ctx: ShopContext = Depends(get_ctx),
):
    cart = ctx.carts.set_quantity(get_session_id(request), product_id, req.quantity)
    return {"success": True, "cart": cart}


@router.delete("/api/cart/{product_id}")
async def remove_cart_item(
    product_id: int,
    request: Request,
    ctx: ShopContext = Depends(get_ctx),
):
    cart = ctx.carts.remove(get_session_id(request), product_id)
    return {"success": True, "cart": cart}


# ── チェックアウト・注文 ─────────────────────────


@router.post("/api/checkout")
async def checkout(
    req: CheckoutRequest,
    request: Request,
    principal: Principal = Depends(require_auth),
    ctx: ShopContext = Depends(get_ctx),
):
    """チェックアウト Saga を実行する"""
    return await ctx.checkout.execute(
        get_session_id(request),
        principal,
        shipping_address=req.shipping_address,
        payment_method=req.payment_method,
    )


@router.get("/api/orders")
async def list_orders(
    principal: Principal = Depends(require_auth),
    ctx: ShopContext = Depends(get_ctx),
):
    try:
        async with ctx.session_factory() as session:
            return await queries.list_orders(session, principal.subject)
    except SQLAlchemyError as e:
        logger.error("Error fetching orders: %s", e)
        raise errors.UpstreamFailure("Failed to fetch orders", status_code=500) from e


@router.get("/api/orders/{order_id}")
async def get_order(
    order_id: int,
    principal: Principal = Depends(require_auth),
    ctx: ShopContext = Depends(get_ctx),
):
    try:
        async with ctx.session_factory() as session:
            order = await queries.get_order(session, order_id)
    except SQLAlchemyError as e:
        logger.error("Error fetching order %s: %s", order_id, e)
        raise errors.UpstreamFailure("Failed to fetch order", status_code=500) from e

    if order is None:
        raise errors.NotFound("Order not found")
    if order["userId"] != principal.subject:
        raise errors.Forbidden("Unauthorized")
    return order


@router.get("/health")
async def health():
    return {"status": "ok", "service": "shop-api"}


def _create_engine(settings: Settings) -> AsyncEngine:
    # SQLite (テスト用) はプールサイズを受け付けない
    if settings.database_url.startswith("sqlite"):
        return create_async_engine(settings.database_url, echo=False)
    return create_async_engine(
        settings.database_url, echo=False, pool_size=settings.database_pool_size
    )


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env("shop-api")
    configure_logging(settings.service_name, settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = _create_engine(settings)
        try:
            await init_db(engine)
            session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

            async with httpx.AsyncClient(transport=transport) as http:
                token_client = ServiceTokenClient.from_settings(http, settings)
                carts = CartStore()
                notifier = NotificationClient(
                    http,
                    settings.notification_service_url,
                    token_client,
                    timeout=settings.notification_timeout,
                )
                app.state.ctx = ShopContext(
                    settings=settings,
                    verifier=build_verifier(http, settings),
                    engine=engine,
                    session_factory=session_factory,
                    token_client=token_client,
                    carts=carts,
                    checkout=CheckoutOrchestrator(
                        session_factory,
                        carts,
                        notifier,
                        notification_timeout=settings.notification_timeout,
                    ),
                )
                logger.info("Shop API protected by Keycloak JWT (issuer: %s)", settings.issuer)
                yield
        finally:
            await engine.dispose()

    app = FastAPI(title="Shop API", lifespan=lifespan)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        max_age=SESSION_MAX_AGE,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)
    install_request_logging(app)
    app.include_router(router)
    return app


app = create_app()
