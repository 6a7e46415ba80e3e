"""
Shop API — チェックアウト Saga

オーケストレーション型の Saga。Shop API 自身が各ステップを順に実行する。

  フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  0. 事前条件: カートが空でない / canCheckout /            │
  │     shippingAddress・paymentMethod がある                │
  │  1. カートを取り出し、orders + order_items を            │
  │     1 トランザクションで保存                             │
  │     └─ 失敗 → ロールバック、カートを元に戻す (500)       │
  │  2. サービストークンを取得して Notification に通知        │
  │     └─ 失敗・タイムアウトはログだけ残して握りつぶす       │
  └─────────────────────────────────────────────────────────┘

在庫引き当てと決済は呼び出さない (デモの簡略化)。注文は pending のまま残る。
"""

import asyncio
import logging

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from services.shared import errors
from services.shared.auth import Principal
from services.shared.service_token import ServiceTokenClient

from . import commands
from .cart import CartStore

logger = logging.getLogger(__name__)


class NotificationClient:
    """Notification Service への M2M 呼び出し"""

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        token_client: ServiceTokenClient,
        timeout: float = 5.0,
    ) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._token_client = token_client
        self._timeout = timeout

    async def send_order_notification(self, order: dict, principal: Principal) -> dict:
        token = await self._token_client.get_service_token()
        resp = await self._http.post(
            f"{self._base_url}/api/notifications/order",
            json={
                "orderId": order["id"],
                "userId": principal.subject,
                "userEmail": getattr(principal, "email", None),
                "userName": getattr(principal, "name", None),
                "total": order["total"],
                "items": order["items"],
                "timestamp": order["createdAt"],
            },
            headers={"Authorization": f"Bearer {token}"},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        return resp.json()


class CheckoutOrchestrator:
    """チェックアウト Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        carts: CartStore,
        notifier: NotificationClient,
        notification_timeout: float = 5.0,
    ) -> None:
        self.session_factory = session_factory
        self.carts = carts
        self.notifier = notifier
        self.notification_timeout = notification_timeout

    async def execute(
        self,
        session_id: str,
        principal: Principal,
        shipping_address: dict | None,
        payment_method: str | None,
    ) -> dict:
        # ── Step 0: 事前条件 ────────────────────────
        lines = self.carts.snapshot(session_id)
        if not lines:
            raise errors.ValidationError("Cart is empty")

        if not principal.can_checkout:
            logger.info("Checkout rejected: user %s is not allowed to checkout", principal.subject)
            raise errors.Forbidden("You are not authorized to checkout.")

        if not shipping_address or not payment_method:
            raise errors.ValidationError("Missing required fields")

        if payment_method not in commands.PAYMENT_METHODS:
            raise errors.ValidationError(
                f"Unsupported payment method: {payment_method}",
                allowed=list(commands.PAYMENT_METHODS),
            )

        # ── Step 1: カートを取り出して注文を保存 ────
        # 最初の await より前に空にする。並行するチェックアウトからは空のカートに見える
        self.carts.clear(session_id)
        try:
            order = await commands.place_order(
                self.session_factory,
                user_id=principal.subject,
                user_email=getattr(principal, "email", None),
                user_name=getattr(principal, "name", None),
                lines=lines,
                shipping_address=shipping_address,
                payment_method=payment_method,
            )
        except (SQLAlchemyError, OSError) as e:
            self.carts.restore(session_id, lines)
            logger.error("Checkout failed for user %s: %s", principal.subject, e)
            raise errors.UpstreamFailure("Checkout failed", status_code=500) from e
        except BaseException:
            self.carts.restore(session_id, lines)
            raise

        # ── Step 2: 通知 (失敗しても注文は成功) ─────
        await self._notify(order, principal)

        return {"success": True, "order": order}

    async def _notify(self, order: dict, principal: Principal) -> None:
        try:
            await asyncio.wait_for(
                self.notifier.send_order_notification(order, principal),
                timeout=self.notification_timeout,
            )
            logger.info("Notification sent for order #%s", order["id"])
        except asyncio.TimeoutError:
            logger.error(
                "Failed to send notification for order #%s: timed out after %ss",
                order["id"],
                self.notification_timeout,
            )
        except (httpx.HTTPError, ValueError, errors.ServiceError) as e:
            logger.error("Failed to send notification for order #%s: %s", order["id"], e)
        except Exception:
            # 注文はコミット済み。通知の失敗はレスポンスに出さない
            logger.exception("Failed to send notification for order #%s", order["id"])
