"""
Notification Service — 注文確認メールの送信シミュレーション

実際のメールは送らない。テンプレートのレンダリング時間だけを再現し、
内容をログに出力する。
"""

import asyncio
import logging
import time
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

BASIC_TEMPLATE = "order_confirmation_basic"
PREMIUM_TEMPLATE = "order_confirmation_premium"
RENDER_MS = {BASIC_TEMPLATE: 50, PREMIUM_TEMPLATE: 3000}


def choose_template(user_id: str | None, slow_template_users: set[str]) -> str:
    if user_id is not None and str(user_id) in slow_template_users:
        return PREMIUM_TEMPLATE
    return BASIC_TEMPLATE


async def send_order_confirmation(
    order: dict,
    template: str,
    calling_client: str,
    scale: float = 1.0,
) -> dict:
    """テンプレートをレンダリングし、メール送信をログで再現する。"""
    render_ms = RENDER_MS[template]
    items = order.get("items") or []

    logger.info(
        "New order notification: order=%s user=%s <%s> total=EUR %s items=%d from=%s template=%s",
        order.get("orderId"),
        order.get("userName"),
        order.get("userEmail"),
        order.get("total"),
        len(items),
        calling_client,
        template,
    )
    for item in items:
        logger.info(
            "  - %s x%s @ EUR %s",
            item.get("productName"),
            item.get("quantity"),
            item.get("price"),
        )

    if template == PREMIUM_TEMPLATE:
        logger.info("Rendering %s...", template)
    await asyncio.sleep(render_ms / 1000 * scale)
    if template == PREMIUM_TEMPLATE:
        logger.info("Template rendering took %dms", render_ms)

    logger.info(
        "Simulated email to=%s subject=%r",
        order.get("userEmail"),
        f"Order Confirmation #{order.get('orderId')}",
    )

    return {
        "success": True,
        "notificationId": f"notif-{int(time.time() * 1000)}-{order.get('orderId')}",
        "template": template,
        "renderTime": render_ms,
        "message": "Order notification sent",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
