"""
Shop API — コマンドハンドラ (Write 側)

注文の作成。orders に 1 行、order_items にカート行ごとに 1 行を
1 つのトランザクションで INSERT する。どれか 1 行でも失敗すれば
ロールバックされ、注文も明細も残らない。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import insert
from sqlalchemy.orm import sessionmaker

from .schema import order_items, orders

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("credit-card", "paypal", "bank-transfer")


def order_total(lines: list[dict]) -> float:
    return round(sum(line["product"]["price"] * line["quantity"] for line in lines), 2)


async def place_order(
    session_factory: sessionmaker,
    user_id: str,
    user_email: str | None,
    user_name: str | None,
    lines: list[dict],
    shipping_address: dict,
    payment_method: str,
) -> dict:
    """
    注文作成コマンド

    1. カートのスナップショットから合計金額を計算
    2. orders と order_items を同一トランザクションで INSERT
    3. コミット後の注文を返す

    session.begin() を抜けるときに例外があればロールバックされ、
    接続はどの経路でもプールに返却される。
    """
    now = datetime.now(timezone.utc)
    total = order_total(lines)

    async with session_factory() as session:
        async with session.begin():
            result = await session.execute(
                insert(orders).values(
                    user_id=user_id,
                    user_email=user_email,
                    user_name=user_name,
                    total=total,
                    shipping_address=shipping_address,
                    payment_method=payment_method,
                    status="pending",
                    created_at=now,
                )
            )
            order_id = result.inserted_primary_key[0]

            for line in lines:
                await session.execute(
                    insert(order_items).values(
                        order_id=order_id,
                        product_id=line["productId"],
                        product_name=line["product"]["name"],
                        quantity=line["quantity"],
                        price=line["product"]["price"],
                    )
                )

    logger.info("Order %s saved to database (%d items, total %.2f)", order_id, len(lines), total)

    return {
        "id": order_id,
        "userId": user_id,
        "items": [
            {
                "productId": line["productId"],
                "productName": line["product"]["name"],
                "quantity": line["quantity"],
                "price": line["product"]["price"],
            }
            for line in lines
        ],
        "total": total,
        "shippingAddress": shipping_address,
        "paymentMethod": payment_method,
        "status": "pending",
        "createdAt": now.isoformat(),
    }
