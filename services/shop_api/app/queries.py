"""
Shop API — クエリハンドラ (Read 側)

注文と明細を読み出し、フロントエンド向けの形に整える。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_items, orders


def _order_to_dict(row, items: list[dict]) -> dict:
    return {
        "id": row.id,
        "userId": row.user_id,
        "total": float(row.total),
        "shippingAddress": row.shipping_address,
        "paymentMethod": row.payment_method,
        "status": row.status,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "items": items,
    }


async def _load_items(session: AsyncSession, order_ids: list[int]) -> dict[int, list[dict]]:
    if not order_ids:
        return {}
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.id)
    )
    grouped: dict[int, list[dict]] = {}
    for row in result.fetchall():
        grouped.setdefault(row.order_id, []).append(
            {
                "productId": row.product_id,
                "productName": row.product_name,
                "quantity": row.quantity,
                "price": float(row.price),
            }
        )
    return grouped


async def list_orders(session: AsyncSession, user_id: str) -> list[dict]:
    """ユーザーの注文一覧 (新しい順)"""
    result = await session.execute(
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc(), orders.c.id.desc())
    )
    rows = result.fetchall()
    items = await _load_items(session, [row.id for row in rows])
    return [_order_to_dict(row, items.get(row.id, [])) for row in rows]


async def get_order(session: AsyncSession, order_id: int) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    items = await _load_items(session, [row.id])
    return _order_to_dict(row, items.get(row.id, []))

