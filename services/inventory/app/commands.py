"""
Inventory Service — コマンドハンドラ (Write 側)

在庫の引き当て (Reserve) と解放 (Release) を処理する。

引き当てはバッチ単位で all-or-nothing:
1 商品でも不足していれば何も減算せずに 409 を返す。
不足チェックから減算までの間に await を挟まないため、
イベントループ上では 1 つのクリティカルセクションとして実行される。
"""

import logging
import time
import uuid
from datetime import datetime, timezone

from services.shared import errors

from .aggregate import Reservation, StockLedger

logger = logging.getLogger(__name__)


def new_reservation_id(order_id: str) -> str:
    # 同じ注文・同じミリ秒でも一意
    return f"res-{int(time.time() * 1000)}-{order_id}-{uuid.uuid4().hex[:8]}"


def reserve_inventory(
    ledger: StockLedger,
    order_id: str,
    items: list[tuple[int, int]],
) -> dict:
    """
    在庫引き当てコマンド

    1. バッチ全体の不足をチェック
    2. 不足があれば InsufficientStock (在庫は変更しない)
    3. なければ全商品を減算して Reservation を記録
    """
    now = datetime.now(timezone.utc)

    unavailable = ledger.shortages(items)
    if unavailable:
        logger.warning(
            "Reservation failed - insufficient stock: order=%s unavailable=%s",
            order_id,
            unavailable,
        )
        raise errors.InsufficientStock(
            "Insufficient stock",
            success=False,
            unavailableItems=unavailable,
            timestamp=now.isoformat(),
        )

    reservation = Reservation(
        reservation_id=new_reservation_id(order_id),
        order_id=order_id,
        items=list(items),
        created_at=now,
    )
    reserved = ledger.apply_reservation(reservation)

    logger.info(
        "Inventory reservation successful: order=%s reservation=%s items=%d",
        order_id,
        reservation.reservation_id,
        len(reserved),
    )
    return {
        "success": True,
        "reservationId": reservation.reservation_id,
        "orderId": order_id,
        "items": reserved,
        "timestamp": now.isoformat(),
    }


def release_inventory(ledger: StockLedger, reservation_id: str) -> dict:
    """
    在庫解放コマンド (注文失敗時の補償)

    予約を削除するので、同じ ID で 2 回目を呼ぶと NotFound になる。
    """
    reservation = ledger.reservations.get(reservation_id)
    if reservation is None:
        logger.warning("Reservation not found: %s", reservation_id)
        raise errors.NotFound(
            "Reservation not found", success=False, reservationId=reservation_id
        )

    released = ledger.apply_release(reservation)

    logger.info(
        "Inventory release successful: reservation=%s order=%s items=%d",
        reservation_id,
        reservation.order_id,
        len(released),
    )
    return {
        "success": True,
        "reservationId": reservation_id,
        "orderId": reservation.order_id,
        "releasedItems": released,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
