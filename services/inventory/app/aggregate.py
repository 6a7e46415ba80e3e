"""
Inventory Service — 在庫集約 (Stock Ledger)

商品ごとの在庫数と、有効な予約 (Reservation) を保持する。
状態はすべてプロセス内メモリ。サービスを再起動すると初期在庫に戻る。

予約の状態遷移:
    Unreserved → Reserved   (reserve: 在庫を減算して予約を記録)
    Reserved   → Released   (release: 在庫を戻して予約を削除)

予約に有効期限はない。放置された予約は在庫を確保したままになる。
"""

from dataclasses import dataclass
from datetime import datetime

# 商品 ID は Shop API のカタログと一致させる
SEED_STOCK: dict[int, tuple[str, int]] = {
    1: ('MacBook Pro 16"', 50),
    2: ("iPhone 15 Pro", 200),
    3: ("iPad Air", 150),
    4: ("AirPods Pro", 75),
    5: ("Apple Watch Series 9", 30),
    6: ("Magic Keyboard", 100),
    7: ("Studio Display", 80),
    8: ("Mac Mini M2", 120),
    9: ("HomePod Mini", 60),
    10: ("AirTag 4 Pack", 90),
}


@dataclass
class StockItem:
    product_id: int
    name: str
    stock: int


@dataclass
class Reservation:
    reservation_id: str
    order_id: str
    items: list[tuple[int, int]]
    created_at: datetime


class StockLedger:
    def __init__(self, seed: dict[int, tuple[str, int]] | None = None) -> None:
        seed = SEED_STOCK if seed is None else seed
        self.products: dict[int, StockItem] = {
            product_id: StockItem(product_id, name, stock)
            for product_id, (name, stock) in seed.items()
        }
        self.reservations: dict[str, Reservation] = {}

    def get(self, product_id: int) -> StockItem | None:
        return self.products.get(product_id)

    def stock_of(self, product_id: int) -> int:
        item = self.products.get(product_id)
        return item.stock if item else 0

    def shortages(self, items: list[tuple[int, int]]) -> list[dict]:
        """
        在庫が足りない商品の一覧を返す。空なら全商品を確保できる。

        同じ商品が複数行に分かれていても合計数量で判定する。
        """
        requested: dict[int, int] = {}
        for product_id, quantity in items:
            requested[product_id] = requested.get(product_id, 0) + quantity

        return [
            {
                "productId": product_id,
                "requestedQuantity": quantity,
                "availableStock": self.stock_of(product_id),
            }
            for product_id, quantity in requested.items()
            if product_id not in self.products or self.stock_of(product_id) < quantity
        ]

    def apply_reservation(self, reservation: Reservation) -> list[dict]:
        reserved = []
        for product_id, quantity in reservation.items:
            item = self.products[product_id]
            item.stock -= quantity
            reserved.append(
                {
                    "productId": product_id,
                    "quantity": quantity,
                    "productName": item.name,
                    "remainingStock": item.stock,
                }
            )
        self.reservations[reservation.reservation_id] = reservation
        return reserved

    def apply_release(self, reservation: Reservation) -> list[dict]:
        released = []
        for product_id, quantity in reservation.items:
            item = self.products.get(product_id)
            if item is None:
                continue
            item.stock += quantity
            released.append(
                {"productId": product_id, "quantity": quantity, "newStock": item.stock}
            )
        del self.reservations[reservation.reservation_id]
        return released
