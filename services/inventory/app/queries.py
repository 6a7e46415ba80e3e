"""
Inventory Service — クエリハンドラ (Read 側)
"""

from datetime import datetime, timezone

from .aggregate import StockLedger


def check_availability(
    ledger: StockLedger,
    items: list[tuple[int, int]],
    simulate_out_of_stock: bool = False,
) -> dict:
    """在庫を減算せずに、各商品が確保できるかを返す。"""
    if simulate_out_of_stock:
        results = [
            {
                "productId": product_id,
                "requestedQuantity": quantity,
                "available": False,
                "stock": 0,
                "reason": "Out of stock (simulated)",
            }
            for product_id, quantity in items
        ]
    else:
        results = []
        for product_id, quantity in items:
            item = ledger.get(product_id)
            results.append(
                {
                    "productId": product_id,
                    "requestedQuantity": quantity,
                    "available": item is not None and item.stock >= quantity,
                    "stock": item.stock if item else 0,
                    "productName": item.name if item else "Unknown",
                }
            )

    return {
        "available": all(r["available"] for r in results),
        "items": results,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def stock_levels(ledger: StockLedger) -> dict:
    return {
        "products": [
            {"productId": item.product_id, "name": item.name, "stock": item.stock}
            for item in ledger.products.values()
        ],
        "activeReservations": len(ledger.reservations),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
