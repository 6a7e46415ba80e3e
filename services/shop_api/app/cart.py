"""
Shop API — セッションカート

カートはセッション ID ごとにプロセス内メモリで保持する (永続化しない)。
各行は {productId, quantity, product} で、product は追加時点のスナップショット。
"""

from services.shared import errors


class CartStore:
    def __init__(self) -> None:
        self._carts: dict[str, list[dict]] = {}

    def get(self, session_id: str) -> list[dict] | None:
        return self._carts.get(session_id)

    def items(self, session_id: str) -> list[dict]:
        return self._carts.get(session_id, [])

    def snapshot(self, session_id: str) -> list[dict]:
        return [
            {**line, "product": dict(line["product"])}
            for line in self._carts.get(session_id, [])
        ]

    def add(self, session_id: str, product: dict, quantity: int) -> list[dict]:
        """同じ商品が既にあれば数量を加算し、なければ行を追加する。"""
        cart = self._carts.setdefault(session_id, [])
        for line in cart:
            if line["productId"] == product["id"]:
                line["quantity"] += quantity
                return cart

        cart.append({"productId": product["id"], "quantity": quantity, "product": dict(product)})
        return cart

    def set_quantity(self, session_id: str, product_id: int, quantity: int) -> list[dict]:
        """数量を変更する。0 以下なら行を削除する。"""
        cart = self._require(session_id)
        for line in cart:
            if line["productId"] == product_id:
                break
        else:
            raise errors.NotFound("Item not found in cart")

        if quantity <= 0:
            cart[:] = [line for line in cart if line["productId"] != product_id]
        else:
            line["quantity"] = quantity
        return cart

    def remove(self, session_id: str, product_id: int) -> list[dict]:
        cart = self._require(session_id)
        cart[:] = [line for line in cart if line["productId"] != product_id]
        return cart

    def clear(self, session_id: str) -> None:
        self._carts.pop(session_id, None)

    def restore(self, session_id: str, lines: list[dict]) -> list[dict]:
        """取り出したカートを戻す。その間に追加された行は後ろに合流させる。"""
        added = self._carts.pop(session_id, [])
        self._carts[session_id] = lines
        for line in added:
            self.add(session_id, line["product"], line["quantity"])
        return self._carts[session_id]

    def _require(self, session_id: str) -> list[dict]:
        cart = self._carts.get(session_id)
        if cart is None:
            raise errors.NotFound("Cart not found")
        return cart
