"""
Shop API — 商品カタログ

商品はプロセス内メモリで保持する (起動時に初期データを読み込む)。
ID は作成時に max(id) + 1 で採番する。
"""

import copy

PLACEHOLDER_IMAGE = "https://via.placeholder.com/300x200?text=Product"

SEED_PRODUCTS: list[dict] = [
    {
        "id": 1,
        "name": 'MacBook Pro 16"',
        "description": "M3 Pro chip, 18GB RAM, 512GB SSD, Liquid Retina XDR display",
        "price": 2499.00,
        "category": "electronics",
        "image": "https://via.placeholder.com/300x200?text=MacBook+Pro",
        "stock": 50,
    },
    {
        "id": 2,
        "name": "iPhone 15 Pro",
        "description": "Titanium design, A17 Pro chip, 128GB",
        "price": 1199.00,
        "category": "electronics",
        "image": "https://via.placeholder.com/300x200?text=iPhone+15+Pro",
        "stock": 200,
    },
    {
        "id": 3,
        "name": "iPad Air",
        "description": "M1 chip, 10.9-inch Liquid Retina display, 64GB",
        "price": 699.00,
        "category": "electronics",
        "image": "https://via.placeholder.com/300x200?text=iPad+Air",
        "stock": 150,
    },
    {
        "id": 4,
        "name": "AirPods Pro",
        "description": "Active noise cancellation, USB-C charging case",
        "price": 279.00,
        "category": "audio",
        "image": "https://via.placeholder.com/300x200?text=AirPods+Pro",
        "stock": 75,
    },
    {
        "id": 5,
        "name": "Apple Watch Series 9",
        "description": "GPS, 45mm aluminium case, sport band",
        "price": 449.00,
        "category": "electronics",
        "image": "https://via.placeholder.com/300x200?text=Apple+Watch",
        "stock": 30,
    },
    {
        "id": 6,
        "name": "Magic Keyboard",
        "description": "Wireless keyboard with Touch ID and numeric keypad",
        "price": 119.00,
        "category": "accessories",
        "image": "https://via.placeholder.com/300x200?text=Magic+Keyboard",
        "stock": 100,
    },
    {
        "id": 7,
        "name": "Studio Display",
        "description": "27-inch 5K Retina display, 12MP Ultra Wide camera",
        "price": 1749.00,
        "category": "electronics",
        "image": "https://via.placeholder.com/300x200?text=Studio+Display",
        "stock": 80,
    },
    {
        "id": 8,
        "name": "Mac Mini M2",
        "description": "M2 chip, 8GB RAM, 256GB SSD",
        "price": 729.00,
        "category": "electronics",
        "image": "https://via.placeholder.com/300x200?text=Mac+Mini",
        "stock": 120,
    },
    {
        "id": 9,
        "name": "HomePod Mini",
        "description": "Smart speaker with 360-degree audio",
        "price": 109.00,
        "category": "audio",
        "image": "https://via.placeholder.com/300x200?text=HomePod+Mini",
        "stock": 60,
    },
    {
        "id": 10,
        "name": "AirTag 4 Pack",
        "description": "Keep track of your keys, wallet, luggage and more",
        "price": 129.00,
        "category": "accessories",
        "image": "https://via.placeholder.com/300x200?text=AirTag",
        "stock": 90,
    },
]

SORTS = {
    "price-asc": (lambda p: p["price"], False),
    "price-desc": (lambda p: p["price"], True),
    "name": (lambda p: p["name"].lower(), False),
}


class ProductCatalog:
    def __init__(self, products: list[dict] | None = None) -> None:
        self._products: list[dict] = copy.deepcopy(SEED_PRODUCTS if products is None else products)

    def list_products(
        self,
        category: str | None = None,
        search: str | None = None,
        sort: str | None = None,
    ) -> list[dict]:
        products = [dict(p) for p in self._products]

        if category:
            products = [p for p in products if p["category"] == category]

        if search:
            needle = search.lower()
            products = [
                p
                for p in products
                if needle in p["name"].lower() or needle in p["description"].lower()
            ]

        if sort in SORTS:
            key, reverse = SORTS[sort]
            products.sort(key=key, reverse=reverse)

        return products

    def get(self, product_id: int) -> dict | None:
        for product in self._products:
            if product["id"] == product_id:
                return dict(product)
        return None

    def categories(self) -> list[str]:
        return list(dict.fromkeys(p["category"] for p in self._products))

    def find_by_name(self, name: str) -> dict | None:
        lowered = name.lower()
        for product in self._products:
            if product["name"].lower() == lowered:
                return dict(product)
        return None

    def create(
        self,
        name: str,
        price: float,
        category: str,
        description: str | None = None,
        image: str | None = None,
        stock: int | None = None,
    ) -> dict:
        product = {
            "id": max((p["id"] for p in self._products), default=0) + 1,
            "name": name,
            "description": description or "",
            "price": float(price),
            "category": category,
            "image": image or PLACEHOLDER_IMAGE,
            "stock": stock if stock is not None else 0,
        }
        self._products.append(product)
        return dict(product)

    def update(self, product_id: int, changes: dict) -> dict | None:
        """指定されたフィールドだけを更新する。"""
        for product in self._products:
            if product["id"] == product_id:
                product.update(changes)
                return dict(product)
        return None

    def delete(self, product_id: int) -> dict | None:
        for index, product in enumerate(self._products):
            if product["id"] == product_id:
                return self._products.pop(index)
        return None
