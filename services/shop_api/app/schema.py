"""
Shop API — 注文テーブル定義

orders と order_items の 2 テーブル。注文と明細は同じトランザクションで INSERT する。
本番は PostgreSQL (asyncpg)、テストは SQLite (aiosqlite) で同じ定義を使う。
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False, index=True),
    Column("user_email", String(255)),
    Column("user_name", String(255)),
    Column("total", Numeric(10, 2, asdecimal=False), nullable=False),
    Column("shipping_address", JSON, nullable=False),
    Column("payment_method", String(50), nullable=False),
    Column("status", String(50), nullable=False, default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("product_id", Integer, nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", Numeric(10, 2, asdecimal=False), nullable=False),
)


async def init_db(engine: AsyncEngine) -> None:
    """テーブルがなければ作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
