"""
Inventory Service - テーブル定義
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Table,
)

metadata = MetaData()

inventory = Table(
    "inventory",
    metadata,
    Column("sku", String(64), primary_key=True),
    Column("product_name", String(255), nullable=False, default=""),
    Column("quantity", Integer, nullable=False),
    Column("price", Numeric(12, 2), nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
)

# 冪等性台帳: (order_id, event_type) ごとに 1 行
processed_events = Table(
    "processed_events",
    metadata,
    Column("order_id", Integer, nullable=False),
    Column("event_type", String(16), nullable=False),
    Column("event_id", String(64), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("order_id", "event_type"),
)

# 注文ごとに実際に増減した数量。キャンセル時はここに記録された分だけ戻す。
stock_movements = Table(
    "stock_movements",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, nullable=False, index=True),
    Column("event_type", String(16), nullable=False),
    Column("sku", String(64), nullable=False),
    Column("requested", Integer, nullable=False),
    Column("applied", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
