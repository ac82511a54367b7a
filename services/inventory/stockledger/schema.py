"""
Stock Ledger — テーブル定義

items                 : 品目マスタ (台帳からは読み取りのみ)
inventory_projection  : 品目ごとの現在数量 / ステータス、CAS 用の version
inventory_ledger      : 追記専用の監査ログ、UNIQUE(item_id, version)

(item_id, version) 制約がストレージ側のロストアップデート防止。
同じプロジェクション version を読んだ2つの書き込みが
両方とも次のエントリを挿入することはできない。
"""

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """どのバックエンドでも UTC の aware datetime を返す (SQLite は tzinfo を落とす)"""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


metadata = MetaData()

items = Table(
    "items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("sku", String(64), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("min_stock", Integer, nullable=False, default=10),
    Column("unit", String(16), nullable=False, default="kg"),
)

inventory_projection = Table(
    "inventory_projection",
    metadata,
    Column("item_id", String(36), ForeignKey("items.id"), primary_key=True),
    Column("quantity", Integer, nullable=False, default=0),
    Column("status", String(16), nullable=False),
    Column("version", Integer, nullable=False, default=0),
    Column("updated_at", UTCDateTime, nullable=False),
    CheckConstraint("quantity >= 0", name="ck_projection_quantity_non_negative"),
)

inventory_ledger = Table(
    "inventory_ledger",
    metadata,
    Column(
        "id",
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    ),
    Column("item_id", String(36), ForeignKey("items.id"), nullable=False),
    Column("version", Integer, nullable=False),
    Column("kind", String(16), nullable=False),
    Column("quantity_change", Integer, nullable=False),
    Column("quantity_before", Integer, nullable=False),
    Column("quantity_after", Integer, nullable=False),
    Column("reference_type", String(64)),
    Column("reference_id", String(64)),
    Column("note", Text),
    Column("loss_reason", Text),
    Column("actor_id", String(64), nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    UniqueConstraint("item_id", "version", name="uq_ledger_item_version"),
    CheckConstraint("quantity_after >= 0", name="ck_ledger_after_non_negative"),
    CheckConstraint(
        "quantity_after = quantity_before + quantity_change",
        name="ck_ledger_quantity_chain",
    ),
)

Index("ix_ledger_kind_id", inventory_ledger.c.kind, inventory_ledger.c.id)
Index("ix_ledger_created_at", inventory_ledger.c.created_at)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
