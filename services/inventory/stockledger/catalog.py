"""
Stock Ledger — 品目マスタ

カタログ(魚種・SKU・しきい値)はダッシュボードの別機能が管理する。
台帳は読むだけ。`register_item` はシード投入用。
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Item
from .schema import items


def _row_to_item(row) -> Item:
    return Item(
        id=UUID(row.id),
        sku=row.sku,
        name=row.name,
        min_stock=row.min_stock,
        unit=row.unit,
    )


async def get_item(session: AsyncSession, item_id: UUID) -> Item | None:
    result = await session.execute(select(items).where(items.c.id == str(item_id)))
    row = result.fetchone()
    return _row_to_item(row) if row else None


async def register_item(session: AsyncSession, item: Item) -> Item:
    """品目を登録または更新する。コミットは呼び出し側。"""
    values = {
        "sku": item.sku,
        "name": item.name,
        "min_stock": item.min_stock,
        "unit": item.unit,
    }
    result = await session.execute(
        update(items).where(items.c.id == str(item.id)).values(**values)
    )
    if result.rowcount == 0:
        await session.execute(items.insert().values(id=str(item.id), **values))
    return item
