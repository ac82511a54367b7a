"""
Stock Ledger — クエリハンドラ (CQRS Read 側)

プロジェクションと台帳の単純な読み取り。品目ごとのロックは取らない。
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .deltas import LedgerKind
from .models import (
    LedgerEntry,
    LogPage,
    Projection,
    ProjectionFilter,
    StockLevel,
    StockSummary,
    Totals,
)
from .schema import inventory_ledger, inventory_projection, items
from .status import StockStatus, classify

MAX_PAGE_SIZE = 500


def row_to_projection(row) -> Projection:
    # ステータスは書き込み時の保存値ではなく品目の現在のしきい値で決める
    return Projection(
        item_id=UUID(row.item_id),
        quantity=row.quantity,
        status=classify(row.quantity, row.min_stock),
        updated_at=row.updated_at,
        version=row.version,
    )


def row_to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        item_id=UUID(row.item_id),
        version=row.version,
        kind=LedgerKind(row.kind),
        quantity_change=row.quantity_change,
        quantity_before=row.quantity_before,
        quantity_after=row.quantity_after,
        reference_type=row.reference_type,
        reference_id=row.reference_id,
        note=row.note,
        loss_reason=row.loss_reason,
        actor_id=row.actor_id,
        created_at=row.created_at,
    )


async def get_projection(session: AsyncSession, item_id: UUID) -> Projection | None:
    result = await session.execute(
        select(inventory_projection, items.c.min_stock)
        .join(items, items.c.id == inventory_projection.c.item_id)
        .where(inventory_projection.c.item_id == str(item_id))
    )
    row = result.first()
    return row_to_projection(row) if row else None


async def list_projections(
    session: AsyncSession,
    flt: ProjectionFilter | None = None,
) -> list[StockLevel]:
    """
    品目ごとの現在在庫 (更新の新しい順)。

    ステータスは数量と品目の現在の min_stock から再計算するので、
    カタログでしきい値を変えれば書き込みなしで反映される。
    """
    flt = flt or ProjectionFilter()
    stmt = (
        select(
            inventory_projection.c.item_id,
            inventory_projection.c.quantity,
            inventory_projection.c.updated_at,
            items.c.sku,
            items.c.name,
            items.c.unit,
            items.c.min_stock,
        )
        .join(items, items.c.id == inventory_projection.c.item_id)
        .order_by(inventory_projection.c.updated_at.desc(), items.c.name)
    )
    if flt.item_ids:
        stmt = stmt.where(
            inventory_projection.c.item_id.in_([str(i) for i in flt.item_ids])
        )
    if flt.search:
        pattern = f"%{flt.search.strip()}%"
        stmt = stmt.where(or_(items.c.sku.ilike(pattern), items.c.name.ilike(pattern)))

    result = await session.execute(stmt)
    levels = [
        StockLevel(
            item_id=UUID(row.item_id),
            sku=row.sku,
            name=row.name,
            unit=row.unit,
            min_stock=row.min_stock,
            quantity=row.quantity,
            status=classify(row.quantity, row.min_stock),
            updated_at=row.updated_at,
        )
        for row in result.fetchall()
    ]
    if flt.status is not None:
        levels = [lv for lv in levels if lv.status is flt.status]
    return levels


async def read_log(
    session: AsyncSession,
    *,
    item_id: UUID | None = None,
    kind: LedgerKind | None = None,
    cursor: int | None = None,
    limit: int = 50,
    since: datetime | None = None,
    until: datetime | None = None,
) -> LogPage:
    """
    台帳エントリを新しい順に返す。`cursor` は前ページ最後のエントリの id で、
    次ページはそれより小さい id から始まる。
    """
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    stmt = select(inventory_ledger).order_by(inventory_ledger.c.id.desc())
    if item_id is not None:
        stmt = stmt.where(inventory_ledger.c.item_id == str(item_id))
    if kind is not None:
        stmt = stmt.where(inventory_ledger.c.kind == kind.value)
    if cursor is not None:
        stmt = stmt.where(inventory_ledger.c.id < cursor)
    if since is not None:
        stmt = stmt.where(inventory_ledger.c.created_at >= since)
    if until is not None:
        stmt = stmt.where(inventory_ledger.c.created_at <= until)

    result = await session.execute(stmt.limit(limit + 1))
    rows = result.fetchall()
    entries = [row_to_entry(row) for row in rows[:limit]]
    next_cursor = entries[-1].id if len(rows) > limit else None
    return LogPage(entries=entries, next_cursor=next_cursor)


async def totals(session: AsyncSession) -> Totals:
    result = await session.execute(
        select(
            func.coalesce(func.sum(inventory_projection.c.quantity), 0),
            func.count(inventory_projection.c.item_id),
        )
    )
    total_quantity, count = result.one()
    return Totals(total_quantity=int(total_quantity), distinct_item_count=int(count))


async def summary(session: AsyncSession) -> StockSummary:
    levels = await list_projections(session)
    counts = {status: 0 for status in StockStatus}
    for level in levels:
        counts[level.status] += 1
    return StockSummary(
        total_quantity=sum(level.quantity for level in levels),
        total_products=len(levels),
        in_stock_count=counts[StockStatus.IN_STOCK],
        low_stock_count=counts[StockStatus.LOW_STOCK],
        out_of_stock_count=counts[StockStatus.OUT_OF_STOCK],
    )
