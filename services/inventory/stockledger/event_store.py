"""
Stock Ledger — 台帳ストア

追記専用の台帳と、品目ごとの現在数量プロジェクション。

`append` は1トランザクション: プロジェクションを読み、非負を確認し、
version で CAS 更新し、台帳エントリを挿入する。
同じ品目への書き込みは2つのガードで直列化される:

  1. item_id ごとのプロセス内ロック (高速経路、単一インスタンスのみ)
  2. プロジェクションの version CAS と台帳の UNIQUE(item_id, version)
     (同じ DB を共有する複数インスタンス間でも有効)

(2) で競合に負けると `Conflict` になり、調整エンジンがリトライする。
異なる品目がロックを共有することはない。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import catalog, queries
from .aggregate import StockAggregate
from .deltas import LedgerKind
from .errors import Conflict, InsufficientStock, NotFound, StorageUnavailable
from .models import (
    AppliedChange,
    EntryDraft,
    LedgerEntry,
    LogPage,
    Projection,
    ProjectionFilter,
    ReplayReport,
    StockLevel,
    StockSummary,
    Totals,
)
from .schema import inventory_ledger, inventory_projection
from .status import classify

logger = logging.getLogger(__name__)


class ItemLocks:
    """品目ごとの asyncio ロック。必要時に作り、使われなくなったら破棄する。"""

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._users: dict[UUID, int] = {}

    def locked(self, item_id: UUID) -> bool:
        lock = self._locks.get(item_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, item_id: UUID, timeout: float) -> AsyncIterator[None]:
        """
        品目のロックに入る。`timeout` 秒以内に取れなければ TimeoutError。
        """
        lock = self._locks.setdefault(item_id, asyncio.Lock())
        self._users[item_id] = self._users.get(item_id, 0) + 1
        try:
            async with asyncio.timeout(timeout):
                await lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[item_id] -= 1
            if not self._users[item_id]:
                del self._users[item_id]
                self._locks.pop(item_id, None)


async def load_entries(
    session: AsyncSession,
    item_id: UUID,
    up_to_version: int | None = None,
) -> list[LedgerEntry]:
    """リプレイ用: 1品目のエントリをコミット順に返す"""
    stmt = (
        select(inventory_ledger)
        .where(inventory_ledger.c.item_id == str(item_id))
        .order_by(inventory_ledger.c.version.asc())
    )
    if up_to_version is not None:
        stmt = stmt.where(inventory_ledger.c.version <= up_to_version)
    result = await session.execute(stmt)
    return [queries.row_to_entry(row) for row in result.fetchall()]


class LedgerStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        lock_timeout: float = 5.0,
    ) -> None:
        self._session_factory = session_factory
        self.lock_timeout = lock_timeout
        self.locks = ItemLocks()

    # ── Write 側 ──────────────────────────────────

    async def append(self, item_id: UUID, draft: EntryDraft) -> AppliedChange:
        """
        `draft.quantity_change` を品目に適用して記録する。

        未知の品目は NotFound、結果が負なら InsufficientStock、
        他の書き込みが先にプロジェクションを進めていたら Conflict。
        いずれの場合も何も書き込まない。
        """
        async with self.locks.hold(item_id, self.lock_timeout):
            async with self._session_factory() as session:
                try:
                    change = await self._write(session, item_id, draft)
                    await session.commit()
                except IntegrityError as exc:
                    raise Conflict(
                        "concurrent append on item",
                        item_id=str(item_id),
                    ) from exc
        logger.info(
            "Committed %s item=%s change=%+d %d->%d status=%s",
            change.entry.kind.value,
            item_id,
            change.entry.quantity_change,
            change.entry.quantity_before,
            change.entry.quantity_after,
            change.projection.status.value,
        )
        return change

    async def _write(
        self,
        session: AsyncSession,
        item_id: UUID,
        draft: EntryDraft,
    ) -> AppliedChange:
        item = await catalog.get_item(session, item_id)
        if item is None:
            raise NotFound("Item not found", item_id=str(item_id))

        current = await queries.get_projection(session, item_id)
        before, version = (current.quantity, current.version) if current else (0, 0)
        # 現在のしきい値で判定する (min_stock 変更後も切り替わりを検出するため)
        previous_status = classify(before, item.min_stock)

        after = before + draft.quantity_change
        if after < 0:
            raise InsufficientStock(
                f"Insufficient stock: requested={-draft.quantity_change}, available={before}",
                item_id=str(item_id),
                available=before,
                requested=-draft.quantity_change,
            )

        status = classify(after, item.min_stock)
        now = datetime.now(timezone.utc)
        new_version = version + 1
        values = {
            "quantity": after,
            "status": status.value,
            "version": new_version,
            "updated_at": now,
        }
        if current is None:
            await session.execute(
                inventory_projection.insert().values(item_id=str(item_id), **values)
            )
        else:
            result = await session.execute(
                update(inventory_projection)
                .where(inventory_projection.c.item_id == str(item_id))
                .where(inventory_projection.c.version == version)
                .values(**values)
            )
            if result.rowcount != 1:
                raise Conflict(
                    "projection version moved",
                    item_id=str(item_id),
                    expected_version=version,
                )

        reference = draft.reference
        entry_values = {
            "item_id": str(item_id),
            "version": new_version,
            "kind": draft.kind.value,
            "quantity_change": draft.quantity_change,
            "quantity_before": before,
            "quantity_after": after,
            "reference_type": reference.type if reference else None,
            "reference_id": reference.id if reference else None,
            "note": draft.note,
            "loss_reason": draft.loss_reason,
            "actor_id": draft.actor_id,
            "created_at": now,
        }
        result = await session.execute(inventory_ledger.insert().values(**entry_values))
        entry_id = result.inserted_primary_key[0]

        entry_values["item_id"] = item_id
        entry_values["kind"] = draft.kind
        return AppliedChange(
            entry=LedgerEntry(id=entry_id, **entry_values),
            projection=Projection(
                item_id=item_id,
                quantity=after,
                status=status,
                updated_at=now,
                version=new_version,
            ),
            item=item,
            previous_status=previous_status,
        )

    async def ensure_projection(self, item_id: UUID) -> Projection:
        """既知の品目に数量0のプロジェクションを事前作成する"""
        async with self._session_factory() as session:
            existing = await queries.get_projection(session, item_id)
            if existing is not None:
                return existing

        try:
            async with self.locks.hold(item_id, self.lock_timeout):
                return await self._seed(item_id)
        except TimeoutError as exc:
            raise StorageUnavailable(
                "item is busy, projection not seeded",
                item_id=str(item_id),
                timeout=self.lock_timeout,
            ) from exc

    async def _seed(self, item_id: UUID) -> Projection:
        async with self._session_factory() as session:
            item = await catalog.get_item(session, item_id)
            if item is None:
                raise NotFound("Item not found", item_id=str(item_id))
            existing = await queries.get_projection(session, item_id)
            if existing is not None:
                return existing
            projection = Projection(
                item_id=item_id,
                quantity=0,
                status=classify(0, item.min_stock),
                updated_at=datetime.now(timezone.utc),
                version=0,
            )
            try:
                await session.execute(
                    inventory_projection.insert().values(
                        item_id=str(item_id),
                        quantity=0,
                        status=projection.status.value,
                        version=0,
                        updated_at=projection.updated_at,
                    )
                )
                await session.commit()
            except IntegrityError:
                # 別インスタンスが先に作成した
                await session.rollback()
                return await queries.get_projection(session, item_id)
            return projection

    # ── Read 側 ───────────────────────────────────

    async def read_projection(self, item_id: UUID) -> Projection:
        """現在のプロジェクション。初回参照時に数量0で作成される。"""
        return await self.ensure_projection(item_id)

    async def list_projections(self, flt: ProjectionFilter | None = None) -> list[StockLevel]:
        async with self._session_factory() as session:
            return await queries.list_projections(session, flt)

    async def read_log(
        self,
        item_id: UUID | None = None,
        kind: LedgerKind | None = None,
        cursor: int | None = None,
        limit: int = 50,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> LogPage:
        async with self._session_factory() as session:
            return await queries.read_log(
                session,
                item_id=item_id,
                kind=kind,
                cursor=cursor,
                limit=limit,
                since=since,
                until=until,
            )

    async def totals(self) -> Totals:
        async with self._session_factory() as session:
            return await queries.totals(session)

    async def summary(self) -> StockSummary:
        async with self._session_factory() as session:
            return await queries.summary(session)

    async def verify(self, item_id: UUID) -> ReplayReport:
        """品目の台帳をリプレイしてプロジェクションと突き合わせる"""
        async with self._session_factory() as session:
            if await catalog.get_item(session, item_id) is None:
                raise NotFound("Item not found", item_id=str(item_id))
            # プロジェクションを先に読む: この後にコミットされた追記は
            # version が大きいのでリプレイ対象外になる
            projection = await queries.get_projection(session, item_id)
            entries = await load_entries(
                session, item_id, projection.version if projection else None
            )

        agg = StockAggregate.from_entries(item_id, entries)
        report = ReplayReport(
            item_id=item_id,
            entry_count=agg.entry_count,
            replayed_quantity=agg.quantity,
            projection_quantity=projection.quantity if projection else None,
            gaps=agg.gaps,
            movements=agg.movements,
        )
        if not report.consistent:
            logger.error(
                "Ledger replay mismatch item=%s replayed=%d projection=%s gaps=%s",
                item_id,
                report.replayed_quantity,
                report.projection_quantity,
                report.gaps,
            )
        return report
