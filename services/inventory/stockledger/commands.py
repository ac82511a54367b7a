"""
Stock Ledger — 調整エンジン (CQRS Write 側)

`apply` は delta spec を検証し、台帳ストアに追記し、
コミット後に変更を notifier に渡す。

リトライ方針:
  - Conflict (プロジェクションの version がずれた) → 読み直して再試行
  - ロック待ちタイムアウト / 一時的な DB エラー   → 指数バックオフで再試行、
                                                   尽きたら StorageUnavailable
  - ValidationError / NotFound / InsufficientStock → そのまま返す

コミット済みの変更は確定。取り消しは補償の apply を新たに行う。
"""

import asyncio
import logging
import random
from uuid import UUID

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from .deltas import DeltaSpec, ledger_kind, loss_reason, signed_delta, validate_delta
from .errors import Conflict, StorageUnavailable, ValidationError
from .event_store import LedgerStore
from .models import AppliedChange, EntryDraft, Reference
from .notifier import ChangeNotifier

logger = logging.getLogger(__name__)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


class AdjustmentEngine:
    def __init__(
        self,
        store: LedgerStore,
        notifier: ChangeNotifier | None = None,
        *,
        conflict_retries: int = 5,
        transient_retries: int = 3,
        backoff_base: float = 0.05,
        backoff_max: float = 1.0,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.conflict_retries = max(1, conflict_retries)
        self.transient_retries = max(1, transient_retries)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    async def apply(
        self,
        item_id: UUID,
        delta: DeltaSpec,
        actor_id: str,
        note: str | None = None,
        reference: Reference | None = None,
    ) -> AppliedChange:
        """
        在庫変更コマンド

        1. delta spec を検証 (ストレージに触る前)
        2. 台帳ストアに追記 (Conflict / 一時エラーはリトライ)
        3. コミット後に notifier へ通知

        失敗時は ValidationError / NotFound / InsufficientStock /
        Conflict / StorageUnavailable のいずれかで、何も永続化されない。
        """
        validate_delta(delta)
        if not actor_id:
            raise ValidationError("actor_id is required")

        draft = EntryDraft(
            kind=ledger_kind(delta),
            quantity_change=signed_delta(delta),
            actor_id=actor_id,
            note=note,
            loss_reason=loss_reason(delta),
            reference=reference,
        )
        change = await self._append(item_id, draft)

        if self.notifier is not None:
            try:
                self.notifier.notify(change)
            except Exception:
                logger.exception("Notifier failed for entry %s", change.entry.id)
        return change

    async def _append(self, item_id: UUID, draft: EntryDraft) -> AppliedChange:
        conflicts = 0
        transient = 0
        while True:
            try:
                return await self.store.append(item_id, draft)
            except Conflict:
                conflicts += 1
                if conflicts >= self.conflict_retries:
                    logger.error(
                        "Giving up on item=%s after %d version conflicts", item_id, conflicts
                    )
                    raise
                logger.warning("Version conflict on item=%s, retrying (%d)", item_id, conflicts)
                await asyncio.sleep(0)
            except Exception as exc:
                if not is_transient(exc):
                    raise
                transient += 1
                if transient >= self.transient_retries:
                    raise StorageUnavailable(
                        "storage unavailable",
                        item_id=str(item_id),
                        attempts=transient,
                        error=repr(exc),
                    ) from exc
                delay = self._backoff(transient)
                logger.warning(
                    "Transient storage error on item=%s (%r), retry %d in %.3fs",
                    item_id,
                    exc,
                    transient,
                    delay,
                )
                await asyncio.sleep(delay)

    def _backoff(self, attempt: int) -> float:
        delay = min(self.backoff_max, self.backoff_base * (1.8 ** attempt))
        return delay * (0.6 + 0.4 * random.random())
