"""
Stock Ledger — FastAPI エントリーポイント

鮮魚市場ダッシュボードの在庫台帳サービス。CQRS 構成:
コマンド系エンドポイントは調整エンジンを通り、クエリ系は
プロジェクションと台帳を読み、WebSocket はトピックのイベントを流す。

┌────────────┐  apply   ┌───────────────┐  commit  ┌──────────────┐
│ dashboard/ │ ───────▶ │  adjustment   │ ───────▶ │ ledger store │
│ order flow │          │    engine     │          │ (SQL)        │
└────────────┘          └──────┬────────┘          └──────────────┘
      ▲                        │ after commit
      │   /ws/topics/...  ┌────▼─────┐   Redis Pub/Sub
      └────────────────── │ notifier │ ─────────────▶ other instances
                          └──────────┘
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings, configure_logging
from .deltas import DeltaSpec, LedgerKind
from .errors import LedgerError
from .events import BroadcastEvent
from .models import (
    LedgerEntry,
    LogPage,
    Projection,
    ProjectionFilter,
    Reference,
    ReplayReport,
    StockLevel,
    StockSummary,
    Totals,
)
from .registry import Subscription, presence_topic
from .runtime import Runtime
from .status import StockStatus

ERROR_STATUS = {
    "validation_error": 422,
    "not_found": 404,
    "insufficient_stock": 409,
    "conflict": 409,
    "storage_unavailable": 503,
}


# ── リクエスト / レスポンスモデル ────────────────────


class ApplyRequest(BaseModel):
    delta: DeltaSpec
    actor_id: str
    note: str | None = None
    reference: Reference | None = None


class ApplyResponse(BaseModel):
    entry: LedgerEntry
    projection: Projection


class BroadcastRequest(BaseModel):
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def _stream(websocket: WebSocket, sub: Subscription) -> None:
    """クライアントが切断するまで購読イベントを転送する"""

    async def forward() -> None:
        async for event in sub:
            await websocket.send_json(event.model_dump(mode="json"))

    sender = asyncio.create_task(forward())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = settings or Settings.from_env()
        configure_logging(resolved.log_level)
        app.state.runtime = await Runtime.start(resolved)
        yield
        await app.state.runtime.close()

    app = FastAPI(title="Stock Ledger Service", lifespan=lifespan)

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=ERROR_STATUS.get(exc.kind, 500),
            content=exc.to_dict(),
        )

    # ── コマンドエンドポイント (Write 側) ───────────

    @app.post("/commands/inventory/{item_id}/apply", response_model=ApplyResponse)
    async def cmd_apply(
        item_id: UUID,
        req: ApplyRequest,
        runtime: Runtime = Depends(get_runtime),
    ):
        """入荷 / 販売 / 調整 / ロスを1件適用する"""
        change = await runtime.adjustments.apply(
            item_id,
            req.delta,
            req.actor_id,
            note=req.note,
            reference=req.reference,
        )
        return ApplyResponse(entry=change.entry, projection=change.projection)

    @app.post("/commands/inventory/{item_id}/seed", response_model=Projection)
    async def cmd_seed(item_id: UUID, runtime: Runtime = Depends(get_runtime)):
        """新規登録品目の数量0プロジェクションを作成する"""
        return await runtime.store.ensure_projection(item_id)

    @app.post("/commands/topics/{topic}/broadcast")
    async def cmd_broadcast(
        topic: str,
        req: BroadcastRequest,
        runtime: Runtime = Depends(get_runtime),
    ):
        delivered = runtime.notifier.publish(
            topic, BroadcastEvent(name=req.name, payload=req.payload)
        )
        return {"topic": topic, "delivered": delivered}

    # ── クエリエンドポイント (Read 側) ──────────────

    @app.get("/queries/inventory", response_model=list[StockLevel])
    async def query_list_inventory(
        status: StockStatus | None = None,
        search: str | None = None,
        runtime: Runtime = Depends(get_runtime),
    ):
        return await runtime.store.list_projections(
            ProjectionFilter(status=status, search=search)
        )

    @app.get("/queries/inventory/totals", response_model=Totals)
    async def query_totals(runtime: Runtime = Depends(get_runtime)):
        return await runtime.store.totals()

    @app.get("/queries/inventory/summary", response_model=StockSummary)
    async def query_summary(runtime: Runtime = Depends(get_runtime)):
        return await runtime.store.summary()

    @app.get("/queries/inventory/logs", response_model=LogPage)
    async def query_logs(
        item_id: UUID | None = None,
        kind: LedgerKind | None = None,
        cursor: int | None = None,
        limit: int = Query(50, ge=1, le=500),
        since: datetime | None = None,
        until: datetime | None = None,
        runtime: Runtime = Depends(get_runtime),
    ):
        return await runtime.store.read_log(
            item_id=item_id,
            kind=kind,
            cursor=cursor,
            limit=limit,
            since=since,
            until=until,
        )

    @app.get("/queries/inventory/loss-logs", response_model=LogPage)
    async def query_loss_logs(
        item_id: UUID | None = None,
        cursor: int | None = None,
        limit: int = Query(50, ge=1, le=500),
        runtime: Runtime = Depends(get_runtime),
    ):
        return await runtime.store.read_log(
            item_id=item_id, kind=LedgerKind.LOSS, cursor=cursor, limit=limit
        )

    @app.get("/queries/inventory/{item_id}", response_model=Projection)
    async def query_projection(item_id: UUID, runtime: Runtime = Depends(get_runtime)):
        return await runtime.store.read_projection(item_id)

    @app.get("/queries/inventory/{item_id}/verify", response_model=ReplayReport)
    async def query_verify(item_id: UUID, runtime: Runtime = Depends(get_runtime)):
        """台帳をリプレイしてプロジェクションと比較する"""
        return await runtime.store.verify(item_id)

    @app.get("/queries/topics")
    async def query_topics(runtime: Runtime = Depends(get_runtime)):
        return {"topics": runtime.registry.active_topics()}

    # ── リアルタイム配信 ─────────────────────────────

    @app.websocket("/ws/topics/{topic}")
    async def ws_topic(websocket: WebSocket, topic: str):
        runtime: Runtime = websocket.app.state.runtime
        sub = runtime.registry.subscribe(topic)
        try:
            await websocket.accept()
            await _stream(websocket, sub)
        finally:
            await runtime.registry.unsubscribe(sub)

    @app.websocket("/ws/presence/{room}")
    async def ws_presence(websocket: WebSocket, room: str, participant_id: str):
        """接続している間、呼び出し元を `room` のプレゼンスに載せる"""
        runtime: Runtime = websocket.app.state.runtime
        metadata = {
            k: v for k, v in websocket.query_params.items() if k != "participant_id"
        }
        sub = runtime.registry.subscribe(presence_topic(room))
        tracked = False
        try:
            await websocket.accept()
            runtime.presence.track(room, participant_id, metadata)
            tracked = True
            await _stream(websocket, sub)
        finally:
            if tracked:
                runtime.presence.untrack(room, participant_id)
            await runtime.registry.unsubscribe(sub)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "stock-ledger"}

    return app


app = create_app()
