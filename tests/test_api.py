"""HTTP / WebSocket surface via TestClient (runs the real lifespan)."""

import asyncio
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger import catalog
from stockledger.config import Settings
from stockledger.main import create_app
from stockledger.models import Item
from stockledger.runtime import build_engine
from stockledger.schema import create_schema

COD = Item(id=uuid4(), sku="FISH-COD", name="Cod", min_stock=20, unit="kg")
EEL = Item(id=uuid4(), sku="FISH-EEL", name="Eel", min_stock=5, unit="con")


async def _prepare(url: str) -> None:
    engine = build_engine(url)
    try:
        await create_schema(engine)
        async with AsyncSession(engine) as session:
            for item in (COD, EEL):
                await catalog.register_item(session, item)
            await session.commit()
    finally:
        await engine.dispose()


@pytest.fixture
def client(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"
    asyncio.run(_prepare(url))
    app = create_app(Settings(database_url=url, log_level="WARNING"))
    with TestClient(app) as c:
        yield c


def _apply(client, item: Item, delta: dict, **extra):
    body = {"delta": delta, "actor_id": "user-7", **extra}
    return client.post(f"/commands/inventory/{item.id}/apply", json=body)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "stock-ledger"}


def test_apply_returns_entry_and_projection(client):
    resp = _apply(client, COD, {"kind": "import", "qty": 100}, note="morning boat")
    assert resp.status_code == 200

    resp = _apply(
        client,
        COD,
        {"kind": "sale", "qty": 90},
        reference={"type": "sale_order", "id": "SO-1"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["entry"]["kind"] == "sale"
    assert body["entry"]["quantity_change"] == -90
    assert body["entry"]["quantity_before"] == 100
    assert body["entry"]["quantity_after"] == 10
    assert body["entry"]["reference_id"] == "SO-1"
    assert body["projection"]["status"] == "low_stock"


def test_error_kinds_map_to_status_codes(client):
    _apply(client, COD, {"kind": "import", "qty": 10})

    oversell = _apply(client, COD, {"kind": "sale", "qty": 15})
    assert oversell.status_code == 409
    assert oversell.json()["kind"] == "insufficient_stock"

    unknown = client.post(
        f"/commands/inventory/{uuid4()}/apply",
        json={"delta": {"kind": "import", "qty": 1}, "actor_id": "user-7"},
    )
    assert unknown.status_code == 404
    assert unknown.json()["kind"] == "not_found"

    zero = _apply(client, COD, {"kind": "sale", "qty": 0})
    assert zero.status_code == 422
    assert zero.json()["kind"] == "validation_error"

    bad_kind = _apply(client, COD, {"kind": "theft", "qty": 1})
    assert bad_kind.status_code == 422


def test_queries(client):
    _apply(client, COD, {"kind": "import", "qty": 40})
    _apply(client, EEL, {"kind": "import", "qty": 3})
    _apply(client, EEL, {"kind": "loss", "qty": 1, "reason": "dead on arrival"})

    listing = client.get("/queries/inventory").json()
    assert {row["sku"] for row in listing} == {"FISH-COD", "FISH-EEL"}
    low = client.get("/queries/inventory", params={"status": "low_stock"}).json()
    assert [row["sku"] for row in low] == ["FISH-EEL"]

    assert client.get("/queries/inventory/totals").json() == {
        "total_quantity": 42,
        "distinct_item_count": 2,
    }
    summary = client.get("/queries/inventory/summary").json()
    assert summary["in_stock_count"] == 1
    assert summary["low_stock_count"] == 1

    logs = client.get("/queries/inventory/logs", params={"limit": 2}).json()
    assert [e["kind"] for e in logs["entries"]] == ["loss", "import"]
    assert logs["next_cursor"] is not None
    rest = client.get(
        "/queries/inventory/logs", params={"limit": 2, "cursor": logs["next_cursor"]}
    ).json()
    assert [e["kind"] for e in rest["entries"]] == ["import"]

    losses = client.get("/queries/inventory/loss-logs").json()
    assert [e["loss_reason"] for e in losses["entries"]] == ["dead on arrival"]

    projection = client.get(f"/queries/inventory/{EEL.id}").json()
    assert projection["quantity"] == 2

    report = client.get(f"/queries/inventory/{EEL.id}/verify").json()
    assert report["consistent"] is True
    assert report["entry_count"] == 2


def test_seed_creates_zero_projection(client):
    resp = client.post(f"/commands/inventory/{COD.id}/seed")
    assert resp.status_code == 200
    assert resp.json()["quantity"] == 0
    assert resp.json()["status"] == "out_of_stock"


def test_topic_websocket_streams_changes(client):
    with client.websocket_connect("/ws/topics/inventory") as ws:
        _apply(client, COD, {"kind": "import", "qty": 25})
        change = ws.receive_json()

    assert change["event_type"] == "StockChanged"
    assert change["item_id"] == str(COD.id)
    assert (change["quantity_before"], change["quantity_after"]) == (0, 25)
    assert change["status"] == "in_stock"


def test_alert_websocket_fires_on_crossing(client):
    _apply(client, COD, {"kind": "import", "qty": 25})
    with client.websocket_connect("/ws/topics/low_stock") as ws:
        _apply(client, COD, {"kind": "adjustment", "qty": 5, "direction": "reduce"})
        alert = ws.receive_json()

    assert alert["event_type"] == "StockAlert"
    assert (alert["previous_status"], alert["status"]) == ("in_stock", "low_stock")
    assert (alert["quantity_after"], alert["min_stock"]) == (20, 20)


def test_topics_listing(client):
    with client.websocket_connect("/ws/topics/sale_orders"):
        topics = client.get("/queries/topics").json()["topics"]
    assert topics == ["sale_orders"]


def test_presence_websocket(client):
    with client.websocket_connect("/ws/presence/inventory?participant_id=alice&screen=stock") as ws:
        join = ws.receive_json()
        sync = ws.receive_json()

    assert (join["action"], join["participant_id"]) == ("join", "alice")
    assert join["metadata"] == {"screen": "stock"}
    assert sync["state"] == {"alice": {"screen": "stock"}}


def test_broadcast(client):
    with client.websocket_connect("/ws/topics/sale_orders") as ws:
        resp = client.post(
            "/commands/topics/sale_orders/broadcast",
            json={"name": "order_created", "payload": {"id": "SO-7"}},
        )
        assert resp.json()["delivered"] == 1
        msg = ws.receive_json()

    assert msg == {"event_type": "Broadcast", "name": "order_created", "payload": {"id": "SO-7"}}
