"""
Stock Ledger — プレゼンス

誰がどの画面を見ているか。ルームごとに {participant_id: metadata} を持ち、
sync のたびに前回のスナップショットとの差分を取って join / leave を個別に、
最後に全体状態の sync を `presence:<room>` トピックへ publish する。
"""

from typing import Any, Mapping

from .events import PresenceEvent
from .registry import SubscriptionRegistry, presence_topic

Snapshot = Mapping[str, Mapping[str, Any]]


def diff_presence(
    previous: Snapshot, current: Snapshot
) -> tuple[dict[str, dict], dict[str, dict]]:
    """
    2つのスナップショット間の (joins, leaves)。
    metadata が変わった場合は旧エントリの leave + 新エントリの join とみなす。
    """
    joins = {
        pid: dict(meta)
        for pid, meta in current.items()
        if pid not in previous or dict(previous[pid]) != dict(meta)
    }
    leaves = {
        pid: dict(meta)
        for pid, meta in previous.items()
        if pid not in current or dict(current[pid]) != dict(meta)
    }
    return joins, leaves


class PresenceTracker:
    def __init__(self, registry: SubscriptionRegistry) -> None:
        self.registry = registry
        self._rooms: dict[str, dict[str, dict]] = {}
        # (room, participant) ごとの接続数。複数タブは1エントリを共有する
        self._refs: dict[tuple[str, str], int] = {}

    def state(self, room: str) -> dict[str, dict]:
        return {pid: dict(meta) for pid, meta in self._rooms.get(room, {}).items()}

    def rooms(self) -> list[str]:
        return sorted(self._rooms)

    def sync(self, room: str, snapshot: Snapshot) -> list[PresenceEvent]:
        previous = self._rooms.get(room, {})
        joins, leaves = diff_presence(previous, snapshot)
        current = {pid: dict(meta) for pid, meta in snapshot.items()}
        if current:
            self._rooms[room] = current
        else:
            self._rooms.pop(room, None)
        for pid in leaves.keys() - joins.keys():
            self._refs.pop((room, pid), None)

        events = [
            PresenceEvent(room=room, action="leave", participant_id=pid, metadata=meta)
            for pid, meta in leaves.items()
        ]
        events += [
            PresenceEvent(room=room, action="join", participant_id=pid, metadata=meta)
            for pid, meta in joins.items()
        ]
        if events:
            events.append(PresenceEvent(room=room, action="sync", state=self.state(room)))

        topic = presence_topic(room)
        for event in events:
            self.registry.publish(topic, event)
        return events

    def track(self, room: str, participant_id: str, metadata: Mapping[str, Any]) -> list[PresenceEvent]:
        key = (room, participant_id)
        self._refs[key] = self._refs.get(key, 0) + 1
        snapshot = self.state(room)
        snapshot[participant_id] = dict(metadata)
        return self.sync(room, snapshot)

    def untrack(self, room: str, participant_id: str) -> list[PresenceEvent]:
        """接続を1つ外す。最後の接続が切れたときに leave になる。"""
        key = (room, participant_id)
        remaining = self._refs.get(key, 0) - 1
        if remaining > 0:
            self._refs[key] = remaining
            return []
        self._refs.pop(key, None)
        snapshot = self.state(room)
        snapshot.pop(participant_id, None)
        return self.sync(room, snapshot)
