"""
tests.test_signaling
~~~~~~~~~~~~~~~~~~~~

SignalingRouter 单元测试：入站文本解析、分发与断开清理。
"""
from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from pydantic import BaseModel

from signal_relay.services.room_store import RoomStore
from signal_relay.services.session import Joined, Unjoined
from signal_relay.services.signaling import JOIN_ERROR_MESSAGE, SignalingRouter, deliver
from tests.fakes import FakeConnection, FakePeer


def text(message: Any) -> str:
    return json.dumps(message)


@pytest.fixture()
def router(store: RoomStore) -> SignalingRouter:
    return SignalingRouter(store)


async def joined_pair(router: SignalingRouter) -> tuple[FakeConnection, FakeConnection]:
    broadcaster, viewer = FakeConnection("b"), FakeConnection("v")
    await router.handle_text(broadcaster, text({"type": "join", "room": "r1", "role": "broadcaster"}))
    await router.handle_text(viewer, text({"type": "join", "room": "r1", "role": "viewer"}))
    broadcaster.received.clear()
    viewer.received.clear()
    return broadcaster, viewer


class TestJoinHandling:
    """测试 join 信封的校验与处理。"""

    @pytest.mark.asyncio
    async def test_broadcaster_join(self, router: SignalingRouter) -> None:
        conn = FakeConnection("b")

        await router.handle_text(conn, text({"type": "join", "room": "r1", "role": "broadcaster"}))

        assert conn.received == [{"type": "joined", "role": "broadcaster", "room": "r1"}]
        assert conn.session == Joined("r1", "broadcaster", "broadcaster")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message",
        [
            {"type": "join", "role": "viewer"},
            {"type": "join", "room": "r1"},
            {"type": "join", "room": "", "role": "viewer"},
            {"type": "join", "room": "r1", "role": "admin"},
        ],
    )
    async def test_malformed_join_replies_error(
        self, router: SignalingRouter, store: RoomStore, message: dict,
    ) -> None:
        """缺少 room / role 时回复 error，状态不变，也不创建房间。"""
        conn = FakeConnection("x")

        await router.handle_text(conn, text(message))

        assert conn.received == [{"type": "error", "message": JOIN_ERROR_MESSAGE}]
        assert conn.session == Unjoined()
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_join_retry_after_error(self, router: SignalingRouter) -> None:
        """出错后连接保持可用，可以重新 join。"""
        conn = FakeConnection("x")

        await router.handle_text(conn, text({"type": "join"}))
        await router.handle_text(conn, text({"type": "join", "room": "r1", "role": "viewer"}))

        assert conn.types() == ["error", "registered", "broadcaster-status"]
        assert isinstance(conn.session, Joined)

    @pytest.mark.asyncio
    async def test_second_join_ignored(self, router: SignalingRouter, store: RoomStore) -> None:
        conn = FakeConnection("v")
        await router.handle_text(conn, text({"type": "join", "room": "r1", "role": "viewer"}))
        state = conn.session
        conn.received.clear()

        await router.handle_text(conn, text({"type": "join", "room": "r2", "role": "broadcaster"}))

        assert conn.session is state
        assert conn.received == []
        assert "r2" not in store

    @pytest.mark.asyncio
    async def test_concurrent_viewer_joins(self, router: SignalingRouter, store: RoomStore) -> None:
        """并发加入的观众全部登记在房间里，主播对每位观众各收到一次 viewer-joined。"""
        broadcaster = FakeConnection("b")
        await router.handle_text(broadcaster, text({"type": "join", "room": "r1", "role": "broadcaster"}))
        viewers = [FakeConnection(f"v{i}") for i in range(20)]
        join_viewer = text({"type": "join", "room": "r1", "role": "viewer"})

        await asyncio.gather(*(router.handle_text(v, join_viewer) for v in viewers))

        room = store.get("r1")
        assert len(room.viewers) == 20
        assert set(room.viewers.values()) == set(viewers)
        joined_ids = [m["viewerId"] for m in broadcaster.received if m["type"] == "viewer-joined"]
        assert sorted(joined_ids) == sorted(v.session.client_id for v in viewers)
        assert all(v.received[-1] == {"type": "broadcaster-status", "online": True} for v in viewers)


class TestSignalHandling:
    """测试 signal 转发路径。"""

    @pytest.mark.asyncio
    async def test_viewer_to_broadcaster(self, router: SignalingRouter) -> None:
        broadcaster, viewer = await joined_pair(router)
        payload = {"sdp": {"type": "offer", "sdp": "v=0"}}

        await router.handle_text(viewer, text({"type": "signal", "room": "r1", "payload": payload}))

        assert broadcaster.received == [
            {"type": "signal", "viewerId": viewer.session.client_id, "payload": payload},
        ]
        assert viewer.received == []

    @pytest.mark.asyncio
    async def test_broadcaster_to_viewer(self, router: SignalingRouter) -> None:
        broadcaster, viewer = await joined_pair(router)
        viewer_id = viewer.session.client_id
        payload = {"sdp": {"type": "answer", "sdp": "v=0"}}

        await router.handle_text(
            broadcaster, text({"type": "signal", "room": "r1", "payload": payload, "to": viewer_id}),
        )

        assert viewer.received == [{"type": "signal", "viewerId": viewer_id, "payload": payload}]

    @pytest.mark.asyncio
    async def test_signal_before_join_dropped(self, router: SignalingRouter) -> None:
        conn = FakeConnection("x")

        await router.handle_text(conn, text({"type": "signal", "payload": {}}))

        assert conn.received == []

    @pytest.mark.asyncio
    async def test_malformed_signal_dropped(self, router: SignalingRouter) -> None:
        """to 字段类型错误的 signal 只记日志，不回复。"""
        broadcaster, viewer = await joined_pair(router)

        await router.handle_text(broadcaster, text({"type": "signal", "payload": {}, "to": 42}))

        assert broadcaster.received == []
        assert viewer.received == []


class TestMalformedInput:
    """无法解析的信封不回复、不断开。"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "{\"type\": ",
            "[1, 2, 3]",
            "\"join\"",
            "null",
            "1" * 5000,
            "[" * 100000 + "]" * 100000,
        ],
        ids=["text", "truncated", "array", "string", "null", "huge-int", "deep-nesting"],
    )
    async def test_unparseable_is_ignored(self, router: SignalingRouter, raw: str) -> None:
        conn = FakeConnection("x")

        await router.handle_text(conn, raw)

        assert conn.received == []
        assert conn.session == Unjoined()

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self, router: SignalingRouter) -> None:
        conn = FakeConnection("x")

        await router.handle_text(conn, text({"type": "shout", "room": "r1"}))

        assert conn.received == []

    @pytest.mark.asyncio
    async def test_pong_marks_alive(self, router: SignalingRouter) -> None:
        conn = FakeConnection("x")
        conn.is_alive = False

        await router.handle_text(conn, text({"type": "pong", "timestamp": 1}))

        assert conn.is_alive is True


class TestDisconnect:
    """测试断开后的清理与通知。"""

    @pytest.mark.asyncio
    async def test_viewer_disconnect(self, router: SignalingRouter, store: RoomStore) -> None:
        broadcaster, viewer = await joined_pair(router)
        viewer_id = viewer.session.client_id

        await router.disconnect(viewer)

        assert broadcaster.received == [{"type": "viewer-left", "viewerId": viewer_id}]
        assert store.get("r1").viewers == {}

    @pytest.mark.asyncio
    async def test_broadcaster_disconnect(self, router: SignalingRouter, store: RoomStore) -> None:
        broadcaster, viewer = await joined_pair(router)

        await router.disconnect(broadcaster)

        assert viewer.received == [{"type": "broadcaster-status", "online": False}]
        assert store.get("r1").broadcaster is None

        await router.disconnect(viewer)

        assert "r1" not in store

    @pytest.mark.asyncio
    async def test_disconnect_twice_notifies_once(self, router: SignalingRouter) -> None:
        broadcaster, viewer = await joined_pair(router)

        await router.disconnect(viewer)
        await router.disconnect(viewer)

        assert broadcaster.types() == ["viewer-left"]

    @pytest.mark.asyncio
    async def test_unjoined_disconnect_is_silent(self, router: SignalingRouter, store: RoomStore) -> None:
        await router.disconnect(FakeConnection("x"))

        assert len(store) == 0


class ExplodingPeer(FakePeer):
    def send(self, envelope: BaseModel) -> None:
        raise RuntimeError("socket gone")


def test_deliver_continues_after_failure() -> None:
    """一个对端发送失败，不影响其余对端收到消息。"""
    from signal_relay.schemas.envelopes import BroadcasterStatus

    first, broken, last = FakePeer("a"), ExplodingPeer("b"), FakePeer("c")
    envelope = BroadcasterStatus(online=False)

    deliver([(first, envelope), (broken, envelope), (last, envelope)])

    assert first.types() == ["broadcaster-status"]
    assert last.types() == ["broadcaster-status"]
