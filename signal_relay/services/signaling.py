"""
signal_relay.services.signaling
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

信令路由器 —— 解析入站信封（``join`` / ``signal`` / ``pong``），
根据角色与房间成员关系把消息投递给对端。

路由器本身不持有房间状态，``RoomStore`` 通过构造函数注入。
所有失败都在本地处理：格式错误只记日志，找不到对端静默丢弃，
任何单条消息都不会导致连接关闭或服务崩溃。
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from signal_relay.core.logging import get_logger
from signal_relay.schemas.envelopes import ErrorEnvelope, JoinRequest, SignalRequest
from signal_relay.services import session
from signal_relay.services.connection import PeerConnection
from signal_relay.services.room_store import RoomStore
from signal_relay.services.session import Delivery, Joined, Unjoined

logger = get_logger(__name__)

JOIN_ERROR_MESSAGE: str = "Room and role required"


def deliver(deliveries: list[Delivery]) -> None:
    """逐个投递信封。单个连接发送失败不影响其余连接。"""
    for peer, envelope in deliveries:
        try:
            peer.send(envelope)
        except Exception as e:
            logger.warning(
                "投递失败 | to=%s | type=%s | %s",
                getattr(peer, "connection_id", "?"), getattr(envelope, "type", "?"), e,
            )


class SignalingRouter:
    """信令路由器。

    - ``handle_text(conn, raw)`` → 处理一帧入站文本
    - ``disconnect(conn)``       → 连接关闭后的房间清理与通知

    Attributes:
        store: 注入的房间存储。
    """

    def __init__(self, store: RoomStore) -> None:
        self.store = store

    async def handle_text(self, conn: PeerConnection, raw: str) -> None:
        """解析并分发一帧文本。无法解析的帧只记日志，不回复。"""
        try:
            message: Any = json.loads(raw)
        except (ValueError, RecursionError) as e:
            # 超长整数抛 ValueError，过深嵌套抛 RecursionError
            logger.warning("信封解析失败 | conn=%s | %s", conn.connection_id, e)
            return
        if not isinstance(message, dict):
            logger.warning("信封不是 JSON 对象，忽略 | conn=%s", conn.connection_id)
            return

        msg_type = message.get("type")
        if msg_type == "join":
            await self.handle_join(conn, message)
        elif msg_type == "signal":
            self.handle_signal(conn, message)
        elif msg_type == "pong":
            conn.mark_alive()
        else:
            logger.debug("未知信封类型，忽略 | conn=%s | type=%r", conn.connection_id, msg_type)

    async def handle_join(self, conn: PeerConnection, message: dict[str, Any]) -> None:
        if not isinstance(conn.session, Unjoined):
            logger.warning("重复 join，忽略 | conn=%s | state=%s", conn.connection_id, conn.session)
            return
        try:
            request = JoinRequest.model_validate(message)
        except ValidationError:
            conn.send(ErrorEnvelope(message=JOIN_ERROR_MESSAGE))
            return

        async with self.store.lock:
            transition = session.join(conn.session, conn, request, self.store)
            conn.session = transition.state

        if isinstance(conn.session, Joined):
            logger.info(
                "加入房间 | room=%s | role=%s | id=%s",
                conn.session.room_id, conn.session.role, conn.session.client_id,
            )
        deliver(transition.deliveries)

    def handle_signal(self, conn: PeerConnection, message: dict[str, Any]) -> None:
        if not isinstance(conn.session, Joined):
            logger.debug("未 join 的连接发送 signal，丢弃 | conn=%s", conn.connection_id)
            return
        try:
            request = SignalRequest.model_validate(message)
        except ValidationError as e:
            logger.warning("signal 信封格式错误，丢弃 | conn=%s | %s", conn.connection_id, e)
            return

        deliveries = session.relay(conn.session, conn, request, self.store)
        if not deliveries:
            logger.debug(
                "signal 无可投递对端，丢弃 | room=%s | role=%s | to=%s",
                conn.session.room_id, conn.session.role, request.to,
            )
        deliver(deliveries)

    async def disconnect(self, conn: PeerConnection) -> None:
        """连接关闭（正常断开或心跳超时）后调用，幂等。"""
        previous = conn.session
        async with self.store.lock:
            transition = session.leave(previous, conn, self.store)
            conn.session = transition.state

        if isinstance(previous, Joined):
            logger.info(
                "离开房间 | room=%s | role=%s | id=%s",
                previous.room_id, previous.role, previous.client_id,
            )
        deliver(transition.deliveries)
