"""
signal_relay.services.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 连接封装与连接注册表。

``PeerConnection`` 为每条连接维护：
  - 连接 ID、存活标记（供心跳巡检使用）、生命周期状态；
  - 角色会话状态（``Unjoined`` / ``Joined`` / ``Closed``）；
  - 一个有界的待发送队列，由单独的写协程按顺序写出，
    因此 ``send()`` 是非阻塞的，且发往同一连接的信封保持先后顺序。

``ConnectionRegistry`` 记录当前所有存活连接，心跳巡检遍历它。
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator
from enum import Enum

from fastapi import WebSocket
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from signal_relay.core.logging import get_logger
from signal_relay.schemas.envelopes import Ping
from signal_relay.services.session import SessionState, Unjoined

logger = get_logger(__name__)

MessageHandler = Callable[["PeerConnection", str], Awaitable[None]]


class ConnectionState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class PeerConnection:
    """一条信令 WebSocket 连接。

    Attributes:
        websocket: 底层 WebSocket（已 accept）。
        connection_id: 连接 ID，仅用于日志。
        is_alive: 上一轮心跳之后是否收到过存活确认。
        state: 连接生命周期状态。
        session: 角色会话状态，由 ``SignalingRouter`` 维护。
    """

    def __init__(
        self,
        websocket: WebSocket,
        queue_size: int = 256,
        connection_id: str | None = None,
    ) -> None:
        self.websocket = websocket
        self.connection_id = connection_id or f"ws-{uuid.uuid4().hex[:8]}"
        self.is_alive: bool = True
        self.state: ConnectionState = ConnectionState.OPEN
        self.session: SessionState = Unjoined()
        self._outbound: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._terminated = asyncio.Event()

    def __repr__(self) -> str:
        return f"<PeerConnection {self.connection_id} {self.state.value}>"

    @property
    def closing(self) -> bool:
        """连接是否已进入关闭流程（CLOSING 或 CLOSED）。"""
        return self.state is not ConnectionState.OPEN

    # ── 发送 ──────────────────────────────────────────────────────────

    def send(self, envelope: BaseModel) -> None:
        """把信封放入待发送队列，不等待写出。连接关闭后调用为空操作。"""
        if self.closing:
            return
        try:
            self._outbound.put_nowait(envelope.model_dump_json())
        except asyncio.QueueFull:
            logger.warning(
                "待发送队列已满，丢弃信封 | conn=%s | type=%s",
                self.connection_id, getattr(envelope, "type", "?"),
            )

    # ── 存活检测 ──────────────────────────────────────────────────────

    def mark_alive(self) -> None:
        self.is_alive = True

    @property
    def supports_native_ping(self) -> bool:
        """底层传输是否提供协议级 ping（Starlette 的 WebSocket 不提供）。"""
        return callable(getattr(self.websocket, "ping", None))

    async def probe(self) -> None:
        """发送一次存活探测：优先原生 ping，否则发送应用层 ``ping`` 信封。"""
        if not self.supports_native_ping:
            self.send(Ping(timestamp=int(time.time() * 1000)))
            return

        pong_waiter = await self.websocket.ping()  # type: ignore[attr-defined]
        if isinstance(pong_waiter, asyncio.Future):
            pong_waiter.add_done_callback(self._on_native_pong)

    def _on_native_pong(self, future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is None:
            self.mark_alive()

    # ── 生命周期 ──────────────────────────────────────────────────────

    def terminate(self) -> None:
        """强制断开连接。``serve()`` 会随之返回，调用方在其后执行清理。"""
        if self.closing:
            return
        self.state = ConnectionState.CLOSING
        self._terminated.set()

    async def serve(self, on_message: MessageHandler) -> None:
        """运行读写循环，直到对端断开、写失败或被 ``terminate()``。

        Args:
            on_message: 每收到一帧文本调用一次（按到达顺序串行执行）。
        """
        reader = asyncio.create_task(self._read_loop(on_message))
        writer = asyncio.create_task(self._write_loop())
        terminated = asyncio.create_task(self._terminated.wait())
        tasks = (reader, writer, terminated)
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is not terminated and not task.cancelled() and task.exception():
                    logger.error(
                        "连接处理异常 | conn=%s", self.connection_id,
                        exc_info=task.exception(),
                    )
        finally:
            self.state = ConnectionState.CLOSING
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._close_transport()
            self.state = ConnectionState.CLOSED

    async def _read_loop(self, on_message: MessageHandler) -> None:
        while True:
            message = await self.websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.debug("对端断开 | conn=%s | code=%s", self.connection_id, message.get("code"))
                return
            # 任意入站帧都视为存活应答
            self.mark_alive()
            text = message.get("text")
            if text is None:
                data = message.get("bytes")
                if data is None:
                    continue
                text = data.decode("utf-8", errors="replace")
            await on_message(self, text)

    async def _write_loop(self) -> None:
        while True:
            text = await self._outbound.get()
            try:
                await self.websocket.send_text(text)
            except Exception as e:
                logger.warning("发送失败，断开连接 | conn=%s | %s", self.connection_id, e)
                return

    async def _close_transport(self) -> None:
        client_state = getattr(self.websocket, "client_state", None)
        application_state = getattr(self.websocket, "application_state", None)
        if WebSocketState.DISCONNECTED in (client_state, application_state):
            return
        code = 1001 if self._terminated.is_set() else 1000
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug("关闭 WebSocket 失败（可能已断开）| conn=%s | %s", self.connection_id, e)


class ConnectionRegistry:
    """当前所有存活连接的集合。"""

    def __init__(self) -> None:
        self._connections: set[PeerConnection] = set()

    def add(self, connection: PeerConnection) -> None:
        self._connections.add(connection)

    def discard(self, connection: PeerConnection) -> None:
        self._connections.discard(connection)

    def snapshot(self) -> list[PeerConnection]:
        """返回当前连接的快照，遍历期间允许注册表被修改。"""
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[PeerConnection]:
        return iter(self.snapshot())

    def __contains__(self, connection: object) -> bool:
        return connection in self._connections
