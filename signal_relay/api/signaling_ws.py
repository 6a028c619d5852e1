"""
signal_relay.api.signaling_ws
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

信令 WebSocket 端点（固定挂载在 ``/``，与 HTTP 共用端口）。

消息协议（每帧一个 JSON 对象）:
  - 客户端 → 服务端: ``join`` / ``signal`` / ``pong``
  - 服务端 → 客户端: ``joined`` / ``registered`` / ``broadcaster-status`` /
    ``viewer-joined`` / ``viewer-left`` / ``signal`` / ``error`` / ``ping``

存活检测：Starlette 的 WebSocket 不提供协议层 ping，服务端每个巡检周期发送
``{"type": "ping", "timestamp": <ms>}`` 信封。客户端回复 ``pong`` 或发来任意一帧
都算作应答，连续两轮没有应答的连接以 1001 关闭。
"""
from __future__ import annotations

from fastapi import APIRouter, WebSocket

from signal_relay.core.config import settings
from signal_relay.core.logging import connection_id_ctx_var, get_logger
from signal_relay.services.connection import ConnectionRegistry, PeerConnection
from signal_relay.services.signaling import SignalingRouter

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/")
async def websocket_signaling_endpoint(websocket: WebSocket) -> None:
    """信令端点：注册连接，运行读写循环，断开后清理房间。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    registry: ConnectionRegistry = websocket.app.state.registry
    signaling: SignalingRouter = websocket.app.state.signaling

    await websocket.accept()
    conn = PeerConnection(websocket, queue_size=settings.OUTBOUND_QUEUE_SIZE)
    token = connection_id_ctx_var.set(conn.connection_id)
    registry.add(conn)
    logger.info("连接建立 | 在线连接: %d", len(registry))

    try:
        await conn.serve(signaling.handle_text)
    finally:
        registry.discard(conn)
        await signaling.disconnect(conn)
        logger.info("连接关闭 | 在线连接: %d", len(registry))
        connection_id_ctx_var.reset(token)
