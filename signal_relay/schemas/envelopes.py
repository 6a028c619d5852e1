"""
signal_relay.schemas.envelopes
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

信令信封的 Pydantic 模型。

每条 WebSocket 文本帧是一个 JSON 对象，``type`` 字段决定其形状。
``payload``（SDP 或 ICE candidate）对服务端完全不透明，原样转发。
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SerializerFunctionWrapHandler, model_serializer

Role = Literal["broadcaster", "viewer"]

BROADCASTER_ID: str = "broadcaster"


# ── 客户端 → 服务端 ───────────────────────────────────────────────────

class JoinRequest(BaseModel):
    """``join`` 信封：声明房间与角色。"""

    model_config = ConfigDict(extra="ignore")

    type: Literal["join"] = "join"
    room: str = Field(..., min_length=1, description="房间标识")
    role: Role = Field(..., description="broadcaster / viewer")


class SignalRequest(BaseModel):
    """``signal`` 信封：携带不透明协商数据。"""

    model_config = ConfigDict(extra="ignore")

    type: Literal["signal"] = "signal"
    room: str | None = Field(default=None, description="房间标识（仅供参考，以连接状态为准）")
    payload: Any = Field(default=None, description="SDP / ICE candidate，原样转发")
    to: str | None = Field(default=None, description="目标观众 ID（仅主播发送时需要）")


# ── 服务端 → 客户端 ───────────────────────────────────────────────────

class Joined(BaseModel):
    """主播加入成功。"""

    type: Literal["joined"] = "joined"
    role: Role
    room: str


class Registered(BaseModel):
    """观众加入成功，携带服务端分配的观众 ID。"""

    type: Literal["registered"] = "registered"
    clientId: str
    room: str


class BroadcasterStatus(BaseModel):
    """主播在线状态变化。"""

    type: Literal["broadcaster-status"] = "broadcaster-status"
    online: bool


class ViewerJoined(BaseModel):
    type: Literal["viewer-joined"] = "viewer-joined"
    viewerId: str


class ViewerLeft(BaseModel):
    type: Literal["viewer-left"] = "viewer-left"
    viewerId: str


class Signal(BaseModel):
    """转发给对端的信令。

    入站 ``signal`` 没有 ``payload`` 字段时，转发的信封里也不带该字段
    （显式的 ``null`` 则原样保留）。
    """

    type: Literal["signal"] = "signal"
    viewerId: str
    payload: Any = None

    @model_serializer(mode="wrap")
    def _omit_missing_payload(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data = handler(self)
        if "payload" not in self.model_fields_set:
            data.pop("payload", None)
        return data


class ErrorEnvelope(BaseModel):
    type: Literal["error"] = "error"
    message: str


class Ping(BaseModel):
    """应用层心跳探测（传输层不支持原生 ping 时使用），客户端需回 ``pong``。"""

    type: Literal["ping"] = "ping"
    timestamp: int
