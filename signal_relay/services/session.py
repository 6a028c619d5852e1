"""
signal_relay.services.session
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

角色会话状态机 —— 每条连接一个，``Unjoined → Joined(role) → Closed``。

状态是不可变的小值对象，状态转移写成普通函数：输入当前状态与房间存储，
返回下一个状态以及需要投递的信封列表（``Delivery``）。函数本身不做任何 I/O，
因此可以脱离真实 socket 单独测试；真正的发送由 ``SignalingRouter`` 完成。

所有会修改房间的函数（``join`` / ``leave``）必须在 ``store.lock`` 内调用。
"""
from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import NamedTuple

from pydantic import BaseModel

from signal_relay.schemas.envelopes import (
    BROADCASTER_ID,
    BroadcasterStatus,
    Joined as JoinedEnvelope,
    JoinRequest,
    Registered,
    Role,
    Signal,
    SignalRequest,
    ViewerJoined,
    ViewerLeft,
)
from signal_relay.services.room_store import Peer, RoomStore


@dataclass(frozen=True)
class Unjoined:
    """已连接但尚未 ``join``。"""


@dataclass(frozen=True)
class Joined:
    """已加入房间。

    Attributes:
        room_id: 所在房间。
        role: broadcaster / viewer。
        client_id: 主播固定为 ``"broadcaster"``，观众为服务端生成的 UUID。
    """

    room_id: str
    role: Role
    client_id: str


@dataclass(frozen=True)
class Closed:
    """连接已关闭，不再接受任何转移。"""


SessionState = Unjoined | Joined | Closed


class Delivery(NamedTuple):
    """一次待投递：目标连接 + 信封。"""

    peer: Peer
    envelope: BaseModel


@dataclass
class Transition:
    state: SessionState
    deliveries: list[Delivery] = field(default_factory=list)


def new_viewer_id() -> str:
    """生成进程内唯一的观众 ID。"""
    return str(uuid.uuid4())


def join(
    state: SessionState,
    peer: Peer,
    request: JoinRequest,
    store: RoomStore,
    id_factory: Callable[[], str] = new_viewer_id,
) -> Transition:
    """处理 ``join``。非 ``Unjoined`` 状态下的重复 join 被忽略（不产生任何投递）。

    主播加入会直接覆盖房间里已有的主播引用，旧主播不会收到任何通知。
    """
    if not isinstance(state, Unjoined):
        return Transition(state)

    room = store.get_or_create(request.room)

    if request.role == "broadcaster":
        room.broadcaster = peer
        deliveries = [Delivery(peer, JoinedEnvelope(role="broadcaster", room=request.room))]
        deliveries.extend(
            Delivery(viewer, BroadcasterStatus(online=True))
            for viewer in room.viewers.values()
        )
        return Transition(Joined(request.room, "broadcaster", BROADCASTER_ID), deliveries)

    client_id = id_factory()
    room.viewers[client_id] = peer
    deliveries = [Delivery(peer, Registered(clientId=client_id, room=request.room))]
    if room.broadcaster is not None:
        deliveries.append(Delivery(room.broadcaster, ViewerJoined(viewerId=client_id)))
        deliveries.append(Delivery(peer, BroadcasterStatus(online=True)))
    else:
        deliveries.append(Delivery(peer, BroadcasterStatus(online=False)))
    return Transition(Joined(request.room, "viewer", client_id), deliveries)


def _forwarded(viewer_id: str, request: SignalRequest) -> Signal:
    if "payload" in request.model_fields_set:
        return Signal(viewerId=viewer_id, payload=request.payload)
    return Signal(viewerId=viewer_id)


def relay(
    state: SessionState,
    peer: Peer,
    request: SignalRequest,
    store: RoomStore,
) -> list[Delivery]:
    """处理 ``signal``，返回需要转发的投递（找不到对端时为空列表）。

    只读操作，不需要持锁。
    """
    if not isinstance(state, Joined):
        return []
    room = store.get(state.room_id)
    if room is None:
        return []

    if state.role == "viewer":
        broadcaster = room.broadcaster
        if broadcaster is None:
            return []
        return [Delivery(broadcaster, _forwarded(state.client_id, request))]

    # 被后来者顶替的旧主播不再拥有转发权限
    if room.broadcaster is not peer or request.to is None:
        return []
    target = room.viewers.get(request.to)
    if target is None:
        return []
    return [Delivery(target, _forwarded(request.to, request))]


def leave(state: SessionState, peer: Peer, store: RoomStore) -> Transition:
    """连接关闭时的清理。未加入过房间的连接清理为空操作。

    被顶替的旧主播断开时只把自己的会话置为 ``Closed``：房间里的新主播保持不变，
    观众也不会收到 ``online=false``。
    """
    if not isinstance(state, Joined):
        return Transition(Closed())
    room = store.get(state.room_id)
    if room is None:
        return Transition(Closed())

    deliveries: list[Delivery] = []
    if state.role == "broadcaster":
        # 已被顶替的旧主播断开时，不影响当前主播
        if room.broadcaster is peer:
            room.broadcaster = None
            deliveries.extend(
                Delivery(viewer, BroadcasterStatus(online=False))
                for viewer in room.viewers.values()
            )
    elif room.viewers.get(state.client_id) is peer:
        del room.viewers[state.client_id]
        if room.broadcaster is not None:
            deliveries.append(Delivery(room.broadcaster, ViewerLeft(viewerId=state.client_id)))

    store.remove_if_empty(state.room_id)
    return Transition(Closed(), deliveries)
