"""
signal_relay.services.room_store
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间存储 —— 房间 ID 到房间状态的映射。

每个 ``Room`` 最多一个主播、任意多个观众（按服务端生成的观众 ID 索引）。
房间在第一次被 ``join`` 引用时懒创建，在主播与观众都不存在时立即删除，
存储中永远不会留下空房间。

``RoomStore`` 由应用在 lifespan 中创建并注入到路由器，不是模块级单例。
所有修改都应在 ``async with store.lock`` 内进行；仅用于转发的读取可以不加锁，
但要容忍目标在读取之后被移除。
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Protocol

from pydantic import BaseModel

from signal_relay.core.logging import get_logger
from signal_relay.schemas.api_response import RoomInfoData

logger = get_logger(__name__)


class Peer(Protocol):
    """房间内可投递信封的一端（通常是 ``PeerConnection``）。"""

    connection_id: str

    def send(self, envelope: BaseModel) -> None: ...


@dataclass
class Room:
    """单个房间的状态。

    Attributes:
        room_id: 房间标识（调用方提供，精确匹配）。
        broadcaster: 当前主播，不存在时为 ``None``。
        viewers: 观众 ID → 观众连接。
    """

    room_id: str
    broadcaster: Peer | None = None
    viewers: dict[str, Peer] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.broadcaster is None and not self.viewers

    def info(self) -> RoomInfoData:
        """返回房间摘要信息。"""
        return RoomInfoData(
            room_id=self.room_id,
            broadcaster_online=self.broadcaster is not None,
            viewer_count=len(self.viewers),
        )


class RoomStore:
    """房间存储（全局一把锁，房间数量预期很小）。

    Attributes:
        lock: 串行化所有房间修改的异步锁。
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self._rooms: dict[str, Room] = {}

    def get_or_create(self, room_id: str) -> Room:
        """获取房间，不存在则创建一个空房间。调用方须持有 ``lock``。"""
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id)
            self._rooms[room_id] = room
            logger.info("房间已创建 | room=%s | 房间总数: %d", room_id, len(self._rooms))
        return room

    def get(self, room_id: str) -> Room | None:
        """查找房间，不会创建。"""
        return self._rooms.get(room_id)

    def remove_if_empty(self, room_id: str) -> bool:
        """房间既无主播也无观众时删除。幂等，返回是否发生了删除。"""
        room = self._rooms.get(room_id)
        if room is None or not room.is_empty:
            return False
        del self._rooms[room_id]
        logger.info("房间已删除 | room=%s | 房间总数: %d", room_id, len(self._rooms))
        return True

    def list_rooms(self) -> list[RoomInfoData]:
        """列出所有房间的摘要信息。"""
        return [room.info() for room in list(self._rooms.values())]

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms
