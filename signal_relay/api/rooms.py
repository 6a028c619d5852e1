"""
signal_relay.api.rooms
~~~~~~~~~~~~~~~~~~~~~~

房间只读查询接口，路由前缀 ``/api``。

端点:
  - ``GET /rooms``            → 当前所有房间
  - ``GET /rooms/{room_id}``  → 指定房间详情（不存在返回 404，不会创建房间）
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from signal_relay.api.deps import get_room_store
from signal_relay.schemas import ApiResponse, RoomInfoData
from signal_relay.services.room_store import RoomStore

router: APIRouter = APIRouter()


@router.get("/rooms", summary="获取房间列表")
async def list_rooms(store: RoomStore = Depends(get_room_store)) -> ApiResponse[list[RoomInfoData]]:
    """返回所有存在的房间（至少有一个主播或观众）。"""
    return ApiResponse.ok(data=store.list_rooms())


@router.get("/rooms/{room_id}", summary="获取房间详情", response_model=ApiResponse[RoomInfoData])
async def room_info(room_id: str, store: RoomStore = Depends(get_room_store)):
    """返回指定房间的主播在线状态与观众数。

    Args:
        room_id: 房间标识。
    """
    room = store.get(room_id)
    if room is None:
        response = ApiResponse.fail(msg=f"房间不存在: {room_id}", code=404)
        return JSONResponse(status_code=404, content=response.model_dump())
    return ApiResponse.ok(data=room.info())
