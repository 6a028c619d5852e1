from fastapi import Request

from signal_relay.services.connection import ConnectionRegistry
from signal_relay.services.room_store import RoomStore


def get_room_store(request: Request) -> RoomStore:
    return request.app.state.room_store


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry
