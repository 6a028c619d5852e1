"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures。

环境变量必须在导入 ``signal_relay`` 之前设置，``Settings`` 在导入时即被解析。
"""
from __future__ import annotations

import os

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STATUS_RATE_LIMIT", "1000/second")

from signal_relay.services.room_store import RoomStore  # noqa: E402
from tests.fakes import FakeWebSocket  # noqa: E402


@pytest.fixture()
def store() -> RoomStore:
    return RoomStore()


@pytest.fixture()
def fake_ws() -> FakeWebSocket:
    return FakeWebSocket()
