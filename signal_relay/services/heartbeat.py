"""
signal_relay.services.heartbeat
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

心跳巡检 —— 周期性探测所有连接，强制断开上一轮探测后没有回应的连接。

一个真正失联的对端会在一到两个巡检周期内被发现并断开；
断开后连接处理协程会走正常的清理路径（通知对端、删除空房间）。
"""
from __future__ import annotations

import asyncio

from signal_relay.core.logging import get_logger
from signal_relay.services.connection import ConnectionRegistry

logger = get_logger(__name__)


class LivenessMonitor:
    """心跳巡检器，在 FastAPI lifespan 中 ``start()`` / ``stop()``。

    Attributes:
        registry: 共享的连接注册表。
        interval_seconds: 巡检间隔（秒）。
    """

    def __init__(self, registry: ConnectionRegistry, interval_seconds: float) -> None:
        self.registry = registry
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> int:
        """执行一轮巡检，返回本轮强制断开的连接数。"""
        terminated = 0
        for conn in self.registry.snapshot():
            if conn.closing:
                continue
            if not conn.is_alive:
                logger.info("心跳超时，强制断开 | conn=%s", conn.connection_id)
                conn.terminate()
                terminated += 1
                continue
            conn.is_alive = False
            try:
                await conn.probe()
            except Exception as e:
                # 探测失败按未响应处理，下一轮会被断开
                logger.warning("心跳探测失败 | conn=%s | %s", conn.connection_id, e)
        return terminated

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("心跳巡检异常: %s", e, exc_info=True)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("心跳巡检已启动 | interval=%.1fs", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("心跳巡检已停止")
