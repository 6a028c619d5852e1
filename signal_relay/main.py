"""
signal_relay.main
~~~~~~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。

房间存储、连接注册表、信令路由器与心跳巡检器都在 lifespan 中创建，
挂载到 ``app.state`` 上，由各端点按需取用。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from signal_relay.api import rooms, signaling_ws
from signal_relay.api.deps import get_registry, get_room_store
from signal_relay.core.config import settings
from signal_relay.core.logging import get_logger, setup_logging
from signal_relay.core.rate_limit import limiter
from signal_relay.schemas import ApiResponse
from signal_relay.services.connection import ConnectionRegistry
from signal_relay.services.heartbeat import LivenessMonitor
from signal_relay.services.room_store import RoomStore
from signal_relay.services.signaling import SignalingRouter

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    store = RoomStore()
    registry = ConnectionRegistry()
    app.state.room_store = store
    app.state.registry = registry
    app.state.signaling = SignalingRouter(store)
    app.state.liveness = LivenessMonitor(registry, settings.heartbeat_interval_seconds)
    app.state.liveness.start()
    logger.info(
        "🚀 信令服务已启动 | env=%s | port=%d | heartbeat=%dms | log_level=%s",
        settings.ENVIRONMENT,
        settings.PORT,
        settings.HEARTBEAT_INTERVAL_MS,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    await app.state.liveness.stop()
    for conn in registry.snapshot():
        conn.terminate()
    logger.info("👋 信令服务已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="WebRTC 一对多直播信令中继",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

# ── 限流 ──────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# ── CORS 中间件 ──────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    # prod 环境：跨域由前置代理负责
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(rooms.router, prefix="/api", tags=["Rooms"])
app.include_router(signaling_ws.router, tags=["WebSocket Signaling"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/", tags=["System"])
async def status() -> JSONResponse:
    """固定的就绪响应，供负载均衡与前端探活。"""
    return JSONResponse(content={"status": "ok", "message": "WebRTC signaling server running"})


@app.get("/health", tags=["System"])
async def health_check(
    store: RoomStore = Depends(get_room_store),
    registry: ConnectionRegistry = Depends(get_registry),
) -> JSONResponse:
    """验证服务是否正常运行。

    Returns:
        包含环境、房间数与连接数的 JSON 响应。
    """
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
            "rooms": len(store),
            "connections": len(registry),
            "heartbeat_interval_ms": settings.HEARTBEAT_INTERVAL_MS,
        },
    )


def run() -> None:
    """命令行入口：``signal-relay`` 或 ``python -m signal_relay.main``。"""
    import uvicorn

    uvicorn.run(
        "signal_relay.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )


if __name__ == "__main__":
    run()
