"""
signal_relay.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

HTTP 管理接口的限流配置。

WebSocket 信令通道不限流（握手消息数量本身很少），
只对 ``/``、``/health``、``/api/rooms`` 等 HTTP 接口按客户端 IP 限流。
"""
from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from signal_relay.core.config import settings

# 基于客户端 IP 地址进行限流，默认规则对所有被装饰的路由生效
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.STATUS_RATE_LIMIT],
    storage_uri="memory://",
)
