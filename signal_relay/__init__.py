"""WebRTC 一对多直播信令中继服务。"""

__version__ = "0.1.0"
