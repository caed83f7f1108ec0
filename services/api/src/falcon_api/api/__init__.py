"""路由模块导出集合。"""

from . import admin, bridge, data_sources, health, tools

__all__ = [
    "admin",
    "bridge",
    "data_sources",
    "health",
    "tools",
]
