"""FastAPI 应用入口点。"""

from fastapi import FastAPI

from falcon_api.api.router import api_router
from falcon_api.core.config import get_settings
from falcon_api.core.logging import setup_logging
from falcon_api.exceptions import register_exception_handlers
from falcon_api.middlewares import register_middlewares

settings = get_settings()


def create_app() -> FastAPI:
    """创建并配置 FastAPI 应用实例。"""
    setup_logging(settings.log_level)
    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        debug=settings.app_debug,
        description=(
            "内部工具数据桥接服务。\n\n"
            "所有业务接口统一返回：`{request_id, data, meta}`。\n"
            "通过访问令牌进行认证，数据权限按令牌中的部门声明判断。\n"
            "沙箱工具通过 `/api/bridge/ws/{tool_id}` 消息通道访问数据源。"
        ),
        openapi_tags=[
            {"name": "health", "description": "服务存活与就绪探针。"},
            {"name": "data-sources", "description": "当前用户可访问的数据源与能力视图。"},
            {"name": "bridge", "description": "沙箱工具的数据桥接调用。"},
            {"name": "tools", "description": "工具数据源范围维护。"},
            {"name": "admin", "description": "数据源与部门权限规则管理（仅管理员）。"},
        ],
    )

    register_middlewares(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix=settings.api_prefix)
    return app


app = create_app()
