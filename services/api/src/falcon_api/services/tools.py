"""工具可见性与数据源范围维护。"""

import logging
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from falcon_api.core.errors import InfrastructureError, ToolNotFound
from falcon_api.models.enums import ToolVisibility
from falcon_api.models.tool import Tool
from falcon_api.services.permissions import resolve_accessible_sources

logger = logging.getLogger("falcon_api.tools")


def can_use_tool(tool: Tool, *, user_id: str, department: str | None) -> bool:
    """判断用户能否运行工具。

    作者始终可用；部门可见要求同部门；公司/公开范围对所有登录用户可见。
    能运行工具不代表能访问其数据源，数据访问仍按调用用户部门授权。
    """
    if tool.author_id == user_id:
        return True
    visibility = tool.visibility
    if visibility in {ToolVisibility.COMPANY, ToolVisibility.PUBLIC}:
        return True
    if visibility == ToolVisibility.DEPARTMENT:
        return department is not None and department == tool.author_department
    return False


def get_usable_tool(db: Session, *, tool_id: UUID, user_id: str, department: str | None) -> Tool:
    """读取当前用户可运行的工具，不存在与不可见统一按不存在处理。"""
    try:
        tool = db.get(Tool, tool_id)
    except SQLAlchemyError as exc:
        logger.exception("tool lookup failed tool_id=%s", tool_id)
        raise InfrastructureError("tool store unavailable") from exc
    if tool is None or not can_use_tool(tool, user_id=user_id, department=department):
        raise ToolNotFound(f"tool {tool_id} not found")
    return tool


def update_tool_sources(
    db: Session,
    *,
    tool_id: UUID,
    user_id: str,
    department: str | None,
    allowed_sources: list[str],
) -> Tool:
    """更新工具声明的数据源范围。

    只有作者可以修改，且只能声明作者当前部门可访问的数据源，
    避免借工具范围绕过自身权限。
    """
    try:
        tool = db.get(Tool, tool_id)
    except SQLAlchemyError as exc:
        logger.exception("tool lookup failed tool_id=%s", tool_id)
        raise InfrastructureError("tool store unavailable") from exc
    if tool is None:
        raise ToolNotFound(f"tool {tool_id} not found")
    if tool.author_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "TOOL_AUTHOR_REQUIRED", "message": "只有工具作者可以修改数据源范围。"},
        )

    accessible = {item.name for item in resolve_accessible_sources(db, department)}
    rejected = [name for name in allowed_sources if name not in accessible]
    if rejected:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "TOOL_SOURCES_NOT_PERMITTED",
                "message": "工具声明了当前部门无权访问的数据源。",
                "details": {"rejected_sources": rejected},
            },
        )

    tool.allowed_sources = list(allowed_sources)
    db.flush()
    logger.info("tool sources updated tool_id=%s sources=%s", tool_id, allowed_sources)
    return tool
