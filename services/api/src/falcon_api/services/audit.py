"""桥接调用审计。"""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from falcon_api.models.audit import ApiLog
from falcon_api.schemas.bridge import BridgeRequest
from falcon_api.services.permissions import effective_department


def _query_text(request: BridgeRequest) -> str | None:
    """审计中记录的查询：SQL > 端点 > 表名。"""
    return request.sql or request.endpoint or request.table


def _params_snapshot(request: BridgeRequest) -> dict[str, Any] | None:
    snapshot = {
        key: value
        for key, value in (
            ("params", request.params),
            ("payload", request.payload),
            ("filters", request.filters),
            ("columns", request.columns),
            ("limit", request.limit),
        )
        if value is not None
    }
    return snapshot or None


def record_bridge_call(
    db: Session,
    *,
    tool_id: UUID | None,
    user_id: str,
    department: str | None,
    request: BridgeRequest,
    success: bool,
    deny_reason: str | None = None,
    error_message: str | None = None,
    row_count: int | None = None,
    duration_ms: int | None = None,
) -> ApiLog:
    """写入一条桥接调用日志，由调用方负责提交事务。"""
    entry = ApiLog(
        tool_id=tool_id,
        user_id=user_id,
        department=effective_department(department),
        data_source=request.data_source,
        operation=request.operation.value,
        query=_query_text(request),
        params=_params_snapshot(request),
        success=success,
        deny_reason=deny_reason,
        error_message=error_message,
        row_count=row_count,
        duration_ms=duration_ms,
    )
    db.add(entry)
    return entry
