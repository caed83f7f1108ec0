"""桥接调用审计日志模型。"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from falcon_api.models.base import Base, UUIDPrimaryKeyMixin


class ApiLog(Base, UUIDPrimaryKeyMixin):
    """沙箱工具经桥接访问数据源的调用记录（含被拒绝的调用）。"""

    __tablename__ = "api_logs"

    # 发起调用的工具 ID。
    tool_id: Mapped[UUID | None] = mapped_column(index=True)
    # 调用用户 ID。
    user_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    # 调用时生效的部门，未分配为 default。
    department: Mapped[str] = mapped_column(String(128), nullable=False)
    # 目标数据源名称，list-sources 时为空。
    data_source: Mapped[str | None] = mapped_column(String(128), index=True)
    # 操作类型（BridgeOperation）。
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    # 目标表 / SQL / 端点。
    query: Mapped[str | None] = mapped_column(Text)
    # 参数或载荷快照。
    params: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    # 是否成功执行。
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    # 拒绝原因（DenyReason），执行错误时为空。
    deny_reason: Mapped[str | None] = mapped_column(String(64))
    # 错误信息。
    error_message: Mapped[str | None] = mapped_column(Text)
    # 返回行数。
    row_count: Mapped[int | None] = mapped_column(Integer)
    # 耗时（毫秒）。
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
