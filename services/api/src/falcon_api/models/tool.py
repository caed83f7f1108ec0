"""生成工具模型（仅包含数据权限相关字段）。"""

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from falcon_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from falcon_api.models.enums import ToolVisibility


class Tool(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """由 AI 生成的内部小工具。"""

    __tablename__ = "tools"

    # 工具名称。
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # 作者用户 ID（外部身份系统 sub）。
    author_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    # 作者创建工具时所在部门，用于部门可见性判断。
    author_department: Mapped[str | None] = mapped_column(String(128))
    # 可见范围（ToolVisibility）。
    visibility: Mapped[str] = mapped_column(String(32), nullable=False, default=ToolVisibility.PRIVATE)
    # 工具代码可调用的数据源名称。
    allowed_sources: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
