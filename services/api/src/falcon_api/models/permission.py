"""数据源权限规则模型。"""

from uuid import UUID

from sqlalchemy import JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from falcon_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

# 未分配部门用户使用的兜底部门。
DEFAULT_DEPARTMENT = "default"


class DataSourcePermission(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """部门级数据源访问规则。

    说明：
    1. 同一数据源 + 同一部门 唯一。
    2. 三个表白名单为空即表示该操作无权限。
    3. 屏蔽列只对对应白名单内的表有意义，其余条目自然失效。
    """

    __tablename__ = "data_source_permissions"
    __table_args__ = (
        UniqueConstraint("data_source_id", "department", name="uk_data_source_permission_department"),
    )

    # 所属数据源 ID。
    data_source_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    # 部门标识，default 为兜底规则。
    department: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    # 可读表。
    read_tables: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # 读取时剔除的列。
    read_blocked_columns: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # 可写表。
    write_tables: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # 写入时禁止出现的列。
    write_blocked_columns: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # 可删除表。
    delete_tables: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
