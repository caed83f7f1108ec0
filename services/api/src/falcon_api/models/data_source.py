"""数据源登记模型。"""

from typing import Any

from sqlalchemy import JSON, Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from falcon_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class DataSource(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """已配置的外部数据源（数据库 / REST 接口 / 第三方集成）。

    说明：
    1. 以 `name` 作为对外引用标识，工具与权限规则都按名称引用。
    2. `config` 为不透明连接配置，仅由对应类型的执行器解释。
    """

    __tablename__ = "data_sources"

    # 唯一名称，例如 demo_postgres。
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    # 展示名称。
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # 可选描述。
    description: Mapped[str | None] = mapped_column(Text)
    # 数据源类型（DataSourceType）。
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    # 连接配置（主机/账号/基础地址等）。
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # REST 数据源允许调用的端点资源名，空表示不限制。
    allowed_endpoints: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # 对所有部门生效的读屏蔽列。
    global_blocked_columns: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # 是否启用；停用后其权限规则全部失效。
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
