"""接口成功响应 `data` 字段结构定义。"""

from uuid import UUID

from pydantic import Field

from falcon_api.schemas.common import BaseSchema


class HealthStatusData(BaseSchema):
    """健康检查返回结构。"""

    status: str = Field(description="健康状态值，常见为 ok 或 ready。")


class SourceCapabilityData(BaseSchema):
    """当前部门在某数据源上的能力视图。"""

    can_read: bool = Field(description="是否存在可读表。")
    can_write: bool = Field(description="是否存在可写表。")
    can_delete: bool = Field(description="是否存在可删除表。")
    read_tables: list[str] = Field(description="可读表。")
    write_tables: list[str] = Field(description="可写表。")
    delete_tables: list[str] = Field(description="可删除表。")


class AccessibleSourceData(BaseSchema):
    """可访问数据源条目（不包含连接配置）。"""

    name: str = Field(description="数据源唯一名称。")
    display_name: str = Field(description="展示名称。")
    description: str | None = Field(default=None, description="描述。")
    type: str = Field(description="数据源类型。")
    capabilities: SourceCapabilityData = Field(description="能力视图。")


class PermissionRuleData(BaseSchema):
    """部门规则返回结构。"""

    data_source: str = Field(description="数据源名称。")
    department: str = Field(description="部门。")
    read_tables: list[str] = Field(description="可读表。")
    read_blocked_columns: list[str] = Field(description="读取时剔除的列。")
    write_tables: list[str] = Field(description="可写表。")
    write_blocked_columns: list[str] = Field(description="写入时禁止出现的列。")
    delete_tables: list[str] = Field(description="可删除表。")


class DataSourceStateData(BaseSchema):
    """数据源启停状态。"""

    name: str = Field(description="数据源名称。")
    is_active: bool = Field(description="是否启用。")


class DeletedData(BaseSchema):
    """删除结果。"""

    deleted: bool = Field(description="是否已删除。")


class ToolScopeData(BaseSchema):
    """工具数据源范围。"""

    tool_id: UUID = Field(description="工具 ID。")
    allowed_sources: list[str] = Field(description="工具代码可调用的数据源名称。")
