"""数据源与权限规则管理请求结构。"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from falcon_api.schemas.rules import PermissionRuleFields, normalize_name_list


class PermissionRuleUpsertRequest(PermissionRuleFields):
    """部门规则覆盖写入请求，部门取自路径参数。"""

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "read_tables": ["users", "orders"],
                    "read_blocked_columns": ["password"],
                    "write_tables": ["logs"],
                    "write_blocked_columns": [],
                    "delete_tables": [],
                }
            ]
        }
    )


class DataSourceUpdateRequest(BaseModel):
    """数据源启停请求。"""

    is_active: bool = Field(description="是否启用数据源；停用后其规则全部失效。")


class ToolSourcesUpdateRequest(BaseModel):
    """工具数据源范围更新请求。"""

    allowed_sources: list[str] = Field(
        default_factory=list,
        description="工具代码可调用的数据源名称，必须是作者当前部门可访问的数据源。",
        examples=[["demo_postgres", "demo_api"]],
    )

    @field_validator("allowed_sources", mode="before")
    @classmethod
    def normalize_sources(cls, value: Any) -> list[str]:
        return normalize_name_list(value)
