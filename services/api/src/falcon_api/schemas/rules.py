"""权限规则的校验记录。

数据库中的表/列名单是无类型的 JSON 数组，在进入解析器之前统一转换为
`PermissionRuleRecord`，格式不合法的规则在此处直接拒绝。
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_NAME_LIST_FIELDS = (
    "read_tables",
    "read_blocked_columns",
    "write_tables",
    "write_blocked_columns",
    "delete_tables",
)


def normalize_name_list(value: Any) -> list[str]:
    """校验并规范化表名/列名列表（去空白、保序去重）。"""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError("must be a list of names")
    normalized: list[str] = []
    seen: set[str] = set()
    for item in value:
        if not isinstance(item, str):
            raise ValueError("names must be strings")
        name = item.strip()
        if not name:
            raise ValueError("names must not be blank")
        if name in seen:
            continue
        seen.add(name)
        normalized.append(name)
    return normalized


class PermissionRuleFields(BaseModel):
    """规则中的五个名单。"""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    read_tables: list[str] = Field(default_factory=list, description="可读表。")
    read_blocked_columns: list[str] = Field(default_factory=list, description="读取时剔除的列。")
    write_tables: list[str] = Field(default_factory=list, description="可写表。")
    write_blocked_columns: list[str] = Field(default_factory=list, description="写入时禁止出现的列。")
    delete_tables: list[str] = Field(default_factory=list, description="可删除表。")

    @field_validator(*_NAME_LIST_FIELDS, mode="before")
    @classmethod
    def normalize_names(cls, value: Any) -> list[str]:
        return normalize_name_list(value)


class PermissionRuleRecord(PermissionRuleFields):
    """已校验的部门规则记录。"""

    department: str = Field(min_length=1, max_length=128, description="规则所属部门。")

    @field_validator("department", mode="before")
    @classmethod
    def strip_department(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value
