"""桥接请求/响应结构。

沙箱与受信侧之间的消息字段名是双方必须逐字一致的契约：
请求 `{kind: "bridge-request", id, operation, dataSource, ...}`，
响应 `{kind: "bridge-response", id, result}` 或 `{kind: "bridge-response", id, error}`。
"""

from typing import Any, Literal
from urllib.parse import parse_qsl
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from falcon_api.models.enums import BridgeOperation

REQUEST_KIND = "bridge-request"
RESPONSE_KIND = "bridge-response"


def endpoint_resource(endpoint: str | None) -> str | None:
    """提取端点的资源名（首段路径），非法端点返回 None。"""
    if not endpoint:
        return None
    path = endpoint.strip().split("?", 1)[0].split("#", 1)[0]
    if "://" in path or "\\" in path:
        return None
    segments = [segment for segment in path.split("/") if segment]
    if not segments or any(segment in {".", ".."} for segment in segments):
        return None
    return segments[0]


def endpoint_query_keys(endpoint: str | None) -> list[str]:
    """提取端点中查询参数的键名。"""
    if not endpoint or "?" not in endpoint:
        return []
    query = endpoint.split("?", 1)[1].split("#", 1)[0]
    return [key for key, _ in parse_qsl(query, keep_blank_values=True)]


class BridgeRequest(BaseModel):
    """一次桥接调用的参数，不落库，只在一次授权 + 执行周期内存在。"""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    operation: BridgeOperation = Field(description="操作类型。")
    data_source: str | None = Field(default=None, alias="dataSource", description="目标数据源名称。")
    table: str | None = Field(default=None, description="目标表（REST 数据源为端点资源名）。")
    columns: list[str] | None = Field(default=None, description="读取列投影或写入列。")
    sql: str | None = Field(default=None, description="只读 SQL（仅关系型数据源）。")
    params: list[Any] | dict[str, Any] | None = Field(default=None, description="SQL 绑定参数。")
    endpoint: str | None = Field(default=None, description="REST 端点路径（仅 REST 数据源）。")
    payload: dict[str, Any] | list[dict[str, Any]] | None = Field(default=None, description="写入载荷。")
    filters: dict[str, Any] | None = Field(default=None, description="等值过滤条件。")
    limit: int | None = Field(default=None, ge=1, description="最大返回行数。")

    @field_validator("data_source", "table", "sql", "endpoint")
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("columns")
    @classmethod
    def normalize_columns(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized: list[str] = []
        for item in value:
            name = item.strip()
            if not name:
                raise ValueError("column names must not be blank")
            if name not in normalized:
                normalized.append(name)
        return normalized

    @model_validator(mode="after")
    def require_data_source(self) -> "BridgeRequest":
        if self.operation != BridgeOperation.LIST_SOURCES and not self.data_source:
            raise ValueError("dataSource is required")
        return self

    @property
    def resource(self) -> str | None:
        """REST 调用实际命中的资源名：优先端点，其次表名。"""
        if self.endpoint:
            return endpoint_resource(self.endpoint)
        return endpoint_resource(self.table)

    def payload_columns(self) -> list[str]:
        """写入涉及的全部列（载荷键 + 显式列）。"""
        names: list[str] = list(self.columns or [])
        rows = self.payload if isinstance(self.payload, list) else [self.payload] if self.payload else []
        for row in rows:
            for key in row:
                if key not in names:
                    names.append(key)
        return names


class BridgeRequestMessage(BridgeRequest):
    """沙箱发往受信侧的请求消息。"""

    kind: Literal["bridge-request"] = Field(description="消息类型，固定为 bridge-request。")
    id: str = Field(min_length=1, max_length=256, description="调用方生成的关联 ID。")


class BridgeResponseMessage(BaseModel):
    """受信侧回给沙箱的响应消息，`result` 与 `error` 恰好出现一个。"""

    kind: Literal["bridge-response"] = RESPONSE_KIND
    id: str
    result: Any = None
    error: str | None = None

    @model_validator(mode="after")
    def exactly_one_outcome(self) -> "BridgeResponseMessage":
        has_result = "result" in self.model_fields_set
        has_error = "error" in self.model_fields_set and self.error is not None
        if has_result == has_error:
            raise ValueError("exactly one of result/error must be present")
        return self

    @classmethod
    def ok(cls, request_id: str, result: Any) -> "BridgeResponseMessage":
        return cls(kind=RESPONSE_KIND, id=request_id, result=result)

    @classmethod
    def fail(cls, request_id: str, error: str) -> "BridgeResponseMessage":
        return cls(kind=RESPONSE_KIND, id=request_id, error=error)

    def to_wire(self) -> dict[str, Any]:
        """输出线上格式，只包含实际出现的那个结果字段。"""
        return self.model_dump(mode="json", exclude_unset=True)


class BridgeCallRequest(BridgeRequest):
    """HTTP 一次性桥接调用请求。"""

    tool_id: UUID = Field(alias="toolId", description="发起调用的工具 ID。")
