"""桥接调用授权。

把“工具声明的数据源范围”和“调用用户部门的数据源权限”求交集，
对一次桥接请求给出放行（附带生效列过滤）或拒绝（恰好一个原因）的结论。

判定顺序：
1. list-sources 恒放行，结果为部门可访问数据源与工具范围的交集。
2. 数据源不在工具范围内 -> unscoped（工具范围是硬上限）。
3. 部门无权访问该数据源（含不存在/停用）-> source not permitted for department。
4. 操作与数据源类型不匹配 -> operation not supported for source。
5. 目标表不在对应白名单 -> table not permitted。
6. 写入载荷含写屏蔽列 -> blocked column present（整体拒绝，不做部分写入）；
   读取时屏蔽列从投影中剔除；过滤条件、端点查询参数、SQL 中引用屏蔽列，
   或 SQL 以整行形式取值，同样拒绝。

授权本身不访问目标数据源，只读取权限存储。
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Protocol

from sqlalchemy.orm import Session

from falcon_api.models.enums import (
    ENDPOINT_SOURCE_TYPES,
    SQL_SOURCE_TYPES,
    BridgeOperation,
    DenyReason,
)
from falcon_api.schemas.bridge import BridgeRequest, endpoint_query_keys
from falcon_api.services.permission_cache import PermissionCache
from falcon_api.services.permissions import SourceAccess, resolve_accessible_sources, resolve_source_access
from falcon_api.services.sql_inspect import (
    extract_table_names,
    is_read_only_statement,
    referenced_identifiers,
    row_serializers,
    uses_unicode_escapes,
    whole_row_references,
)

logger = logging.getLogger("falcon_api.authorization")


class ScopedTool(Protocol):
    """授权只关心工具声明的数据源范围。"""

    allowed_sources: list[str]


@dataclass(frozen=True)
class Allow:
    """放行结论。"""

    # 目标数据源的生效权限，list-sources 时为空。
    access: SourceAccess | None = None
    # 读取的生效列过滤；None 表示未指定投影（全部列减去屏蔽列）。
    columns: list[str] | None = None
    # 需要从结果行/表结构中剔除的列。
    blocked_columns: tuple[str, ...] = ()
    # 本次操作涉及的表。
    tables: tuple[str, ...] = ()
    # list-sources 的结果。
    sources: list[SourceAccess] = field(default_factory=list)

    allowed = True


@dataclass(frozen=True)
class Deny:
    """拒绝结论。"""

    reason: DenyReason
    detail: str | None = None

    allowed = False

    @property
    def message(self) -> str:
        return f"access denied: {self.reason}"


Decision = Allow | Deny


def _fold(names: Any) -> set[str]:
    return {name.casefold() for name in names}


def _deny(request: BridgeRequest, reason: DenyReason, detail: str | None = None) -> Deny:
    logger.info(
        "bridge denied operation=%s source=%s reason=%s detail=%s",
        request.operation,
        request.data_source,
        reason.value,
        detail,
    )
    return Deny(reason=reason, detail=detail)


def _unsupported_shape(request: BridgeRequest, access: SourceAccess) -> str | None:
    """检查请求形态是否适用于数据源类型，适用时返回 None。"""
    source_type = access.data_source.type
    if request.sql is not None:
        if source_type not in SQL_SOURCE_TYPES:
            return "sql is only supported on database sources"
        if request.operation != BridgeOperation.READ:
            return "sql is only supported for read"
        if not is_read_only_statement(request.sql):
            return "only single read-only SELECT statements are allowed"
    if request.endpoint is not None and source_type not in ENDPOINT_SOURCE_TYPES:
        return "endpoint calls are only supported on REST sources"
    if request.operation == BridgeOperation.LIST_SCHEMA and source_type not in SQL_SOURCE_TYPES:
        return "schema listing is only supported on database sources"
    return None


def _target_tables(request: BridgeRequest, access: SourceAccess) -> tuple[str, ...]:
    """计算请求实际触达的表。"""
    if request.sql is not None:
        return tuple(extract_table_names(request.sql))
    if access.data_source.type in ENDPOINT_SOURCE_TYPES:
        resource = request.resource
        return (resource,) if resource else ()
    return (request.table,) if request.table else ()


def _row_level_exposure(sql: str) -> str | None:
    """整行序列化与转义标识符绕过按列名的屏蔽检查，返回命中的写法。"""
    if uses_unicode_escapes(sql):
        return "unicode escaped identifier"
    serializers = row_serializers(sql)
    if serializers:
        return ", ".join(serializers)
    whole_rows = whole_row_references(sql)
    if whole_rows:
        return "whole-row reference: " + ", ".join(whole_rows)
    return None


def authorize(
    db: Session,
    *,
    tool: ScopedTool,
    department: str | None,
    request: BridgeRequest,
    cache: PermissionCache | None = None,
) -> Decision:
    """对桥接请求做放行/拒绝判定。

    部门取调用用户当前部门（而非工具作者部门）。
    权限存储不可用时抛出 InfrastructureError，不会被当作拒绝。
    """
    scope = set(tool.allowed_sources or [])

    if request.operation == BridgeOperation.LIST_SOURCES:
        sources = [item for item in resolve_accessible_sources(db, department) if item.name in scope]
        return Allow(sources=sources)

    source_name = request.data_source or ""
    if source_name not in scope:
        return _deny(request, DenyReason.UNSCOPED)

    access = resolve_source_access(db, source_name, department, cache=cache)
    if access is None:
        return _deny(request, DenyReason.SOURCE_NOT_PERMITTED)

    problem = _unsupported_shape(request, access)
    if problem:
        return _deny(request, DenyReason.OPERATION_NOT_SUPPORTED, problem)

    tables = _target_tables(request, access)
    if not tables:
        if request.sql is not None:
            return _deny(request, DenyReason.TABLE_NOT_PERMITTED, "no table could be identified")
        return _deny(request, DenyReason.OPERATION_NOT_SUPPORTED, "target table is required")

    allowed_tables = _fold(access.tables_for(request.operation))
    rejected = [name for name in tables if name.casefold() not in allowed_tables]
    if rejected:
        return _deny(request, DenyReason.TABLE_NOT_PERMITTED, ", ".join(rejected))

    if request.operation == BridgeOperation.WRITE:
        write_blocked = _fold(access.write_blocked_columns)
        present = [name for name in request.payload_columns() if name.casefold() in write_blocked]
        if present:
            return _deny(request, DenyReason.BLOCKED_COLUMN_PRESENT, ", ".join(present))
        return Allow(access=access, tables=tables)

    if request.operation == BridgeOperation.DELETE:
        return Allow(access=access, tables=tables)

    # 读取与表结构查询：屏蔽列在白名单确认之后做减法，不能被白名单“解除”。
    read_blocked = _fold(access.read_blocked_columns)
    # 过滤条件或 SQL 中引用屏蔽列会泄露其取值，直接拒绝。
    referenced = list((request.filters or {}).keys())
    if access.data_source.type in ENDPOINT_SOURCE_TYPES:
        referenced.extend(endpoint_query_keys(request.endpoint or request.table))
    if request.sql is not None:
        referenced.extend(referenced_identifiers(request.sql))
    leaked = sorted({name for name in referenced if name.casefold() in read_blocked})
    if leaked:
        return _deny(request, DenyReason.BLOCKED_COLUMN_PRESENT, ", ".join(leaked))
    if read_blocked and request.sql is not None:
        exposure = _row_level_exposure(request.sql)
        if exposure:
            return _deny(request, DenyReason.BLOCKED_COLUMN_PRESENT, exposure)

    columns = None
    if request.columns is not None and request.operation == BridgeOperation.READ:
        columns = [name for name in request.columns if name.casefold() not in read_blocked]
    return Allow(
        access=access,
        columns=columns,
        blocked_columns=access.read_blocked_columns,
        tables=tables,
    )


__all__ = ["Allow", "Decision", "Deny", "ScopedTool", "authorize"]
