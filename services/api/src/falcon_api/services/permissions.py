"""部门级数据源权限解析（数据库驱动）。

解析规则：
1. 用户未分配部门时，使用 default 部门规则。
2. 数据源上存在用户部门规则时使用该规则，否则回退到 default 规则。
3. 两者都不存在的数据源不可访问（默认拒绝）。
4. 仅启用状态的数据源参与解析。
"""

from dataclasses import dataclass, field
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from falcon_api.core.errors import InfrastructureError
from falcon_api.models.data_source import DataSource
from falcon_api.models.enums import BridgeOperation, DataSourceType
from falcon_api.models.permission import DEFAULT_DEPARTMENT, DataSourcePermission
from falcon_api.schemas.rules import PermissionRuleRecord, normalize_name_list
from falcon_api.services.permission_cache import PermissionCache

logger = logging.getLogger("falcon_api.permissions")


@dataclass(frozen=True)
class DataSourceInfo:
    """数据源只读快照，解析结果中不持有 ORM 对象。"""

    name: str
    display_name: str
    type: DataSourceType
    description: str | None = None
    config: dict[str, Any] = field(default_factory=dict, compare=False)
    allowed_endpoints: tuple[str, ...] = ()


@dataclass(frozen=True)
class SourceAccess:
    """某部门在某数据源上的生效权限。"""

    data_source: DataSourceInfo
    # 实际生效规则所属部门（用户部门或 default）。
    department: str
    read_tables: tuple[str, ...] = ()
    # 部门规则读屏蔽列 + 数据源全局屏蔽列。
    read_blocked_columns: tuple[str, ...] = ()
    write_tables: tuple[str, ...] = ()
    write_blocked_columns: tuple[str, ...] = ()
    delete_tables: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.data_source.name

    @property
    def can_read(self) -> bool:
        return bool(self.read_tables)

    @property
    def can_write(self) -> bool:
        return bool(self.write_tables)

    @property
    def can_delete(self) -> bool:
        return bool(self.delete_tables)

    def tables_for(self, operation: BridgeOperation) -> tuple[str, ...]:
        """返回操作对应的表白名单，表结构查询沿用读白名单。"""
        if operation in {BridgeOperation.READ, BridgeOperation.LIST_SCHEMA}:
            return self.read_tables
        if operation == BridgeOperation.WRITE:
            return self.write_tables
        if operation == BridgeOperation.DELETE:
            return self.delete_tables
        return ()


def effective_department(department: str | None) -> str:
    """未分配部门的用户按 default 部门解析。"""
    if department is None:
        return DEFAULT_DEPARTMENT
    normalized = department.strip()
    return normalized or DEFAULT_DEPARTMENT


def _to_info(source: DataSource) -> DataSourceInfo | None:
    try:
        source_type = DataSourceType(source.type)
        allowed_endpoints = normalize_name_list(source.allowed_endpoints)
    except ValueError:
        logger.error("skip data source with invalid metadata name=%s type=%s", source.name, source.type)
        return None
    return DataSourceInfo(
        name=source.name,
        display_name=source.display_name,
        type=source_type,
        description=source.description,
        config=dict(source.config or {}),
        allowed_endpoints=tuple(allowed_endpoints),
    )


def _to_record(source_name: str, rule: DataSourcePermission) -> PermissionRuleRecord | None:
    """把数据库规则转换为校验记录，格式不合法时记录日志并返回 None。"""
    try:
        return PermissionRuleRecord.model_validate(rule)
    except ValidationError as exc:
        logger.error(
            "reject malformed permission rule source=%s department=%s errors=%s",
            source_name,
            rule.department,
            exc.errors(include_url=False),
        )
        return None


def _build_access(source: DataSource, rules: list[DataSourcePermission], department: str) -> SourceAccess | None:
    """从候选规则中挑选生效规则并构造访问视图。

    部门专属规则优先；专属规则存在但格式不合法时不回退到 default，直接拒绝。
    """
    by_department = {rule.department: rule for rule in rules}
    rule = by_department.get(department) or by_department.get(DEFAULT_DEPARTMENT)
    if rule is None:
        return None

    info = _to_info(source)
    record = _to_record(source.name, rule)
    if info is None or record is None:
        return None

    try:
        global_blocked = normalize_name_list(source.global_blocked_columns)
    except ValueError:
        logger.error("skip data source with malformed global blocked columns name=%s", source.name)
        return None

    read_blocked = list(record.read_blocked_columns)
    for column in global_blocked:
        if column not in read_blocked:
            read_blocked.append(column)

    return SourceAccess(
        data_source=info,
        department=record.department,
        read_tables=tuple(record.read_tables),
        read_blocked_columns=tuple(read_blocked),
        write_tables=tuple(record.write_tables),
        write_blocked_columns=tuple(record.write_blocked_columns),
        delete_tables=tuple(record.delete_tables),
    )


def _load_candidates(
    db: Session,
    *,
    department: str,
    data_source_name: str | None = None,
) -> dict[str, tuple[DataSource, list[DataSourcePermission]]]:
    """读取启用数据源上属于本部门或 default 部门的规则。"""
    departments = {department, DEFAULT_DEPARTMENT}
    stmt = (
        select(DataSource, DataSourcePermission)
        .join(DataSourcePermission, DataSourcePermission.data_source_id == DataSource.id)
        .where(DataSource.is_active.is_(True))
        .where(DataSourcePermission.department.in_(departments))
        .order_by(DataSource.name)
    )
    if data_source_name is not None:
        stmt = stmt.where(DataSource.name == data_source_name)

    try:
        rows = db.execute(stmt).all()
    except SQLAlchemyError as exc:
        logger.exception("permission store query failed department=%s", department)
        raise InfrastructureError("permission store unavailable") from exc

    candidates: dict[str, tuple[DataSource, list[DataSourcePermission]]] = {}
    for source, rule in rows:
        candidates.setdefault(source.name, (source, []))[1].append(rule)
    return candidates


def resolve_accessible_sources(db: Session, department: str | None) -> list[SourceAccess]:
    """返回部门可访问的数据源及各自生效名单，按数据源名称排序。"""
    resolved_department = effective_department(department)
    candidates = _load_candidates(db, department=resolved_department)

    accessible: list[SourceAccess] = []
    for name in sorted(candidates):
        source, rules = candidates[name]
        access = _build_access(source, rules, resolved_department)
        if access is not None:
            accessible.append(access)
    return accessible


def resolve_source_access(
    db: Session,
    data_source_name: str,
    department: str | None,
    *,
    cache: PermissionCache | None = None,
) -> SourceAccess | None:
    """解析单个数据源的生效权限。

    数据源不存在、已停用或无规则时均返回 None，调用方无法区分三者。
    """
    resolved_department = effective_department(department)

    def _load() -> SourceAccess | None:
        candidates = _load_candidates(db, department=resolved_department, data_source_name=data_source_name)
        entry = candidates.get(data_source_name)
        if entry is None:
            return None
        return _build_access(entry[0], entry[1], resolved_department)

    if cache is None:
        return _load()
    return cache.get_or_load((data_source_name, resolved_department), _load)
