"""数据源与部门规则管理。

所有写操作都在成功后失效权限缓存，保证后续解析读取到最新规则。
"""

import logging

from fastapi import HTTPException, status
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from falcon_api.models.data_source import DataSource
from falcon_api.models.permission import DataSourcePermission
from falcon_api.models.tool import Tool
from falcon_api.schemas.rules import PermissionRuleFields
from falcon_api.services.permission_cache import PermissionCache

logger = logging.getLogger("falcon_api.admin")


def _data_source_not_found(name: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "DATA_SOURCE_NOT_FOUND", "message": f"数据源 {name} 不存在。"},
    )


def get_data_source(db: Session, name: str) -> DataSource:
    """按名称读取数据源（含停用数据源）。"""
    source = db.execute(select(DataSource).where(DataSource.name == name)).scalar_one_or_none()
    if source is None:
        raise _data_source_not_found(name)
    return source


def _normalize_department(department: str) -> str:
    normalized = department.strip()
    if not normalized:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "INVALID_DEPARTMENT", "message": "部门不能为空。"},
        )
    return normalized


def upsert_permission_rule(
    db: Session,
    *,
    data_source_name: str,
    department: str,
    fields: PermissionRuleFields,
    cache: PermissionCache | None = None,
) -> DataSourcePermission:
    """覆盖写入某部门在某数据源上的规则（五个名单整体替换）。"""
    source = get_data_source(db, data_source_name)
    department = _normalize_department(department)

    rule = db.execute(
        select(DataSourcePermission)
        .where(DataSourcePermission.data_source_id == source.id)
        .where(DataSourcePermission.department == department)
    ).scalar_one_or_none()
    if rule is None:
        rule = DataSourcePermission(data_source_id=source.id, department=department)
        db.add(rule)

    rule.read_tables = list(fields.read_tables)
    rule.read_blocked_columns = list(fields.read_blocked_columns)
    rule.write_tables = list(fields.write_tables)
    rule.write_blocked_columns = list(fields.write_blocked_columns)
    rule.delete_tables = list(fields.delete_tables)
    db.flush()

    if cache is not None:
        cache.invalidate(source.name, department)
    logger.info("permission rule upserted source=%s department=%s", source.name, department)
    return rule


def delete_permission_rule(
    db: Session,
    *,
    data_source_name: str,
    department: str,
    cache: PermissionCache | None = None,
) -> None:
    """删除部门规则；该部门随后回退到 default 规则。"""
    source = get_data_source(db, data_source_name)
    department = _normalize_department(department)
    result = db.execute(
        delete(DataSourcePermission)
        .where(DataSourcePermission.data_source_id == source.id)
        .where(DataSourcePermission.department == department)
    )
    if not result.rowcount:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "PERMISSION_RULE_NOT_FOUND", "message": "部门规则不存在。"},
        )
    if cache is not None:
        cache.invalidate(source.name, department)
    logger.info("permission rule deleted source=%s department=%s", source.name, department)


def list_permission_rules(db: Session, *, data_source_name: str) -> list[DataSourcePermission]:
    source = get_data_source(db, data_source_name)
    return list(
        db.execute(
            select(DataSourcePermission)
            .where(DataSourcePermission.data_source_id == source.id)
            .order_by(DataSourcePermission.department)
        )
        .scalars()
        .all()
    )


def set_data_source_active(
    db: Session,
    *,
    data_source_name: str,
    is_active: bool,
    cache: PermissionCache | None = None,
) -> DataSource:
    """启用或停用数据源，停用后其全部规则立即失效。"""
    source = get_data_source(db, data_source_name)
    source.is_active = is_active
    db.flush()
    if cache is not None:
        cache.invalidate(source.name)
    logger.info("data source state changed name=%s is_active=%s", source.name, is_active)
    return source


def delete_data_source(db: Session, *, data_source_name: str, cache: PermissionCache | None = None) -> None:
    """删除数据源。

    仍有部门规则或工具引用时拒绝删除（无外键约束，由此处维护引用完整性）。
    """
    source = get_data_source(db, data_source_name)

    rule_count = db.execute(
        select(func.count()).select_from(DataSourcePermission).where(DataSourcePermission.data_source_id == source.id)
    ).scalar_one()
    tools = db.execute(select(Tool.id, Tool.allowed_sources)).all()
    referencing_tools = [str(tool_id) for tool_id, sources in tools if source.name in (sources or [])]

    if rule_count or referencing_tools:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "DATA_SOURCE_IN_USE",
                "message": "数据源仍被权限规则或工具引用，无法删除。",
                "details": {"permission_rules": rule_count, "tools": referencing_tools},
            },
        )

    db.delete(source)
    db.flush()
    if cache is not None:
        cache.invalidate(source.name)
    logger.info("data source deleted name=%s", source.name)
