"""数据源与部门权限规则管理接口（仅平台管理员）。"""

from fastapi import APIRouter, Depends, Path, Request, status
from sqlalchemy.orm import Session

from falcon_api.db.session import get_db
from falcon_api.dependencies import RequestContext, get_permission_cache, require_admin
from falcon_api.models.permission import DataSourcePermission
from falcon_api.schemas.common import ErrorResponse, SuccessResponse
from falcon_api.schemas.permission import DataSourceUpdateRequest, PermissionRuleUpsertRequest
from falcon_api.schemas.responses import DataSourceStateData, DeletedData, PermissionRuleData
from falcon_api.services.admin import (
    delete_data_source,
    delete_permission_rule,
    list_permission_rules,
    set_data_source_active,
    upsert_permission_rule,
)
from falcon_api.services.permission_cache import PermissionCache
from falcon_api.utils.response import success

router = APIRouter(prefix="/admin/data-sources", tags=["admin"])

_ADMIN_ERRORS = {
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


def _rule_data(data_source_name: str, rule: DataSourcePermission) -> dict:
    return {
        "data_source": data_source_name,
        "department": rule.department,
        "read_tables": list(rule.read_tables or []),
        "read_blocked_columns": list(rule.read_blocked_columns or []),
        "write_tables": list(rule.write_tables or []),
        "write_blocked_columns": list(rule.write_blocked_columns or []),
        "delete_tables": list(rule.delete_tables or []),
    }


@router.get(
    "/{name}/permissions",
    summary="查询数据源部门规则",
    description="列出数据源上配置的全部部门规则（含 default 兜底规则）。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[list[PermissionRuleData]],
    responses=_ADMIN_ERRORS,
)
def get_permission_rules(
    request: Request,
    name: str = Path(..., description="数据源名称。"),
    _ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    rules = list_permission_rules(db, data_source_name=name)
    return success(request, [_rule_data(name, rule) for rule in rules])


@router.put(
    "/{name}/permissions/{department}",
    summary="写入部门规则",
    description="覆盖写入某部门在数据源上的读/写/删名单；department 传 default 即维护兜底规则。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[PermissionRuleData],
    responses=_ADMIN_ERRORS,
)
def put_permission_rule(
    payload: PermissionRuleUpsertRequest,
    request: Request,
    name: str = Path(..., description="数据源名称。"),
    department: str = Path(..., description="部门标识。"),
    _ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
):
    rule = upsert_permission_rule(db, data_source_name=name, department=department, fields=payload, cache=cache)
    db.commit()
    return success(request, _rule_data(name, rule))


@router.delete(
    "/{name}/permissions/{department}",
    summary="删除部门规则",
    description="删除后该部门回退到 default 规则；删除 default 规则后无专属规则的部门将无法访问该数据源。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[DeletedData],
    responses=_ADMIN_ERRORS,
)
def remove_permission_rule(
    request: Request,
    name: str = Path(..., description="数据源名称。"),
    department: str = Path(..., description="部门标识。"),
    _ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
):
    delete_permission_rule(db, data_source_name=name, department=department, cache=cache)
    db.commit()
    return success(request, {"deleted": True})


@router.patch(
    "/{name}",
    summary="启用/停用数据源",
    description="停用的数据源对所有部门不可见，其规则保留但不参与解析。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[DataSourceStateData],
    responses=_ADMIN_ERRORS,
)
def patch_data_source(
    payload: DataSourceUpdateRequest,
    request: Request,
    name: str = Path(..., description="数据源名称。"),
    _ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
):
    source = set_data_source_active(db, data_source_name=name, is_active=payload.is_active, cache=cache)
    db.commit()
    return success(request, {"name": source.name, "is_active": source.is_active})


@router.delete(
    "/{name}",
    summary="删除数据源",
    description="仍被部门规则或工具引用时返回 409，需要先删除规则并从工具范围中移除。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[DeletedData],
    responses={**_ADMIN_ERRORS, 409: {"model": ErrorResponse}},
)
def remove_data_source(
    request: Request,
    name: str = Path(..., description="数据源名称。"),
    _ctx: RequestContext = Depends(require_admin),
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
):
    delete_data_source(db, data_source_name=name, cache=cache)
    db.commit()
    return success(request, {"deleted": True})
