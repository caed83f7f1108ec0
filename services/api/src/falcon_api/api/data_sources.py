"""可访问数据源查询接口。"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from falcon_api.db.session import get_db
from falcon_api.dependencies import RequestContext, get_request_context
from falcon_api.schemas.common import ErrorResponse, SuccessResponse
from falcon_api.schemas.responses import AccessibleSourceData
from falcon_api.services import SourceAccess, resolve_accessible_sources
from falcon_api.utils.response import success

router = APIRouter(prefix="/data-sources", tags=["data-sources"])


def _source_data(access: SourceAccess) -> dict:
    source = access.data_source
    return {
        "name": source.name,
        "display_name": source.display_name,
        "description": source.description,
        "type": source.type.value,
        "capabilities": {
            "can_read": access.can_read,
            "can_write": access.can_write,
            "can_delete": access.can_delete,
            "read_tables": list(access.read_tables),
            "write_tables": list(access.write_tables),
            "delete_tables": list(access.delete_tables),
        },
    }


@router.get(
    "",
    summary="查询可访问数据源",
    description="按当前用户部门解析可访问的数据源及读/写/删能力，用于工具创作时选择数据源；不返回连接配置。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[list[AccessibleSourceData]],
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def list_accessible_sources(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    sources = resolve_accessible_sources(db, ctx.department)
    return success(request, [_source_data(item) for item in sources], meta={"department": ctx.department})
