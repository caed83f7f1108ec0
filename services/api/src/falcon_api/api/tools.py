"""工具数据源范围接口。"""

from uuid import UUID

from fastapi import APIRouter, Depends, Path, Request, status
from sqlalchemy.orm import Session

from falcon_api.db.session import get_db
from falcon_api.dependencies import RequestContext, get_request_context
from falcon_api.schemas.common import ErrorResponse, SuccessResponse
from falcon_api.schemas.permission import ToolSourcesUpdateRequest
from falcon_api.schemas.responses import ToolScopeData
from falcon_api.services import update_tool_sources
from falcon_api.utils.response import success

router = APIRouter(prefix="/tools", tags=["tools"])


@router.put(
    "/{tool_id}/sources",
    summary="更新工具数据源范围",
    description=(
        "覆盖工具代码可调用的数据源列表。仅作者可修改，且每个数据源都必须是作者当前部门可访问的；"
        "运行时仍会按调用用户部门再次授权。"
    ),
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[ToolScopeData],
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
def put_tool_sources(
    payload: ToolSourcesUpdateRequest,
    request: Request,
    tool_id: UUID = Path(..., description="工具 ID。"),
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    tool = update_tool_sources(
        db,
        tool_id=tool_id,
        user_id=ctx.user_id,
        department=ctx.department,
        allowed_sources=payload.allowed_sources,
    )
    db.commit()
    return success(request, {"tool_id": tool.id, "allowed_sources": list(tool.allowed_sources)})
