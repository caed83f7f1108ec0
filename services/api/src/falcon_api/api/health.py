"""健康检查接口。"""

from sqlalchemy import text
from sqlalchemy.orm import Session

from fastapi import APIRouter, Depends, Request, status

from falcon_api.db.session import get_db
from falcon_api.schemas.common import ErrorResponse, SuccessResponse
from falcon_api.schemas.responses import HealthStatusData
from falcon_api.utils.response import success

router = APIRouter(prefix="/health", tags=["health"])


@router.get(
    "/live",
    summary="存活探针",
    description="用于容器编排系统检测服务进程是否存活。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[HealthStatusData],
    responses={500: {"model": ErrorResponse}},
)
def live(request: Request):
    """仅表示进程存活，不校验外部依赖。"""
    return success(request, {"status": "ok"})


@router.get(
    "/ready",
    summary="就绪探针",
    description="检测元数据库（权限规则存储）是否可用；不可用时桥接调用无法完成授权。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[HealthStatusData],
    responses={500: {"model": ErrorResponse}},
)
def ready(request: Request, db: Session = Depends(get_db)):
    db.execute(text("select 1"))
    return success(request, {"status": "ready"})
