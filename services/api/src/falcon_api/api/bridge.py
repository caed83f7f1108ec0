"""沙箱数据桥接接口。

两种传输方式共享同一套授权与执行逻辑：
1. `POST /bridge`：一次性 HTTP 调用。
2. `WS /bridge/ws/{tool_id}`：沙箱会话消息通道，每条消息独立处理，响应按关联 ID 回传。
"""

import asyncio
import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import Response
from sqlalchemy.orm import Session

from falcon_api.core.config import get_settings
from falcon_api.core.errors import InfrastructureError, ToolNotFound
from falcon_api.core.security import parse_authorization_header
from falcon_api.db.session import SessionLocal, get_db
from falcon_api.dependencies import RequestContext, get_executor_registry, get_permission_cache, get_request_context
from falcon_api.schemas.bridge import BridgeCallRequest, BridgeRequest
from falcon_api.schemas.common import ErrorResponse, SuccessResponse
from falcon_api.services import (
    BridgeChannel,
    BridgeService,
    ExecutorRegistry,
    PermissionCache,
    get_usable_tool,
    sandbox_client_script,
)
from falcon_api.utils.response import success

logger = logging.getLogger("falcon_api.api.bridge")

router = APIRouter(prefix="/bridge", tags=["bridge"])


def run_bridge_request(
    db: Session,
    *,
    ctx: RequestContext,
    tool_id: UUID,
    payload: BridgeRequest,
    cache: PermissionCache,
    executors: ExecutorRegistry,
) -> Any:
    """加载工具并以调用用户身份分发一次桥接请求。"""
    tool = get_usable_tool(db, tool_id=tool_id, user_id=ctx.user_id, department=ctx.department)
    service = BridgeService(
        db,
        tool=tool,
        user_id=ctx.user_id,
        department=ctx.department,
        executors=executors,
        cache=cache,
    )
    return jsonable_encoder(service.dispatch(payload))


@router.post(
    "",
    summary="桥接调用",
    description=(
        "以当前用户身份执行沙箱工具发起的一次数据访问。"
        "授权取工具声明范围与用户部门权限的交集；拒绝返回 403，且 `details.deny_reason` 给出唯一原因。"
    ),
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[Any],
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
def bridge_call(
    payload: BridgeCallRequest,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    executors: ExecutorRegistry = Depends(get_executor_registry),
):
    result = run_bridge_request(db, ctx=ctx, tool_id=payload.tool_id, payload=payload, cache=cache, executors=executors)
    return success(request, result, meta={"operation": payload.operation.value})


@router.get(
    "/client.js",
    summary="沙箱客户端脚本",
    description="返回注入沙箱页面的 `window.companyAPI` 客户端脚本，使用 postMessage 与宿主页面交换桥接消息。",
    response_class=Response,
)
def bridge_client_script():
    script = sandbox_client_script(get_settings().bridge_response_timeout_seconds)
    return Response(content=script, media_type="application/javascript")


def _socket_authorization(websocket: WebSocket, token: str | None) -> str | None:
    """浏览器 WebSocket 无法自定义请求头，允许通过查询参数传递令牌。"""
    authorization = websocket.headers.get("authorization")
    if authorization:
        return authorization
    return f"Bearer {token}" if token else None


@router.websocket("/ws/{tool_id}")
async def bridge_socket(
    websocket: WebSocket,
    tool_id: UUID,
    token: str | None = Query(default=None),
    cache: PermissionCache = Depends(get_permission_cache),
    executors: ExecutorRegistry = Depends(get_executor_registry),
):
    """沙箱会话消息通道。"""
    try:
        ctx = RequestContext.from_principal(parse_authorization_header(_socket_authorization(websocket, token)))
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    def _check_tool() -> None:
        with SessionLocal() as db:
            get_usable_tool(db, tool_id=tool_id, user_id=ctx.user_id, department=ctx.department)

    try:
        await run_in_threadpool(_check_tool)
    except ToolNotFound:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    except InfrastructureError:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await websocket.accept()
    logger.info("bridge channel opened tool_id=%s user_id=%s", tool_id, ctx.user_id)

    def _dispatch_sync(message: BridgeRequest) -> Any:
        # 每条消息使用独立会话，并重新加载工具与权限。
        with SessionLocal() as db:
            return run_bridge_request(db, ctx=ctx, tool_id=tool_id, payload=message, cache=cache, executors=executors)

    async def _dispatch(message: BridgeRequest) -> Any:
        return await run_in_threadpool(_dispatch_sync, message)

    channel = BridgeChannel(_dispatch)
    send_lock = asyncio.Lock()
    tasks: set[asyncio.Task] = set()

    async def _handle(raw: str) -> None:
        try:
            response = await channel.handle(raw)
        except Exception:
            # 未预期异常不回复，沙箱侧按超时处理。
            logger.exception("bridge message handling failed tool_id=%s", tool_id)
            return
        if response is None:
            return
        async with send_lock:
            await websocket.send_json(response)

    try:
        while True:
            raw = await websocket.receive_text()
            task = asyncio.create_task(_handle(raw))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
    except WebSocketDisconnect:
        logger.info("bridge channel closed tool_id=%s user_id=%s pending=%s", tool_id, ctx.user_id, len(tasks))
        for task in tasks:
            task.cancel()
