"""统一响应结构工具。"""

from datetime import datetime, timezone
from time import perf_counter
from typing import Any
import uuid

from fastapi import Request

DEFAULT_ERROR_MESSAGE = "internal server error"

_SUCCESS_MESSAGE_BY_METHOD = {
    "GET": "查询成功。",
    "POST": "操作成功。",
    "PUT": "更新成功。",
    "PATCH": "更新成功。",
    "DELETE": "删除成功。",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def request_id_of(request: Request) -> str:
    """读取中间件注入的请求 ID；未经过中间件时（例如直接调用路由函数）现场生成。"""
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
    return request_id


def _elapsed_ms(request: Request) -> int | None:
    started_at = getattr(request.state, "request_started_at", None)
    if isinstance(started_at, float):
        return int((perf_counter() - started_at) * 1000)
    return None


def success(request: Request, data: Any, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    """构造统一成功响应结构。"""
    method = request.method.upper()
    final_meta: dict[str, Any] = {
        "message": _SUCCESS_MESSAGE_BY_METHOD.get(method, "操作成功。"),
        "method": method,
        "path": request.url.path,
        "timestamp": _utc_now_iso(),
        "process_ms": _elapsed_ms(request),
    }
    if meta:
        final_meta.update(meta)
    return {"request_id": request_id_of(request), "data": data, "meta": final_meta}


def error_payload(
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """构造统一错误响应结构。"""
    final_details: dict[str, Any] = {
        "method": request.method.upper(),
        "path": request.url.path,
        "timestamp": _utc_now_iso(),
    }
    if details:
        final_details.update(details)
    return {
        "request_id": request_id_of(request),
        "error": {"code": code, "message": message, "details": final_details},
    }
