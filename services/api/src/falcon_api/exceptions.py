"""应用异常处理注册。"""

import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from falcon_api.core.errors import BridgeAccessDenied, BridgeExecutionError, InfrastructureError, ToolNotFound
from falcon_api.utils.response import DEFAULT_ERROR_MESSAGE, error_payload

logger = logging.getLogger("falcon_api.errors")

_DEFAULT_CODES = {
    status.HTTP_400_BAD_REQUEST: "BAD_REQUEST",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_409_CONFLICT: "CONFLICT",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "VALIDATION_ERROR",
}

_DEFAULT_MESSAGES = {
    status.HTTP_400_BAD_REQUEST: "请求参数不合法。",
    status.HTTP_401_UNAUTHORIZED: "未登录或登录状态已失效。",
    status.HTTP_403_FORBIDDEN: "无权限访问该资源。",
    status.HTTP_404_NOT_FOUND: "请求资源不存在。",
    status.HTTP_409_CONFLICT: "请求与当前数据状态冲突。",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "请求参数校验失败。",
}

_DEFAULT_SUGGESTIONS = {
    status.HTTP_401_UNAUTHORIZED: "请重新登录并携带有效访问令牌。",
    status.HTTP_403_FORBIDDEN: "请确认当前账号的部门与平台角色是否正确。",
    status.HTTP_404_NOT_FOUND: "请确认资源名称或 ID 是否正确，或资源是否已被删除。",
    status.HTTP_409_CONFLICT: "请先解除引用关系后重试。",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "请根据错误字段提示修正请求参数后重试。",
}


def _default_http_suggestion(status_code: int) -> str:
    return _DEFAULT_SUGGESTIONS.get(status_code, "请稍后重试，若持续失败请联系管理员。")


def _normalize_raw_detail_message(raw: str, status_code: int) -> str:
    normalized = raw.strip().lower()
    if normalized == "forbidden":
        return _DEFAULT_MESSAGES[status.HTTP_403_FORBIDDEN]
    if normalized == "unauthorized":
        return _DEFAULT_MESSAGES[status.HTTP_401_UNAUTHORIZED]
    return raw


def _parse_http_detail(detail: object, status_code: int) -> tuple[str, str, dict[str, object]]:
    code = _DEFAULT_CODES.get(status_code, "HTTP_ERROR")
    message = _DEFAULT_MESSAGES.get(status_code, "请求处理失败。")
    details: dict[str, object] = {
        "status_code": status_code,
        "reason": code.lower(),
        "suggestion": _default_http_suggestion(status_code),
    }

    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = str(detail.get("message") or detail.get("detail") or message)
        raw_details = detail.get("details")
        if isinstance(raw_details, dict):
            details.update(raw_details)
        elif raw_details is not None:
            details["details"] = raw_details
        return code, message, details

    if isinstance(detail, str):
        return code, _normalize_raw_detail_message(detail, status_code), details

    if detail is not None:
        details["detail"] = detail
    return code, message, details


def _domain_error(request: Request, status_code: int, code: str, message: str, **extra: object) -> JSONResponse:
    details: dict[str, object] = {
        "status_code": status_code,
        "reason": code.lower(),
        "suggestion": _default_http_suggestion(status_code),
    }
    details.update(extra)
    return JSONResponse(
        status_code=status_code,
        content=error_payload(request, code=code, message=message, details=details),
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    """将协议异常统一包装为标准错误结构。"""
    code, message, details = _parse_http_detail(exc.detail, exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(request, code=code, message=message, details=details),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """统一处理请求参数校验错误。"""
    normalized_errors = [
        {
            "field": ".".join(str(item) for item in err.get("loc", []) if item != "body"),
            "message": err.get("msg"),
            "type": err.get("type"),
        }
        for err in exc.errors()
    ]
    return _domain_error(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "请求参数校验失败。",
        errors=normalized_errors,
    )


async def tool_not_found_handler(request: Request, exc: ToolNotFound):
    return _domain_error(request, status.HTTP_404_NOT_FOUND, "TOOL_NOT_FOUND", "工具不存在或当前用户不可见。")


async def bridge_access_denied_handler(request: Request, exc: BridgeAccessDenied):
    return _domain_error(request, status.HTTP_403_FORBIDDEN, "BRIDGE_ACCESS_DENIED", str(exc), deny_reason=exc.reason)


async def bridge_execution_error_handler(request: Request, exc: BridgeExecutionError):
    return _domain_error(request, status.HTTP_502_BAD_GATEWAY, "BRIDGE_EXECUTION_FAILED", str(exc))


async def infrastructure_error_handler(request: Request, exc: InfrastructureError):
    """无法完成权限校验，区别于“已校验且拒绝”。"""
    logger.error("infrastructure unavailable path=%s error=%s", request.url.path, exc)
    return _domain_error(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "INFRASTRUCTURE_UNAVAILABLE",
        "权限存储暂不可用，请稍后重试。",
    )


async def unexpected_exception_handler(request: Request, exc: Exception):
    """处理未捕获异常，避免内部细节泄露。"""
    logger.exception("unhandled error path=%s", request.url.path)
    return _domain_error(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR",
        DEFAULT_ERROR_MESSAGE,
        suggestion="请稍后重试，若持续失败请联系管理员并提供 request_id。",
    )


def register_exception_handlers(app: FastAPI) -> None:
    """集中注册异常处理器。"""
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)
    app.exception_handler(ToolNotFound)(tool_not_found_handler)
    app.exception_handler(BridgeAccessDenied)(bridge_access_denied_handler)
    app.exception_handler(BridgeExecutionError)(bridge_execution_error_handler)
    app.exception_handler(InfrastructureError)(infrastructure_error_handler)
    app.exception_handler(Exception)(unexpected_exception_handler)
