"""请求上下文依赖。

职责:
1. 解析并校验访问令牌。
2. 从声明中读取用户标识、部门与平台角色。
3. 生成后续路由统一使用的 RequestContext。
4. 提供进程级共享的权限缓存与执行器注册表。
"""

from dataclasses import dataclass
from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from falcon_api.core.config import get_settings
from falcon_api.core.security import AuthenticatedPrincipal, parse_authorization_header
from falcon_api.services.executors import ExecutorRegistry, build_default_registry
from falcon_api.services.permission_cache import PermissionCache

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class RequestContext:
    """请求上下文。

    数据权限一律按这里的 `department`（调用用户当前部门）判断，
    与工具作者的部门无关。
    """

    # 当前请求用户 ID（令牌 sub）。
    user_id: str
    # 当前用户部门，未分配为 None。
    department: str | None
    # 平台角色。
    role: str | None
    # 认证主体原始信息（来自 JWT）。
    principal: AuthenticatedPrincipal

    @classmethod
    def from_principal(cls, principal: AuthenticatedPrincipal) -> "RequestContext":
        return cls(
            user_id=principal.subject,
            department=principal.department,
            role=principal.role,
            principal=principal,
        )


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthenticatedPrincipal:
    """提取并解析当前请求认证主体。"""
    authorization = None
    if credentials is not None and credentials.credentials:
        authorization = f"{credentials.scheme} {credentials.credentials}"
    return parse_authorization_header(authorization)


def get_request_context(principal: AuthenticatedPrincipal = Depends(get_current_principal)) -> RequestContext:
    """构造请求上下文。"""
    return RequestContext.from_principal(principal)


def require_admin(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    """仅允许平台管理员访问。"""
    if not ctx.principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
    return ctx


@lru_cache
def get_permission_cache() -> PermissionCache:
    """进程级权限缓存。"""
    return PermissionCache(get_settings().permission_cache_ttl_seconds)


@lru_cache
def get_executor_registry() -> ExecutorRegistry:
    """进程级执行器注册表，数据库引擎在其中按数据源复用。"""
    return build_default_registry(get_settings())
