"""认证令牌解析。

身份认证由外部身份提供方负责，本服务只校验 Bearer 令牌签名，
并从声明中读取用户标识、部门与平台角色，作为数据权限判断的输入。
"""
from dataclasses import dataclass
from functools import lru_cache
import re
from typing import Any

import jwt
from fastapi import HTTPException, status
from jwt import InvalidTokenError, PyJWKClient

from falcon_api.core.config import get_settings

UNAUTHORIZED = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="unauthorized",
)

ADMIN_ROLE = "ADMIN"


@dataclass
class AuthenticatedPrincipal:
    """统一认证主体对象。"""

    # 外部身份主体标识（sub），即平台用户 ID。
    subject: str
    # 可选邮箱。
    email: str | None
    # 用户所属部门，未分配时为 None（权限解析回退到 default 规则）。
    department: str | None
    # 平台角色，ADMIN 可维护数据源与权限规则。
    role: str | None
    # 原始声明集，便于下游扩展。
    claims: dict[str, Any]

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


@lru_cache
def _get_jwks_client(jwks_url: str) -> PyJWKClient:
    """缓存密钥集合客户端，减少重复网络开销。"""
    return PyJWKClient(jwks_url)


def _decode_jwt(token: str) -> dict[str, Any]:
    """按配置解码并校验令牌。"""
    settings = get_settings()
    options = {"verify_signature": True, "verify_aud": bool(settings.auth_jwt_audience)}

    try:
        if settings.auth_jwks_url:
            key = _get_jwks_client(settings.auth_jwks_url).get_signing_key_from_jwt(token).key
        else:
            # 未配置 JWKS 时，回退到对称密钥校验（适合本地开发/测试）。
            key = settings.auth_jwt_secret
        return jwt.decode(
            token,
            key=key,
            algorithms=settings.auth_algorithms,
            issuer=settings.auth_jwt_issuer,
            audience=settings.auth_jwt_audience,
            leeway=settings.auth_jwt_leeway_seconds,
            options=options,
        )
    except InvalidTokenError as exc:
        raise UNAUTHORIZED from exc


def _extract_bearer_token(authorization: str | None) -> str:
    """从 Authorization 头中提取 Bearer token，兼容重复头被逗号拼接的场景。"""
    if not authorization:
        raise UNAUTHORIZED
    tokens = [item.strip() for item in re.findall(r"Bearer\s+([^,\s]+)", authorization, flags=re.IGNORECASE)]
    tokens = [item for item in tokens if item]
    if not tokens:
        raise UNAUTHORIZED
    return tokens[-1]


def normalize_department(value: Any) -> str | None:
    """规范化部门声明；空字符串与非字符串都视为未分配部门。"""
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def principal_from_token(token: str) -> AuthenticatedPrincipal:
    """校验令牌并构造认证主体。"""
    settings = get_settings()
    claims = _decode_jwt(token)

    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise UNAUTHORIZED

    email = claims.get("email")
    role = claims.get(settings.auth_role_claim)
    return AuthenticatedPrincipal(
        subject=subject,
        email=email if isinstance(email, str) else None,
        department=normalize_department(claims.get(settings.auth_department_claim)),
        role=role.strip().upper() if isinstance(role, str) and role.strip() else None,
        claims=claims,
    )


def parse_authorization_header(authorization: str | None) -> AuthenticatedPrincipal:
    """解析认证头并返回认证主体。"""
    return principal_from_token(_extract_bearer_token(authorization))
