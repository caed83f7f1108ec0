"""桥接调用编排：授权 -> 执行 -> 审计。"""

import logging
import time
from typing import Any

from sqlalchemy.orm import Session

from falcon_api.core.errors import BridgeAccessDenied, BridgeExecutionError
from falcon_api.models.enums import BridgeOperation
from falcon_api.models.tool import Tool
from falcon_api.schemas.bridge import BridgeRequest
from falcon_api.services.audit import record_bridge_call
from falcon_api.services.authorization import Allow, Deny, authorize
from falcon_api.services.executors import ExecutorRegistry
from falcon_api.services.permission_cache import PermissionCache
from falcon_api.services.permissions import SourceAccess

logger = logging.getLogger("falcon_api.bridge")


def source_listing(access: SourceAccess) -> dict[str, Any]:
    """沙箱 `getSources()` 返回的数据源条目，不包含连接配置。"""
    source = access.data_source
    return {
        "name": source.name,
        "displayName": source.display_name,
        "type": source.type.value,
        "description": source.description,
        "allowedTables": list(access.read_tables),
        "capabilities": {
            "canRead": access.can_read,
            "canWrite": access.can_write,
            "canDelete": access.can_delete,
            "writeTables": list(access.write_tables),
            "deleteTables": list(access.delete_tables),
        },
    }


class BridgeService:
    """以“某用户运行某工具”的身份处理桥接请求。

    每次调用都重新授权，不复用前一次的结论；
    拒绝与执行失败都会写审计日志后再抛出。
    """

    def __init__(
        self,
        db: Session,
        *,
        tool: Tool,
        user_id: str,
        department: str | None,
        executors: ExecutorRegistry,
        cache: PermissionCache | None = None,
    ):
        self.db = db
        self.tool = tool
        self.user_id = user_id
        self.department = department
        self.executors = executors
        self.cache = cache

    def _audit(self, request: BridgeRequest, started: float, **fields: Any) -> None:
        record_bridge_call(
            self.db,
            tool_id=self.tool.id,
            user_id=self.user_id,
            department=self.department,
            request=request,
            duration_ms=int((time.perf_counter() - started) * 1000),
            **fields,
        )
        self.db.commit()

    def dispatch(self, request: BridgeRequest) -> Any:
        """处理一次桥接请求，返回可直接序列化给沙箱的结果。"""
        started = time.perf_counter()
        decision = authorize(
            self.db,
            tool=self.tool,
            department=self.department,
            request=request,
            cache=self.cache,
        )

        if isinstance(decision, Deny):
            self._audit(
                request,
                started,
                success=False,
                deny_reason=decision.reason.value,
                error_message=decision.message,
            )
            raise BridgeAccessDenied(decision.reason.value)

        if request.operation == BridgeOperation.LIST_SOURCES:
            return [source_listing(item) for item in decision.sources]

        return self._execute(request, decision, started)

    def _execute(self, request: BridgeRequest, allow: Allow, started: float) -> Any:
        assert allow.access is not None
        source = allow.access.data_source
        try:
            executor = self.executors.for_type(source.type)
            result = executor.execute(source, request, allow)
        except BridgeExecutionError as exc:
            self._audit(request, started, success=False, error_message=str(exc))
            raise

        self._audit(request, started, success=True, row_count=result.row_count)
        logger.info(
            "bridge call ok tool_id=%s source=%s operation=%s rows=%s",
            self.tool.id,
            source.name,
            request.operation,
            result.row_count,
        )
        return result.data
