"""服务层能力导出集合。"""

from falcon_api.services.audit import record_bridge_call
from falcon_api.services.authorization import Allow, Deny, authorize
from falcon_api.services.bridge import BridgeService, source_listing
from falcon_api.services.channel import (
    BridgeCallError,
    BridgeChannel,
    BridgeClient,
    BridgeTimeoutError,
    parse_bridge_request,
    sandbox_client_script,
)
from falcon_api.services.executors import ExecutionResult, ExecutorRegistry, RestExecutor, SqlExecutor
from falcon_api.services.permission_cache import PermissionCache
from falcon_api.services.permissions import (
    DataSourceInfo,
    SourceAccess,
    effective_department,
    resolve_accessible_sources,
    resolve_source_access,
)
from falcon_api.services.seed import seed_demo_data
from falcon_api.services.tools import can_use_tool, get_usable_tool, update_tool_sources

__all__ = [
    "Allow",
    "Deny",
    "authorize",
    "record_bridge_call",
    "BridgeService",
    "source_listing",
    "BridgeCallError",
    "BridgeChannel",
    "BridgeClient",
    "BridgeTimeoutError",
    "parse_bridge_request",
    "sandbox_client_script",
    "ExecutionResult",
    "ExecutorRegistry",
    "RestExecutor",
    "SqlExecutor",
    "PermissionCache",
    "DataSourceInfo",
    "SourceAccess",
    "effective_department",
    "resolve_accessible_sources",
    "resolve_source_access",
    "seed_demo_data",
    "can_use_tool",
    "get_usable_tool",
    "update_tool_sources",
]
