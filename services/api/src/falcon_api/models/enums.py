"""领域枚举定义。"""

from enum import StrEnum


class DataSourceType(StrEnum):
    """数据源类型（封闭集合）。"""

    POSTGRES = "POSTGRES"  # 关系型数据库。
    MYSQL = "MYSQL"  # 关系型数据库。
    REST_API = "REST_API"  # 通用 REST 接口。
    GOOGLE_SHEETS = "GOOGLE_SHEETS"
    GOOGLE_DRIVE = "GOOGLE_DRIVE"
    GOOGLE_CALENDAR = "GOOGLE_CALENDAR"
    SLACK = "SLACK"
    NOTION = "NOTION"
    ASANA = "ASANA"
    GA4 = "GA4"
    PLAUSIBLE = "PLAUSIBLE"
    META_ADS = "META_ADS"
    GITHUB = "GITHUB"


# 支持 SQL 语句与表结构查询的数据源类型。
SQL_SOURCE_TYPES = frozenset({DataSourceType.POSTGRES, DataSourceType.MYSQL})
# 按端点资源名寻址的数据源类型。
ENDPOINT_SOURCE_TYPES = frozenset({DataSourceType.REST_API})


class ToolVisibility(StrEnum):
    """工具可见范围。"""

    PRIVATE = "PRIVATE"  # 仅作者可用。
    DEPARTMENT = "DEPARTMENT"  # 作者所在部门可用。
    COMPANY = "COMPANY"  # 全公司可用。
    PUBLIC = "PUBLIC"  # 公开到工具市场。


class BridgeOperation(StrEnum):
    """桥接请求操作类型。"""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    LIST_SCHEMA = "list-schema"
    LIST_SOURCES = "list-sources"


class DenyReason(StrEnum):
    """授权拒绝原因，每次拒绝恰好归属其中一项。"""

    UNSCOPED = "unscoped"  # 工具未声明该数据源。
    SOURCE_NOT_PERMITTED = "source not permitted for department"  # 部门无权访问（含不存在/停用）。
    TABLE_NOT_PERMITTED = "table not permitted"  # 表不在对应操作白名单内。
    BLOCKED_COLUMN_PRESENT = "blocked column present"  # 写入载荷包含被屏蔽列。
    OPERATION_NOT_SUPPORTED = "operation not supported for source"  # 操作与数据源类型不匹配。
