"""ORM 模型导出集合。"""

from falcon_api.models.audit import ApiLog
from falcon_api.models.data_source import DataSource
from falcon_api.models.permission import DataSourcePermission
from falcon_api.models.tool import Tool

__all__ = [
    "ApiLog",
    "DataSource",
    "DataSourcePermission",
    "Tool",
]
