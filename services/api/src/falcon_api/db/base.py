"""数据库基础模型导出。

不执行自动建表，元数据库结构由迁移脚本维护；
导入 models 以便 `Base.metadata` 包含全部表定义。
"""

from falcon_api.models import ApiLog, DataSource, DataSourcePermission, Tool
from falcon_api.models.base import Base

__all__ = ["ApiLog", "Base", "DataSource", "DataSourcePermission", "Tool"]
