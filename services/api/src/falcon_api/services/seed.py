"""演示数据初始化。"""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from falcon_api.models.data_source import DataSource
from falcon_api.models.enums import DataSourceType
from falcon_api.models.permission import DEFAULT_DEPARTMENT, DataSourcePermission

logger = logging.getLogger("falcon_api.seed")

DEMO_DATA_SOURCES: list[dict[str, Any]] = [
    {
        "name": "demo_postgres",
        "display_name": "Demo PostgreSQL",
        "description": "示范用 PostgreSQL 数据库",
        "type": DataSourceType.POSTGRES,
        "config": {
            "host": "localhost",
            "port": 5432,
            "database": "demo",
            "user": "demo_user",
            "password": "demo_pass",
        },
        "allowed_endpoints": [],
    },
    {
        "name": "demo_api",
        "display_name": "Demo REST API",
        "description": "示范用 REST API 端点",
        "type": DataSourceType.REST_API,
        "config": {"baseUrl": "https://jsonplaceholder.typicode.com", "headers": {}},
        "allowed_endpoints": ["users", "posts", "comments"],
    },
]

# (数据源, 部门) -> 规则
DEMO_RULES: dict[tuple[str, str], dict[str, list[str]]] = {
    ("demo_postgres", DEFAULT_DEPARTMENT): {
        "read_tables": ["users", "orders", "products"],
        "read_blocked_columns": ["password", "credit_card"],
    },
    ("demo_postgres", "engineering"): {
        "read_tables": ["users", "orders", "products", "logs"],
        "read_blocked_columns": ["password"],
        "write_tables": ["logs"],
    },
    ("demo_api", DEFAULT_DEPARTMENT): {
        "read_tables": ["users", "posts", "comments"],
        "write_tables": ["posts", "comments"],
    },
    ("demo_api", "engineering"): {
        "read_tables": ["users", "posts", "comments"],
        "write_tables": ["posts", "comments"],
        "delete_tables": ["comments"],
    },
}


def seed_demo_data(db: Session) -> dict[str, int]:
    """写入演示数据源与规则；已存在的记录保持不变，可重复执行。"""
    created = {"data_sources": 0, "permission_rules": 0}
    sources: dict[str, DataSource] = {}

    for definition in DEMO_DATA_SOURCES:
        source = db.execute(select(DataSource).where(DataSource.name == definition["name"])).scalar_one_or_none()
        if source is None:
            source = DataSource(**definition, global_blocked_columns=[], is_active=True)
            db.add(source)
            db.flush()
            created["data_sources"] += 1
        sources[source.name] = source

    for (source_name, department), lists in DEMO_RULES.items():
        source = sources[source_name]
        exists = db.execute(
            select(DataSourcePermission.id)
            .where(DataSourcePermission.data_source_id == source.id)
            .where(DataSourcePermission.department == department)
        ).first()
        if exists:
            continue
        db.add(DataSourcePermission(data_source_id=source.id, department=department, **lists))
        created["permission_rules"] += 1

    db.commit()
    logger.info("demo data seeded created=%s", created)
    return created
