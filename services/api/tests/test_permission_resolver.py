import logging

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from falcon_api.core.errors import InfrastructureError
from falcon_api.models.data_source import DataSource
from falcon_api.models.enums import BridgeOperation, DataSourceType
from falcon_api.models.permission import DataSourcePermission
from falcon_api.services.permission_cache import PermissionCache
from falcon_api.services.permissions import (
    effective_department,
    resolve_accessible_sources,
    resolve_source_access,
)


@pytest.fixture
def db_session() -> Session:
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    DataSource.__table__.create(engine)
    DataSourcePermission.__table__.create(engine)
    local_session = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)
    db = local_session()
    try:
        yield db
    finally:
        db.close()


def _add_source(
    db: Session,
    name: str,
    *,
    source_type: DataSourceType = DataSourceType.POSTGRES,
    is_active: bool = True,
    global_blocked_columns: list[str] | None = None,
) -> DataSource:
    source = DataSource(
        name=name,
        display_name=name.replace("_", " ").title(),
        type=source_type,
        config={"url": "sqlite://"},
        allowed_endpoints=[],
        global_blocked_columns=global_blocked_columns or [],
        is_active=is_active,
    )
    db.add(source)
    db.flush()
    return source


def _add_rule(db: Session, source: DataSource, department: str, **lists) -> DataSourcePermission:
    rule = DataSourcePermission(
        data_source_id=source.id,
        department=department,
        read_tables=lists.get("read_tables", []),
        read_blocked_columns=lists.get("read_blocked_columns", []),
        write_tables=lists.get("write_tables", []),
        write_blocked_columns=lists.get("write_blocked_columns", []),
        delete_tables=lists.get("delete_tables", []),
    )
    db.add(rule)
    db.flush()
    return rule


def _seed_demo_postgres(db: Session) -> DataSource:
    source = _add_source(db, "demo_postgres")
    _add_rule(
        db,
        source,
        "default",
        read_tables=["users", "orders", "products"],
        read_blocked_columns=["password", "credit_card"],
    )
    _add_rule(
        db,
        source,
        "engineering",
        read_tables=["users", "orders", "products", "logs"],
        read_blocked_columns=["password"],
        write_tables=["logs"],
    )
    db.commit()
    return source


def test_effective_department_falls_back_to_default():
    assert effective_department(None) == "default"
    assert effective_department("   ") == "default"
    assert effective_department(" engineering ") == "engineering"


def test_department_rule_takes_precedence_over_default(db_session: Session):
    _seed_demo_postgres(db_session)

    access = resolve_source_access(db_session, "demo_postgres", "engineering")

    assert access is not None
    assert access.department == "engineering"
    assert "logs" in access.read_tables
    assert access.read_blocked_columns == ("password",)
    assert access.write_tables == ("logs",)
    assert access.tables_for(BridgeOperation.WRITE) == ("logs",)
    assert access.tables_for(BridgeOperation.LIST_SCHEMA) == access.read_tables


def test_missing_department_uses_default_rule(db_session: Session):
    _seed_demo_postgres(db_session)

    for department in (None, "marketing"):
        access = resolve_source_access(db_session, "demo_postgres", department)
        assert access is not None
        assert access.department == "default"
        assert access.read_tables == ("users", "orders", "products")
        assert access.read_blocked_columns == ("password", "credit_card")
        assert access.can_read is True
        assert access.can_write is False
        assert access.can_delete is False


def test_source_without_matching_rule_is_not_accessible(db_session: Session):
    source = _add_source(db_session, "finance_db")
    _add_rule(db_session, source, "finance", read_tables=["ledger"])
    db_session.commit()

    assert resolve_source_access(db_session, "finance_db", "engineering") is None
    assert resolve_source_access(db_session, "finance_db", None) is None
    assert resolve_source_access(db_session, "does_not_exist", "finance") is None
    assert [item.name for item in resolve_accessible_sources(db_session, "engineering")] == []


def test_inactive_source_is_excluded_even_with_rules(db_session: Session):
    source = _add_source(db_session, "legacy_db", is_active=False)
    _add_rule(db_session, source, "default", read_tables=["users"])
    _seed_demo_postgres(db_session)

    names = [item.name for item in resolve_accessible_sources(db_session, None)]

    assert names == ["demo_postgres"]
    assert resolve_source_access(db_session, "legacy_db", None) is None


def test_accessible_sources_are_sorted_and_deterministic(db_session: Session):
    for name in ("zeta_api", "alpha_db", "mid_db"):
        source = _add_source(db_session, name)
        _add_rule(db_session, source, "default", read_tables=["t"])
    db_session.commit()

    first = resolve_accessible_sources(db_session, "sales")
    second = resolve_accessible_sources(db_session, "sales")

    assert [item.name for item in first] == ["alpha_db", "mid_db", "zeta_api"]
    assert first == second


def test_global_blocked_columns_are_merged_into_read_blocklist(db_session: Session):
    source = _add_source(db_session, "hr_db", global_blocked_columns=["ssn", "password"])
    _add_rule(db_session, source, "default", read_tables=["employees"], read_blocked_columns=["password"])
    db_session.commit()

    access = resolve_source_access(db_session, "hr_db", None)

    assert access is not None
    assert access.read_blocked_columns == ("password", "ssn")


def test_malformed_department_rule_is_rejected_without_fallback(db_session: Session, caplog):
    source = _add_source(db_session, "demo_postgres")
    _add_rule(db_session, source, "default", read_tables=["users"])
    broken = _add_rule(db_session, source, "engineering")
    broken.read_tables = "users"
    db_session.commit()

    with caplog.at_level(logging.ERROR, logger="falcon_api.permissions"):
        access = resolve_source_access(db_session, "demo_postgres", "engineering")

    assert access is None
    assert "malformed permission rule" in caplog.text
    # 其它部门仍按 default 规则解析。
    assert resolve_source_access(db_session, "demo_postgres", "sales") is not None


def test_rule_entries_are_normalized(db_session: Session):
    source = _add_source(db_session, "demo_postgres")
    _add_rule(db_session, source, "default", read_tables=[" users ", "users", "orders"])
    db_session.commit()

    access = resolve_source_access(db_session, "demo_postgres", None)

    assert access is not None
    assert access.read_tables == ("users", "orders")


def test_store_failure_raises_infrastructure_error():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    db = sessionmaker(bind=engine, class_=Session)()
    try:
        with pytest.raises(InfrastructureError):
            resolve_accessible_sources(db, "engineering")
        with pytest.raises(InfrastructureError):
            resolve_source_access(db, "demo_postgres", "engineering")
    finally:
        db.close()


def test_cached_resolution_until_invalidated(db_session: Session):
    source = _seed_demo_postgres(db_session)
    cache = PermissionCache(ttl_seconds=60)

    first = resolve_source_access(db_session, "demo_postgres", "engineering", cache=cache)
    assert first is not None and first.write_tables == ("logs",)

    rule = db_session.query(DataSourcePermission).filter_by(data_source_id=source.id, department="engineering").one()
    rule.write_tables = ["logs", "orders"]
    db_session.commit()

    cached = resolve_source_access(db_session, "demo_postgres", "engineering", cache=cache)
    assert cached == first

    assert cache.invalidate("demo_postgres", "engineering") == 1
    refreshed = resolve_source_access(db_session, "demo_postgres", "engineering", cache=cache)
    assert refreshed is not None
    assert refreshed.write_tables == ("logs", "orders")
