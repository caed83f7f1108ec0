from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from falcon_api.models.data_source import DataSource
from falcon_api.models.enums import DataSourceType, DenyReason
from falcon_api.models.permission import DataSourcePermission
from falcon_api.schemas.bridge import BridgeRequest
from falcon_api.services.authorization import Allow, Deny, authorize


@pytest.fixture
def db_session() -> Session:
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    DataSource.__table__.create(engine)
    DataSourcePermission.__table__.create(engine)
    local_session = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)
    db = local_session()
    try:
        _seed(db)
        yield db
    finally:
        db.close()


def _seed(db: Session) -> None:
    postgres = DataSource(
        name="demo_postgres",
        display_name="Demo PostgreSQL",
        type=DataSourceType.POSTGRES,
        config={},
        allowed_endpoints=[],
        global_blocked_columns=[],
        is_active=True,
    )
    api = DataSource(
        name="demo_api",
        display_name="Demo REST API",
        type=DataSourceType.REST_API,
        config={"baseUrl": "https://api.example.com"},
        allowed_endpoints=["users", "posts", "comments"],
        global_blocked_columns=[],
        is_active=True,
    )
    sheets = DataSource(
        name="team_sheet",
        display_name="Team Sheet",
        type=DataSourceType.GOOGLE_SHEETS,
        config={},
        allowed_endpoints=[],
        global_blocked_columns=[],
        is_active=True,
    )
    db.add_all([postgres, api, sheets])
    db.flush()
    db.add_all(
        [
            DataSourcePermission(
                data_source_id=postgres.id,
                department="default",
                read_tables=["users", "orders", "products"],
                read_blocked_columns=["password", "credit_card"],
                write_tables=[],
                write_blocked_columns=[],
                delete_tables=[],
            ),
            DataSourcePermission(
                data_source_id=postgres.id,
                department="engineering",
                read_tables=["users", "orders", "products", "logs"],
                read_blocked_columns=["password"],
                write_tables=["logs"],
                write_blocked_columns=["level"],
                delete_tables=["logs"],
            ),
            DataSourcePermission(
                data_source_id=api.id,
                department="default",
                read_tables=["users", "posts", "comments"],
                read_blocked_columns=[],
                write_tables=["posts", "comments"],
                write_blocked_columns=[],
                delete_tables=[],
            ),
            DataSourcePermission(
                data_source_id=sheets.id,
                department="default",
                read_tables=["roster"],
                read_blocked_columns=[],
                write_tables=[],
                write_blocked_columns=[],
                delete_tables=[],
            ),
        ]
    )
    db.commit()


def _tool(*sources: str):
    return SimpleNamespace(allowed_sources=list(sources))


def _request(**fields) -> BridgeRequest:
    return BridgeRequest.model_validate(fields)


def test_read_strips_blocked_columns_from_projection(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department="engineering",
        request=_request(operation="read", dataSource="demo_postgres", table="users", columns=["id", "password"]),
    )

    assert isinstance(decision, Allow)
    assert decision.allowed is True
    assert decision.columns == ["id"]
    assert decision.blocked_columns == ("password",)
    assert decision.tables == ("users",)


def test_read_of_unlisted_table_is_denied(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department="engineering",
        request=_request(operation="read", dataSource="demo_postgres", table="secrets"),
    )

    assert isinstance(decision, Deny)
    assert decision.reason == DenyReason.TABLE_NOT_PERMITTED
    assert decision.message == "access denied: table not permitted"


def test_tool_scope_is_a_hard_ceiling(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_api"),
        department="engineering",
        request=_request(operation="read", dataSource="demo_postgres", table="users"),
    )

    assert isinstance(decision, Deny)
    assert decision.reason == DenyReason.UNSCOPED


def test_user_without_department_uses_default_write_rule(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_api"),
        department=None,
        request=_request(operation="write", dataSource="demo_api", table="comments", payload={"body": "hi"}),
    )

    assert isinstance(decision, Allow)
    assert decision.tables == ("comments",)


def test_deactivated_source_is_not_permitted(db_session: Session):
    source = db_session.query(DataSource).filter_by(name="demo_postgres").one()
    source.is_active = False
    db_session.commit()

    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department="engineering",
        request=_request(operation="read", dataSource="demo_postgres", table="users"),
    )

    assert isinstance(decision, Deny)
    assert decision.reason == DenyReason.SOURCE_NOT_PERMITTED


def test_department_without_rule_and_unknown_source_are_not_permitted(db_session: Session):
    default_rule = (
        db_session.query(DataSourcePermission)
        .join(DataSource, DataSource.id == DataSourcePermission.data_source_id)
        .filter(DataSource.name == "demo_postgres", DataSourcePermission.department == "default")
        .one()
    )
    db_session.delete(default_rule)
    db_session.commit()

    for source_name in ("demo_postgres", "ghost_db"):
        decision = authorize(
            db_session,
            tool=_tool("demo_postgres", "ghost_db"),
            department="sales",
            request=_request(operation="read", dataSource=source_name, table="users"),
        )
        assert isinstance(decision, Deny)
        assert decision.reason == DenyReason.SOURCE_NOT_PERMITTED


def test_write_with_blocked_column_is_rejected_as_a_whole(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department="engineering",
        request=_request(
            operation="write",
            dataSource="demo_postgres",
            table="logs",
            payload=[{"message": "ok"}, {"message": "boom", "level": "error"}],
        ),
    )

    assert isinstance(decision, Deny)
    assert decision.reason == DenyReason.BLOCKED_COLUMN_PRESENT
    assert decision.detail == "level"


def test_write_and_delete_use_their_own_table_lists(db_session: Session):
    write_users = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department="engineering",
        request=_request(operation="write", dataSource="demo_postgres", table="users", payload={"name": "x"}),
    )
    delete_logs = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department="engineering",
        request=_request(operation="delete", dataSource="demo_postgres", table="logs", filters={"id": 1}),
    )
    delete_default = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department=None,
        request=_request(operation="delete", dataSource="demo_postgres", table="users", filters={"id": 1}),
    )

    assert isinstance(write_users, Deny) and write_users.reason == DenyReason.TABLE_NOT_PERMITTED
    assert isinstance(delete_logs, Allow)
    assert isinstance(delete_default, Deny) and delete_default.reason == DenyReason.TABLE_NOT_PERMITTED


def test_sql_read_checks_every_referenced_table(db_session: Session):
    allowed = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department=None,
        request=_request(
            operation="read",
            dataSource="demo_postgres",
            sql="SELECT u.id, o.total FROM users u JOIN orders o ON o.user_id = u.id WHERE o.total > $1",
            params=[10],
        ),
    )
    denied = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department=None,
        request=_request(operation="read", dataSource="demo_postgres", sql="SELECT id FROM users, logs"),
    )

    assert isinstance(allowed, Allow)
    assert allowed.tables == ("users", "orders")
    assert isinstance(denied, Deny)
    assert denied.reason == DenyReason.TABLE_NOT_PERMITTED
    assert denied.detail == "logs"


def test_sql_referencing_blocked_column_is_denied(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department=None,
        request=_request(
            operation="read",
            dataSource="demo_postgres",
            sql="SELECT id FROM users WHERE credit_card LIKE '4%'",
        ),
    )

    assert isinstance(decision, Deny)
    assert decision.reason == DenyReason.BLOCKED_COLUMN_PRESENT


def test_filter_on_blocked_column_is_denied(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department="engineering",
        request=_request(operation="read", dataSource="demo_postgres", table="users", filters={"password": "x"}),
    )

    assert isinstance(decision, Deny)
    assert decision.reason == DenyReason.BLOCKED_COLUMN_PRESENT


@pytest.mark.parametrize(
    "fields",
    [
        {"operation": "read", "dataSource": "demo_postgres", "sql": "DELETE FROM users"},
        {"operation": "read", "dataSource": "demo_postgres", "sql": "SELECT 1 FROM users; DROP TABLE users"},
        {"operation": "write", "dataSource": "demo_postgres", "sql": "SELECT * FROM users"},
        {"operation": "read", "dataSource": "demo_postgres", "endpoint": "users"},
        {"operation": "read", "dataSource": "demo_api", "sql": "SELECT * FROM users"},
        {"operation": "list-schema", "dataSource": "demo_api", "table": "users"},
        {"operation": "read", "dataSource": "demo_postgres"},
    ],
)
def test_operation_shape_must_fit_source_type(db_session: Session, fields):
    decision = authorize(
        db_session,
        tool=_tool("demo_postgres", "demo_api"),
        department="engineering",
        request=_request(**fields),
    )

    assert isinstance(decision, Deny)
    assert decision.reason == DenyReason.OPERATION_NOT_SUPPORTED


def test_rest_endpoint_is_checked_by_resource_name(db_session: Session):
    allowed = authorize(
        db_session,
        tool=_tool("demo_api"),
        department=None,
        request=_request(operation="read", dataSource="demo_api", endpoint="posts/1/comments"),
    )
    denied = authorize(
        db_session,
        tool=_tool("demo_api"),
        department=None,
        request=_request(operation="read", dataSource="demo_api", endpoint="admin/users"),
    )
    traversal = authorize(
        db_session,
        tool=_tool("demo_api"),
        department=None,
        request=_request(operation="read", dataSource="demo_api", endpoint="users/../admin"),
    )

    assert isinstance(allowed, Allow) and allowed.tables == ("posts",)
    assert isinstance(denied, Deny) and denied.reason == DenyReason.TABLE_NOT_PERMITTED
    assert isinstance(traversal, Deny) and traversal.reason == DenyReason.OPERATION_NOT_SUPPORTED


def test_list_schema_uses_read_tables(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department=None,
        request=_request(operation="list-schema", dataSource="demo_postgres", table="orders"),
    )

    assert isinstance(decision, Allow)
    assert decision.blocked_columns == ("password", "credit_card")


def test_list_sources_intersects_tool_scope(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_api", "team_sheet", "ghost_db"),
        department="engineering",
        request=_request(operation="list-sources"),
    )

    assert isinstance(decision, Allow)
    assert [item.name for item in decision.sources] == ["demo_api", "team_sheet"]


def test_table_names_are_compared_case_insensitively(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department=None,
        request=_request(operation="read", dataSource="demo_postgres", sql='SELECT id FROM "Users"'),
    )

    assert isinstance(decision, Allow)


@pytest.mark.parametrize(
    ("sql", "detail"),
    [
        ("SELECT row_to_json(u) AS r FROM users u", "row_to_json"),
        ("SELECT json_agg(t) FROM (SELECT * FROM users) t", "json_agg"),
        ("SELECT ROW(u.*) FROM users u", "row"),
        ("SELECT u FROM users u", "whole-row reference: u"),
        ("SELECT users FROM users", "whole-row reference: users"),
        ("SELECT (u.*)::text FROM users u", "whole-row reference: u"),
        ('SELECT U&"pass\\0077ord" FROM users', "unicode escaped identifier"),
    ],
)
def test_sql_exposing_whole_rows_is_denied_when_columns_are_blocked(db_session: Session, sql, detail):
    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department="engineering",
        request=_request(operation="read", dataSource="demo_postgres", sql=sql),
    )

    assert isinstance(decision, Deny)
    assert decision.reason == DenyReason.BLOCKED_COLUMN_PRESENT
    assert decision.detail == detail


def test_qualified_columns_and_star_items_stay_allowed(db_session: Session):
    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department="engineering",
        request=_request(
            operation="read",
            dataSource="demo_postgres",
            sql="SELECT u.*, o.total FROM users u JOIN orders o ON o.user_id = u.id",
        ),
    )

    assert isinstance(decision, Allow)
    assert decision.blocked_columns == ("password",)


def test_whole_row_sql_is_allowed_without_blocked_columns(db_session: Session):
    rule = (
        db_session.query(DataSourcePermission)
        .join(DataSource, DataSource.id == DataSourcePermission.data_source_id)
        .filter(DataSource.name == "demo_postgres", DataSourcePermission.department == "engineering")
        .one()
    )
    rule.read_blocked_columns = []
    db_session.commit()

    decision = authorize(
        db_session,
        tool=_tool("demo_postgres"),
        department="engineering",
        request=_request(operation="read", dataSource="demo_postgres", sql="SELECT row_to_json(u) FROM users u"),
    )

    assert isinstance(decision, Allow)


def test_endpoint_query_on_blocked_column_is_denied(db_session: Session):
    rule = (
        db_session.query(DataSourcePermission)
        .join(DataSource, DataSource.id == DataSourcePermission.data_source_id)
        .filter(DataSource.name == "demo_api", DataSourcePermission.department == "default")
        .one()
    )
    rule.read_blocked_columns = ["email"]
    db_session.commit()

    denied = authorize(
        db_session,
        tool=_tool("demo_api"),
        department=None,
        request=_request(operation="read", dataSource="demo_api", endpoint="users?Email=a@example.com"),
    )
    allowed = authorize(
        db_session,
        tool=_tool("demo_api"),
        department=None,
        request=_request(operation="read", dataSource="demo_api", endpoint="users/1?name=Leanne"),
    )

    assert isinstance(denied, Deny)
    assert denied.reason == DenyReason.BLOCKED_COLUMN_PRESENT
    assert denied.detail == "Email"
    assert isinstance(allowed, Allow)
