"""授权通过后的数据源执行器。

执行器只负责“怎么访问”，“能不能访问”已由授权器决定；
但结果中的屏蔽列仍在此处做最后一次剔除，避免 `SELECT *` 之类的写法把屏蔽列带回沙箱。
"""

import base64
from collections.abc import Callable, Iterable
from dataclasses import dataclass
import logging
import re
from threading import Lock
from typing import Any, Protocol

from fastapi.encoders import jsonable_encoder
import httpx
from sqlalchemy import URL, Engine, column, create_engine, delete, inspect, insert, literal_column, select, table, text
from sqlalchemy.exc import SQLAlchemyError

from falcon_api.core.config import Settings
from falcon_api.core.errors import BridgeExecutionError
from falcon_api.models.enums import BridgeOperation, DataSourceType
from falcon_api.schemas.bridge import BridgeRequest
from falcon_api.services.authorization import Allow
from falcon_api.services.permissions import DataSourceInfo

logger = logging.getLogger("falcon_api.executors")

_POSITIONAL_PARAM = re.compile(r"\$(\d+)")
_DRIVERS = {
    DataSourceType.POSTGRES: "postgresql+psycopg",
    DataSourceType.MYSQL: "mysql+pymysql",
}


@dataclass(frozen=True)
class ExecutionResult:
    """执行结果，`data` 原样返回给沙箱调用方。"""

    data: Any
    row_count: int | None = None


class Executor(Protocol):
    def execute(self, source: DataSourceInfo, request: BridgeRequest, allow: Allow) -> ExecutionResult: ...


def strip_blocked(record: Any, blocked: Iterable[str], columns: list[str] | None = None) -> Any:
    """从单条记录中剔除屏蔽列，并按需应用列投影。非字典记录原样返回。"""
    if not isinstance(record, dict):
        return record
    blocked_keys = {name.casefold() for name in blocked}
    projection = {name.casefold() for name in columns} if columns is not None else None
    return {
        key: value
        for key, value in record.items()
        if key.casefold() not in blocked_keys and (projection is None or key.casefold() in projection)
    }


def _encode_binary(value: bytes | bytearray | memoryview) -> str:
    return base64.b64encode(bytes(value)).decode("ascii")


_BINARY_ENCODERS = {bytes: _encode_binary, bytearray: _encode_binary, memoryview: _encode_binary}


def encode_rows(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """把结果行转换为 JSON 兼容值，二进制列以 base64 字符串返回。"""
    return jsonable_encoder(rows, custom_encoder=_BINARY_ENCODERS)


def _split_table(name: str) -> tuple[str | None, str]:
    schema, _, table_name = name.rpartition(".")
    return schema or None, table_name


class SqlExecutor:
    """关系型数据源执行器（PostgreSQL / MySQL）。

    引擎按数据源缓存复用；读取不提交事务，并按方言设置语句超时。
    """

    def __init__(
        self,
        *,
        max_rows: int,
        timeout_seconds: int,
        engine_factory: Callable[[DataSourceInfo], Engine] | None = None,
    ):
        self.max_rows = max_rows
        self.timeout_seconds = timeout_seconds
        self._engine_factory = engine_factory or self._create_engine
        self._engines: dict[str, Engine] = {}
        self._lock = Lock()

    @staticmethod
    def _create_engine(source: DataSourceInfo) -> Engine:
        config = source.config
        url = config.get("url")
        if not url:
            drivername = _DRIVERS.get(source.type)
            if drivername is None:
                raise BridgeExecutionError(f"unsupported database type: {source.type}")
            url = URL.create(
                drivername,
                username=config.get("user"),
                password=config.get("password"),
                host=config.get("host"),
                port=int(config["port"]) if config.get("port") else None,
                database=config.get("database"),
            )
        return create_engine(url, pool_pre_ping=True)

    def engine_for(self, source: DataSourceInfo) -> Engine:
        with self._lock:
            engine = self._engines.get(source.name)
            if engine is None:
                engine = self._engine_factory(source)
                self._engines[source.name] = engine
            return engine

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()

    def _row_limit(self, request: BridgeRequest) -> int:
        return min(request.limit or self.max_rows, self.max_rows)

    def _apply_timeout(self, conn: Any) -> None:
        milliseconds = int(self.timeout_seconds * 1000)
        if milliseconds <= 0:
            return
        dialect = conn.dialect.name
        if dialect == "postgresql":
            conn.exec_driver_sql(f"SET LOCAL statement_timeout = {milliseconds}")
        elif dialect == "mysql":
            conn.exec_driver_sql(f"SET SESSION MAX_EXECUTION_TIME = {milliseconds}")

    def execute(self, source: DataSourceInfo, request: BridgeRequest, allow: Allow) -> ExecutionResult:
        try:
            engine = self.engine_for(source)
            if request.operation == BridgeOperation.LIST_SCHEMA:
                return self._list_schema(engine, request, allow)
            if request.operation == BridgeOperation.WRITE:
                return self._write(engine, request)
            if request.operation == BridgeOperation.DELETE:
                return self._delete(engine, request)
            if request.sql is not None:
                return self._read_sql(engine, request, allow)
            return self._read_table(engine, request, allow)
        except SQLAlchemyError as exc:
            detail = getattr(exc, "orig", None) or exc
            logger.warning("sql execution failed source=%s error=%s", source.name, detail)
            raise BridgeExecutionError(f"query failed: {detail}") from exc
        except (ValueError, ImportError) as exc:
            # 连接配置错误或驱动缺失。
            logger.warning("sql source unavailable source=%s error=%s", source.name, exc)
            raise BridgeExecutionError(f"data source unavailable: {exc}") from exc

    def _read_table(self, engine: Engine, request: BridgeRequest, allow: Allow) -> ExecutionResult:
        if allow.columns is not None and not allow.columns:
            # 投影列全部被屏蔽。
            return ExecutionResult(data=[], row_count=0)

        schema, name = _split_table(request.table or "")
        target = table(name, schema=schema)
        projection = [column(item) for item in allow.columns] if allow.columns else [literal_column("*")]
        stmt = select(*projection).select_from(target)
        for key, value in (request.filters or {}).items():
            stmt = stmt.where(column(key) == value)
        stmt = stmt.limit(self._row_limit(request))

        with engine.connect() as conn:
            self._apply_timeout(conn)
            rows = [dict(row._mapping) for row in conn.execute(stmt)]
        data = encode_rows([strip_blocked(row, allow.blocked_columns) for row in rows])
        return ExecutionResult(data=data, row_count=len(data))

    def _read_sql(self, engine: Engine, request: BridgeRequest, allow: Allow) -> ExecutionResult:
        sql = request.sql or ""
        params: dict[str, Any]
        if isinstance(request.params, list):
            # `$1` 风格的位置参数转换为命名绑定，兼容各驱动的占位符差异。
            sql = _POSITIONAL_PARAM.sub(lambda m: f":p{m.group(1)}", sql)
            params = {f"p{index}": value for index, value in enumerate(request.params, start=1)}
        else:
            params = dict(request.params or {})

        with engine.connect() as conn:
            self._apply_timeout(conn)
            result = conn.execute(text(sql), params)
            rows = [dict(row._mapping) for row in result.fetchmany(self._row_limit(request))]
        data = encode_rows([strip_blocked(row, allow.blocked_columns) for row in rows])
        return ExecutionResult(data=data, row_count=len(data))

    def _write(self, engine: Engine, request: BridgeRequest) -> ExecutionResult:
        rows = request.payload if isinstance(request.payload, list) else [request.payload] if request.payload else []
        if not rows:
            raise BridgeExecutionError("write requires a non-empty payload")
        names = request.payload_columns()
        schema, name = _split_table(request.table or "")
        target = table(name, *[column(item) for item in names], schema=schema)
        with engine.begin() as conn:
            result = conn.execute(insert(target), rows if len(rows) > 1 else rows[0])
        return ExecutionResult(data={"affected": result.rowcount}, row_count=result.rowcount)

    def _delete(self, engine: Engine, request: BridgeRequest) -> ExecutionResult:
        if not request.filters:
            raise BridgeExecutionError("delete requires filters")
        schema, name = _split_table(request.table or "")
        stmt = delete(table(name, schema=schema))
        for key, value in request.filters.items():
            stmt = stmt.where(column(key) == value)
        with engine.begin() as conn:
            result = conn.execute(stmt)
        return ExecutionResult(data={"affected": result.rowcount}, row_count=result.rowcount)

    def _list_schema(self, engine: Engine, request: BridgeRequest, allow: Allow) -> ExecutionResult:
        schema, name = _split_table(request.table or "")
        blocked = {item.casefold() for item in allow.blocked_columns}
        columns = [
            {"name": item["name"], "type": str(item["type"]), "nullable": bool(item.get("nullable", True))}
            for item in inspect(engine).get_columns(name, schema=schema)
            if item["name"].casefold() not in blocked
        ]
        return ExecutionResult(data={"table": request.table, "columns": columns}, row_count=len(columns))


class RestExecutor:
    """通用 REST 数据源执行器。

    读 -> GET（过滤条件与 limit 作为查询参数）；
    写 -> POST，过滤条件带 id 时为 PUT `<resource>/<id>`；
    删 -> DELETE `<resource>/<id>`。
    """

    def __init__(self, *, timeout: float, transport: httpx.BaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    @staticmethod
    def endpoint_allowed(endpoint: str, allowed_endpoints: Iterable[str]) -> bool:
        allowed = list(allowed_endpoints)
        if not allowed:
            return True
        return any(endpoint == item or endpoint.startswith(item + "/") for item in allowed)

    def _client(self, source: DataSourceInfo) -> httpx.Client:
        base_url = str(source.config.get("baseUrl") or source.config.get("base_url") or "").rstrip("/")
        if not base_url:
            raise BridgeExecutionError(f"data source {source.name} has no baseUrl")
        headers = {"Content-Type": "application/json", **dict(source.config.get("headers") or {})}
        return httpx.Client(base_url=base_url, headers=headers, timeout=self.timeout, transport=self._transport)

    def execute(self, source: DataSourceInfo, request: BridgeRequest, allow: Allow) -> ExecutionResult:
        endpoint = (request.endpoint or request.table or "").strip().strip("/")
        if not self.endpoint_allowed(endpoint, source.allowed_endpoints):
            raise BridgeExecutionError(f"Endpoint not allowed: {endpoint}")

        filters = dict(request.filters or {})
        record_id = filters.pop("id", None)
        try:
            with self._client(source) as client:
                if request.operation == BridgeOperation.READ:
                    query = {key: str(value) for key, value in (request.filters or {}).items()}
                    if request.limit:
                        query["limit"] = str(request.limit)
                    response = client.get(f"/{endpoint}", params=query)
                elif request.operation == BridgeOperation.WRITE:
                    if record_id is not None:
                        response = client.put(f"/{endpoint}/{record_id}", json=request.payload)
                    else:
                        response = client.post(f"/{endpoint}", json=request.payload)
                elif request.operation == BridgeOperation.DELETE:
                    path = f"/{endpoint}/{record_id}" if record_id is not None else f"/{endpoint}"
                    response = client.delete(path)
                else:
                    raise BridgeExecutionError(f"operation {request.operation} is not supported for REST sources")
        except httpx.HTTPError as exc:
            logger.warning("rest call failed source=%s endpoint=%s error=%s", source.name, endpoint, exc)
            raise BridgeExecutionError(str(exc)) from exc

        if response.is_error:
            raise BridgeExecutionError(f"API call failed: {response.status_code} {response.text}")

        if request.operation == BridgeOperation.DELETE:
            return ExecutionResult(data={"deleted": True}, row_count=1)

        try:
            payload = response.json() if response.content else None
        except ValueError as exc:
            raise BridgeExecutionError("API call returned a non-JSON body") from exc

        if request.operation == BridgeOperation.READ:
            if isinstance(payload, list):
                data = [strip_blocked(item, allow.blocked_columns, allow.columns) for item in payload]
                return ExecutionResult(data=data, row_count=len(data))
            return ExecutionResult(data=strip_blocked(payload, allow.blocked_columns, allow.columns), row_count=1)
        return ExecutionResult(data=payload, row_count=1)


class ExecutorRegistry:
    """按数据源类型查找执行器。"""

    def __init__(self) -> None:
        self._by_type: dict[DataSourceType, Executor] = {}

    def register(self, source_type: DataSourceType, executor: Executor, *, replace: bool = False) -> None:
        if source_type in self._by_type and not replace:
            raise ValueError(f"Executor for '{source_type}' already registered")
        self._by_type[source_type] = executor

    def for_type(self, source_type: DataSourceType) -> Executor:
        executor = self._by_type.get(source_type)
        if executor is None:
            # 第三方集成数据源可以登记和授权，但本服务不提供其执行器。
            raise BridgeExecutionError(f"no executor available for {source_type} sources")
        return executor


def build_default_registry(settings: Settings) -> ExecutorRegistry:
    """按配置构造默认执行器注册表。"""
    registry = ExecutorRegistry()
    sql_executor = SqlExecutor(
        max_rows=settings.bridge_max_rows,
        timeout_seconds=settings.bridge_sql_timeout_seconds,
    )
    registry.register(DataSourceType.POSTGRES, sql_executor)
    registry.register(DataSourceType.MYSQL, sql_executor)
    registry.register(DataSourceType.REST_API, RestExecutor(timeout=settings.bridge_rest_timeout_seconds))
    return registry
