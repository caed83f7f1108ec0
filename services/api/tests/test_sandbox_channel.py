import asyncio
import json

import pytest

from falcon_api.core.errors import BridgeAccessDenied, BridgeExecutionError, InfrastructureError
from falcon_api.models.enums import BridgeOperation, DataSourceType
from falcon_api.services.authorization import Allow
from falcon_api.services.channel import (
    BridgeCallError,
    BridgeChannel,
    BridgeClient,
    BridgeTimeoutError,
    parse_bridge_request,
    sandbox_client_script,
)
from falcon_api.services.executors import SqlExecutor
from falcon_api.services.permissions import DataSourceInfo


def _message(request_id: str = "bridge_1", **fields) -> dict:
    message = {"kind": "bridge-request", "id": request_id, "operation": "read", "dataSource": "demo_postgres"}
    message.update(fields)
    return message


def test_parse_accepts_dict_and_json_text():
    parsed = parse_bridge_request(_message(table="users", columns=["id"]))
    from_text = parse_bridge_request(json.dumps(_message(table="users")))

    assert parsed is not None
    assert parsed.id == "bridge_1"
    assert parsed.operation == BridgeOperation.READ
    assert parsed.data_source == "demo_postgres"
    assert parsed.columns == ["id"]
    assert from_text is not None and from_text.table == "users"


def test_list_sources_does_not_need_a_data_source():
    parsed = parse_bridge_request({"kind": "bridge-request", "id": "x", "operation": "list-sources"})

    assert parsed is not None
    assert parsed.data_source is None


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        ["bridge-request"],
        {"id": "a", "operation": "read", "dataSource": "demo_postgres"},
        {"kind": "api-bridge", "id": "a", "operation": "read", "dataSource": "demo_postgres"},
        {"kind": "bridge-request", "operation": "read", "dataSource": "demo_postgres"},
        {"kind": "bridge-request", "id": "", "operation": "read", "dataSource": "demo_postgres"},
        {"kind": "bridge-request", "id": "a", "operation": "query", "dataSource": "demo_postgres"},
        {"kind": "bridge-request", "id": "a", "operation": "read"},
        {"kind": "bridge-request", "id": "a", "operation": "read", "dataSource": "x", "limit": 0},
    ],
)
def test_malformed_messages_are_dropped(raw):
    assert parse_bridge_request(raw) is None


def test_channel_replies_with_result_exactly_once_per_id():
    calls = []

    async def dispatcher(request):
        calls.append(request.id)
        return [{"id": 1}]

    async def scenario():
        channel = BridgeChannel(dispatcher)
        first = await channel.handle(_message("bridge_a", table="users"))
        duplicate = await channel.handle(_message("bridge_a", table="users"))
        return first, duplicate

    first, duplicate = asyncio.run(scenario())

    assert first == {"kind": "bridge-response", "id": "bridge_a", "result": [{"id": 1}]}
    assert duplicate is None
    assert calls == ["bridge_a"]


def test_channel_ignores_malformed_input_without_reply():
    async def dispatcher(request):
        raise AssertionError("dispatcher must not be called")

    response = asyncio.run(BridgeChannel(dispatcher).handle({"kind": "bridge-request", "id": "a"}))

    assert response is None


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (BridgeAccessDenied("unscoped"), "access denied: unscoped"),
        (BridgeAccessDenied("table not permitted"), "access denied: table not permitted"),
        (BridgeExecutionError("query failed: relation does not exist"), "query failed: relation does not exist"),
        (InfrastructureError("permission store unavailable"), "infrastructure error: permission store unavailable"),
    ],
)
def test_channel_turns_failures_into_error_responses(error, expected):
    async def dispatcher(request):
        raise error

    response = asyncio.run(BridgeChannel(dispatcher).handle(_message("bridge_err")))

    assert response == {"kind": "bridge-response", "id": "bridge_err", "error": expected}
    assert "result" not in response


def test_channel_handles_concurrent_requests_independently():
    async def dispatcher(request):
        # 先到的请求后完成，验证响应按 ID 对应而不是按顺序。
        await asyncio.sleep(0.02 if request.table == "users" else 0)
        return request.table

    async def scenario():
        channel = BridgeChannel(dispatcher)
        return await asyncio.gather(
            channel.handle(_message("slow", table="users")),
            channel.handle(_message("fast", table="orders")),
        )

    slow, fast = asyncio.run(scenario())

    assert slow == {"kind": "bridge-response", "id": "slow", "result": "users"}
    assert fast == {"kind": "bridge-response", "id": "fast", "result": "orders"}


def _loopback(dispatcher, *, timeout: float = 1.0) -> BridgeClient:
    channel = BridgeChannel(dispatcher)
    client: BridgeClient

    async def send(message):
        response = await channel.handle(message)
        if response is not None:
            client.feed(response)

    client = BridgeClient(send, timeout=timeout)
    return client


def test_client_resolves_results_and_rejects_errors():
    async def dispatcher(request):
        if request.table == "secrets":
            raise BridgeAccessDenied("table not permitted")
        return {"table": request.table}

    async def scenario():
        client = _loopback(dispatcher)
        ok = await client.call("read", dataSource="demo_postgres", table="users")
        with pytest.raises(BridgeCallError, match="access denied: table not permitted"):
            await client.call("read", dataSource="demo_postgres", table="secrets")
        return ok, client.pending_count

    ok, pending = asyncio.run(scenario())

    assert ok == {"table": "users"}
    assert pending == 0


def test_client_ignores_unknown_response_ids():
    async def scenario():
        async def send(message):
            assert client.feed({"kind": "bridge-response", "id": "someone-else", "result": 1}) is False
            assert client.feed({"kind": "bridge-response", "id": message["id"], "result": 2}) is True

        client = BridgeClient(send, timeout=1.0)
        return await client.call("list-sources")

    assert asyncio.run(scenario()) == 2


def test_client_times_out_and_forgets_pending_request():
    sent = []

    async def send(message):
        sent.append(message)

    async def scenario():
        client = BridgeClient(send, timeout=0.01)
        with pytest.raises(BridgeTimeoutError):
            await client.call("read", dataSource="demo_postgres", table="users")
        late = client.feed({"kind": "bridge-response", "id": sent[0]["id"], "result": []})
        return client.pending_count, late

    pending, late = asyncio.run(scenario())

    assert pending == 0
    assert late is False
    assert sent[0]["kind"] == "bridge-request"
    assert sent[0]["id"].startswith("bridge_")


def test_sandbox_client_script_speaks_the_wire_format():
    script = sandbox_client_script(timeout_seconds=15)

    assert "window.companyAPI" in script
    assert "'bridge-request'" in script
    assert "'bridge-response'" in script
    assert "var TIMEOUT_MS = 15000;" in script
    assert "getSources" in script


def test_channel_answers_misconfigured_source_with_error():
    executor = SqlExecutor(max_rows=10, timeout_seconds=5)
    source = DataSourceInfo(
        name="demo_postgres",
        display_name="Demo PostgreSQL",
        type=DataSourceType.POSTGRES,
        config={"host": "db.internal", "port": "abc"},
    )

    async def dispatcher(request):
        return executor.execute(source, request, Allow(tables=("users",))).data

    async def scenario():
        return await BridgeChannel(dispatcher).handle(_message("bridge_1", table="users"))

    response = asyncio.run(scenario())

    assert response["kind"] == "bridge-response"
    assert response["id"] == "bridge_1"
    assert response["error"].startswith("data source unavailable")
    assert "result" not in response


def test_channel_remembers_a_bounded_number_of_ids():
    calls = []

    async def dispatcher(request):
        calls.append(request.id)
        return None

    async def scenario():
        channel = BridgeChannel(dispatcher, max_tracked_ids=2)
        for request_id in ("bridge_a", "bridge_b", "bridge_c"):
            await channel.handle(_message(request_id, table="users"))
        duplicate = await channel.handle(_message("bridge_c", table="users"))
        return channel, duplicate

    channel, duplicate = asyncio.run(scenario())

    assert duplicate is None
    assert channel.tracked_count == 2
    assert calls == ["bridge_a", "bridge_b", "bridge_c"]
