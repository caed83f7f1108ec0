"""沙箱消息通道。

沙箱中的工具代码与受信侧之间唯一的通信方式是异步消息：
沙箱发出带关联 ID 的 `bridge-request`，受信侧对每个 ID 至多回一条 `bridge-response`。
通道层只负责消息校验、去重与错误转换，所有数据能力都委托给同一个分发函数。
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
import json
import logging
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from falcon_api.core.errors import BridgeAccessDenied, BridgeExecutionError, FalconError, InfrastructureError
from falcon_api.schemas.bridge import REQUEST_KIND, BridgeRequest, BridgeRequestMessage, BridgeResponseMessage

logger = logging.getLogger("falcon_api.channel")

Dispatcher = Callable[[BridgeRequest], Awaitable[Any]]


class BridgeTimeoutError(Exception):
    """调用方在超时前未收到响应。"""


class BridgeCallError(Exception):
    """受信侧返回了 error 响应。"""


def parse_bridge_request(raw: Any) -> BridgeRequestMessage | None:
    """校验沙箱消息，结构不合法时返回 None（静默丢弃，不回复）。"""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.debug("drop non-json bridge message")
            return None
    if not isinstance(raw, dict) or raw.get("kind") != REQUEST_KIND:
        logger.debug("drop message without bridge-request kind")
        return None
    try:
        return BridgeRequestMessage.model_validate(raw)
    except ValidationError as exc:
        logger.debug("drop malformed bridge request errors=%s", exc.errors(include_url=False))
        return None


class BridgeChannel:
    """受信侧的消息处理器，每个沙箱会话一个实例。

    同一关联 ID 只处理第一条请求，重复消息直接丢弃。
    并发的 `handle` 调用之间只共享已处理 ID 集合。
    集合只保留最近 `max_tracked_ids` 个 ID，远大于实际在途请求数。
    """

    def __init__(self, dispatcher: Dispatcher, *, max_tracked_ids: int = 10_000):
        self._dispatcher = dispatcher
        self._max_tracked_ids = max_tracked_ids
        self._handled_ids: set[str] = set()
        self._handled_order: deque[str] = deque()

    @property
    def tracked_count(self) -> int:
        return len(self._handled_ids)

    def _remember(self, request_id: str) -> None:
        self._handled_ids.add(request_id)
        self._handled_order.append(request_id)
        if len(self._handled_order) > self._max_tracked_ids:
            self._handled_ids.discard(self._handled_order.popleft())

    async def handle(self, raw: Any) -> dict[str, Any] | None:
        """处理一条原始消息，返回线上格式的响应；无需回复时返回 None。"""
        message = parse_bridge_request(raw)
        if message is None:
            return None
        if message.id in self._handled_ids:
            logger.debug("drop duplicate bridge request id=%s", message.id)
            return None
        self._remember(message.id)

        try:
            result = await self._dispatcher(message)
        except BridgeAccessDenied as exc:
            return BridgeResponseMessage.fail(message.id, str(exc)).to_wire()
        except BridgeExecutionError as exc:
            return BridgeResponseMessage.fail(message.id, str(exc) or "execution failed").to_wire()
        except InfrastructureError as exc:
            # 无法校验权限与“已拒绝”必须可区分。
            return BridgeResponseMessage.fail(message.id, f"infrastructure error: {exc}").to_wire()
        except FalconError as exc:
            return BridgeResponseMessage.fail(message.id, str(exc)).to_wire()
        return BridgeResponseMessage.ok(message.id, result).to_wire()


class BridgeClient:
    """沙箱侧调用方：为每个请求生成关联 ID 并等待对应响应。

    `send` 负责把消息交给传输层，收到的消息通过 `feed` 投递回来。
    不做重试，超时后请求被移出待决表。
    """

    def __init__(self, send: Callable[[dict[str, Any]], Awaitable[None]], *, timeout: float = 30.0):
        self._send = send
        self.timeout = timeout
        self._pending: dict[str, asyncio.Future[Any]] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @staticmethod
    def new_request_id() -> str:
        return f"bridge_{uuid4().hex}"

    async def call(self, operation: str, *, timeout: float | None = None, **fields: Any) -> Any:
        """发起一次桥接调用并等待结果；错误响应抛出 BridgeCallError。"""
        request_id = self.new_request_id()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"kind": REQUEST_KIND, "id": request_id, "operation": operation}
        message.update({key: value for key, value in fields.items() if value is not None})
        try:
            await self._send(message)
            return await asyncio.wait_for(future, timeout if timeout is not None else self.timeout)
        except asyncio.TimeoutError as exc:
            raise BridgeTimeoutError(f"bridge call timed out: {operation}") from exc
        finally:
            self._pending.pop(request_id, None)

    def feed(self, raw: Any) -> bool:
        """投递一条收到的消息，返回是否匹配到待决请求；未知 ID 直接忽略。"""
        try:
            message = BridgeResponseMessage.model_validate(raw)
        except ValidationError:
            logger.debug("ignore malformed bridge response")
            return False
        future = self._pending.get(message.id)
        if future is None or future.done():
            return False
        if "error" in message.model_fields_set and message.error is not None:
            future.set_exception(BridgeCallError(message.error))
        else:
            future.set_result(message.result)
        return True


_SANDBOX_CLIENT_TEMPLATE = """
// ===== Company API Bridge Client =====
window.companyAPI = (function () {
  var TIMEOUT_MS = __TIMEOUT_MS__;
  var pending = {};

  window.addEventListener('message', function (event) {
    var msg = event.data;
    if (!msg || msg.kind !== 'bridge-response' || !pending[msg.id]) return;
    var entry = pending[msg.id];
    delete pending[msg.id];
    clearTimeout(entry.timer);
    if (Object.prototype.hasOwnProperty.call(msg, 'error')) {
      entry.reject(new Error(msg.error));
    } else {
      entry.resolve(msg.result);
    }
  });

  function send(fields) {
    return new Promise(function (resolve, reject) {
      var id = 'bridge_' + Math.random().toString(36).slice(2, 11) + '_' + Date.now();
      var timer = setTimeout(function () {
        delete pending[id];
        reject(new Error('API call timeout (' + TIMEOUT_MS / 1000 + 's)'));
      }, TIMEOUT_MS);
      pending[id] = { resolve: resolve, reject: reject, timer: timer };
      var message = { kind: 'bridge-request', id: id };
      Object.keys(fields).forEach(function (key) {
        if (fields[key] !== undefined) message[key] = fields[key];
      });
      parent.postMessage(message, '*');
    });
  }

  return {
    request: send,
    query: function (source, sql, params) {
      return send({ operation: 'read', dataSource: source, sql: sql, params: params || [] });
    },
    read: function (source, table, options) {
      options = options || {};
      return send({
        operation: 'read', dataSource: source, table: table,
        columns: options.columns, filters: options.filters, limit: options.limit
      });
    },
    call: function (source, endpoint, data) {
      if (data) {
        return send({ operation: 'write', dataSource: source, endpoint: endpoint, payload: data });
      }
      return send({ operation: 'read', dataSource: source, endpoint: endpoint });
    },
    listSchema: function (source, table) {
      return send({ operation: 'list-schema', dataSource: source, table: table });
    },
    getSources: function () {
      return send({ operation: 'list-sources' });
    }
  };
})();
"""


def sandbox_client_script(timeout_seconds: float = 30.0) -> str:
    """返回注入沙箱页面的 `window.companyAPI` 客户端脚本。"""
    return _SANDBOX_CLIENT_TEMPLATE.replace("__TIMEOUT_MS__", str(int(timeout_seconds * 1000)))
