"""权限解析结果缓存。

进程级共享状态，按 (数据源名称, 生效部门) 缓存单数据源解析结果，
命中与未命中（无权限）都会缓存，并在有效期后自动回源。
规则或数据源变更时必须显式调用 `invalidate`。
"""

from collections.abc import Callable
from threading import Lock
import time
from typing import TypeVar

from falcon_api.models.permission import DEFAULT_DEPARTMENT

T = TypeVar("T")
CacheKey = tuple[str, str]


class PermissionCache:
    """带有效期的直通缓存。

    每个键带一个代次，`invalidate` 会推进代次；
    回源期间代次发生变化时，回源结果只返回给本次调用，不写入缓存。
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, tuple[float, object]] = {}
        self._generations: dict[CacheKey, int] = {}
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get_or_load(self, key: CacheKey, loader: Callable[[], T]) -> T:
        """命中未过期条目直接返回，否则调用 loader 回源并写入缓存。"""
        if not self.enabled:
            return loader()

        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] > now:
                return entry[1]  # type: ignore[return-value]
            generation = self._generations.setdefault(key, 0)

        # 回源在锁外执行，避免慢查询阻塞其它请求的缓存命中。
        value = loader()
        with self._lock:
            if self._generations.get(key) == generation:
                self._entries[key] = (now + self.ttl_seconds, value)
        return value

    def invalidate(self, data_source_name: str | None = None, department: str | None = None) -> int:
        """失效匹配的缓存条目，返回被移除的条目数。

        default 规则是所有无专属规则部门的兜底，因此按 default 失效时
        会移除该数据源下全部部门的条目。
        """
        if department == DEFAULT_DEPARTMENT:
            department = None
        removed = 0
        with self._lock:
            for key in self._generations:
                if (data_source_name is None or key[0] == data_source_name) and (
                    department is None or key[1] == department
                ):
                    self._generations[key] += 1
                    if self._entries.pop(key, None) is not None:
                        removed += 1
        return removed

    def clear(self) -> None:
        with self._lock:
            for key in self._generations:
                self._generations[key] += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
