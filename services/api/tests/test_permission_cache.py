from falcon_api.services.permission_cache import PermissionCache


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _counting_loader(value):
    calls = {"count": 0}

    def _load():
        calls["count"] += 1
        return value

    return _load, calls


def test_entries_are_served_until_ttl_expires():
    clock = _FakeClock()
    cache = PermissionCache(ttl_seconds=30, clock=clock)
    loader, calls = _counting_loader("access")

    assert cache.get_or_load(("demo_postgres", "engineering"), loader) == "access"
    clock.now += 29
    assert cache.get_or_load(("demo_postgres", "engineering"), loader) == "access"
    assert calls["count"] == 1

    clock.now += 2
    cache.get_or_load(("demo_postgres", "engineering"), loader)
    assert calls["count"] == 2


def test_negative_results_are_cached_too():
    cache = PermissionCache(ttl_seconds=30, clock=_FakeClock())
    loader, calls = _counting_loader(None)

    assert cache.get_or_load(("ghost", "default"), loader) is None
    assert cache.get_or_load(("ghost", "default"), loader) is None
    assert calls["count"] == 1


def test_zero_ttl_disables_caching():
    cache = PermissionCache(ttl_seconds=0)
    loader, calls = _counting_loader("access")

    cache.get_or_load(("demo_postgres", "default"), loader)
    cache.get_or_load(("demo_postgres", "default"), loader)

    assert cache.enabled is False
    assert calls["count"] == 2
    assert len(cache) == 0


def test_invalidate_by_source_and_department():
    cache = PermissionCache(ttl_seconds=30, clock=_FakeClock())
    for key in [
        ("demo_postgres", "engineering"),
        ("demo_postgres", "sales"),
        ("demo_postgres", "default"),
        ("demo_api", "engineering"),
    ]:
        cache.get_or_load(key, lambda: "x")

    assert cache.invalidate("demo_postgres", "engineering") == 1
    assert len(cache) == 3

    # default 规则是其它部门的兜底，失效时清掉该数据源下全部条目。
    assert cache.invalidate("demo_postgres", "default") == 2
    assert len(cache) == 1

    assert cache.invalidate() == 1
    assert len(cache) == 0


def test_clear_drops_everything():
    cache = PermissionCache(ttl_seconds=30)
    cache.get_or_load(("a", "default"), lambda: 1)
    cache.get_or_load(("b", "default"), lambda: 2)

    cache.clear()

    assert len(cache) == 0


def test_load_racing_with_invalidate_is_not_cached():
    cache = PermissionCache(ttl_seconds=30, clock=_FakeClock())
    calls = {"count": 0}

    def stale_loader():
        calls["count"] += 1
        # 回源过程中管理员修改了规则。
        cache.invalidate("demo_postgres", "engineering")
        return "stale"

    assert cache.get_or_load(("demo_postgres", "engineering"), stale_loader) == "stale"
    assert len(cache) == 0

    fresh, fresh_calls = _counting_loader("fresh")
    assert cache.get_or_load(("demo_postgres", "engineering"), fresh) == "fresh"
    assert cache.get_or_load(("demo_postgres", "engineering"), fresh) == "fresh"
    assert fresh_calls["count"] == 1
    assert calls["count"] == 1


def test_clear_during_load_discards_result():
    cache = PermissionCache(ttl_seconds=30, clock=_FakeClock())

    def loader():
        cache.clear()
        return "stale"

    cache.get_or_load(("demo_api", "default"), loader)

    assert len(cache) == 0
