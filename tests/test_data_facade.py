import asyncio
import copy

import pytest

from freshline.access.policy import Principal
from freshline.core.cache import TTLCache
from freshline.core.result import AccessDenied, Failure, RemoteError, Success, ValidationError
from freshline.data.facade import INVALIDATED, PATCHED, DataAccessFacade
from freshline.data.remote import RemoteStoreError
from freshline.realtime.connection import ConnectionManager

AGENT = Principal("agent", "7")
CLIENT = Principal("client", "12")


class FakeRemote:
    def __init__(self, data=None, *, delay=0.0):
        self.data = data or {}
        self.delay = delay
        self.fail = None
        self.fetch_calls = []
        self.mutate_calls = []

    async def fetch(self, resource, filters):
        self.fetch_calls.append((resource, dict(filters)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return copy.deepcopy(self.data.get(resource, []))

    async def mutate(self, resource, patch):
        self.mutate_calls.append((resource, dict(patch)))
        if self.fail is not None:
            raise self.fail
        return {"ok": True, **patch}


def _facade(remote, clock=None, **kwargs):
    cache = TTLCache(default_ttl=30, clock=clock) if clock else TTLCache(default_ttl=30)
    return DataAccessFacade(remote, principal=AGENT, cache=cache, **kwargs)


@pytest.mark.asyncio
async def test_miss_fetches_then_serves_from_cache():
    remote = FakeRemote({"clients": [{"id": 1}]})
    facade = _facade(remote)

    first = await facade.get("clients")
    second = await facade.get("clients")

    assert first == Success([{"id": 1}])
    assert second == Success([{"id": 1}])
    assert len(remote.fetch_calls) == 1


@pytest.mark.asyncio
async def test_expired_entry_is_refetched(clock):
    remote = FakeRemote({"clients": [{"id": 1}]})
    facade = _facade(remote, clock)

    await facade.get("clients")
    clock.advance(30)
    await facade.get("clients")

    assert len(remote.fetch_calls) == 2


@pytest.mark.asyncio
async def test_denied_read_never_touches_cache_or_network():
    remote = FakeRemote({"clients": [{"id": 1}]})
    facade = _facade(remote)

    result = await facade.get("clients", principal=CLIENT)

    assert isinstance(result, Failure)
    assert result.error == AccessDenied("client", "clients", "read")
    assert remote.fetch_calls == []
    assert len(facade.cache) == 0


@pytest.mark.asyncio
async def test_single_flight_coalesces_concurrent_misses():
    remote = FakeRemote({"calls": [{"id": 5}]}, delay=0.05)
    facade = _facade(remote, single_flight=True)

    results = await asyncio.gather(*(facade.get("calls") for _ in range(5)))

    assert all(r == Success([{"id": 5}]) for r in results)
    assert len(remote.fetch_calls) == 1


@pytest.mark.asyncio
async def test_without_single_flight_each_miss_fetches():
    remote = FakeRemote({"calls": [{"id": 5}]}, delay=0.05)
    facade = _facade(remote, single_flight=False)

    results = await asyncio.gather(*(facade.get("calls") for _ in range(5)))

    assert all(r == Success([{"id": 5}]) for r in results)
    assert len(remote.fetch_calls) == 5
    assert facade.cache.get(next(iter(facade.cache.keys()))) == [{"id": 5}]


@pytest.mark.asyncio
async def test_remote_failure_is_a_result():
    remote = FakeRemote()
    remote.fail = RemoteStoreError("upstream down", status=503)
    facade = _facade(remote)

    result = await facade.get("clients")

    assert isinstance(result, Failure)
    assert isinstance(result.error, RemoteError)
    assert result.error.status == 503
    assert result.error.retryable
    assert result.error.operation == "fetch"


@pytest.mark.asyncio
async def test_unexpected_remote_exception_is_also_contained():
    remote = FakeRemote()
    remote.fail = KeyError("surprise")
    facade = _facade(remote)

    result = await facade.get("clients")

    assert isinstance(result.error, RemoteError)
    assert result.error.status is None


@pytest.mark.asyncio
async def test_stale_fallback_only_when_enabled(clock):
    remote = FakeRemote({"clients": [{"id": 1}]})
    strict = _facade(remote, clock)
    lenient = _facade(remote, clock, stale_on_error=True)

    await strict.get("clients")
    await lenient.get("clients")
    clock.advance(60)
    remote.fail = RemoteStoreError("timeout")

    assert isinstance(await strict.get("clients"), Failure)
    assert await lenient.get("clients") == Success([{"id": 1}])


@pytest.mark.asyncio
async def test_filters_and_principals_get_separate_entries():
    remote = FakeRemote({"clients": [{"id": 1}]})
    facade = _facade(remote)

    await facade.get("clients", {"status": "active", "tags": ["b", "a"]})
    await facade.get("clients", {"tags": ["b", "a"], "status": "active", "q": None})
    await facade.get("clients", {"status": "archived"})
    await facade.get("clients", {"status": "active", "tags": ["b", "a"]}, principal=Principal("agent", "8"))

    assert len(remote.fetch_calls) == 3
    assert remote.fetch_calls[0] == ("clients", {"status": "active", "tags": ["b", "a"]})


@pytest.mark.asyncio
async def test_ttl_override_and_force_refresh():
    remote = FakeRemote({"analytics": {"calls": 3}, "calls": []})
    facade = _facade(remote, ttl_overrides={"analytics": 0})

    await facade.get("analytics")
    await facade.get("analytics")
    assert len(remote.fetch_calls) == 2

    await facade.get("calls")
    await facade.get("calls", force_refresh=True)
    await facade.get("calls")
    assert len(remote.fetch_calls) == 4


@pytest.mark.asyncio
async def test_mutate_invalidates_every_variant():
    remote = FakeRemote({"clients": [{"id": 1}]})
    facade = _facade(remote)
    await facade.get("clients")
    await facade.get("clients", {"status": "active"})
    await facade.get("calls")

    result = await facade.mutate("clients", {"id": 1, "name": "Renamed"})

    assert result == Success({"ok": True, "id": 1, "name": "Renamed"})
    assert [key.split(":")[0] for key in facade.cache.keys()] == ["calls"]

    await facade.get("clients")
    assert len(remote.fetch_calls) == 4


@pytest.mark.asyncio
async def test_related_resources_are_invalidated_together():
    remote = FakeRemote({"calls": [{"id": 1}], "analytics": [{"total": 1}], "clients": [{"id": 5}]})
    facade = _facade(remote, related={"calls": ["analytics"]})
    await facade.get("calls")
    await facade.get("analytics")
    await facade.get("analytics", {"period": "week"})
    await facade.get("clients")

    assert (await facade.mutate("calls", {"id": 1, "status": "done"})).is_success()
    assert [key.split(":")[0] for key in facade.cache.keys()] == ["clients"]

    await facade.get("analytics")
    assert facade.invalidate("calls") == 1
    assert [key.split(":")[0] for key in facade.cache.keys()] == ["clients"]

    await facade.get("analytics")
    facade.apply_change({"table": "calls", "eventType": "UPDATE", "new": {"id": 1, "status": "late"}})
    assert [key.split(":")[0] for key in facade.cache.keys()] == ["clients"]

    # One level only: analytics has no related entry of its own.
    await facade.get("calls")
    facade.invalidate("analytics")
    assert sorted(key.split(":")[0] for key in facade.cache.keys()) == ["calls", "clients"]


def test_related_names_are_validated():
    with pytest.raises(ValueError):
        DataAccessFacade(FakeRemote(), related={"calls": ["bad:name"]})


@pytest.mark.asyncio
async def test_resource_name_is_normalized_for_policy_and_cache():
    remote = FakeRemote({"clients": [{"id": 1}]})
    facade = _facade(remote)

    assert await facade.get(" clients ") == Success([{"id": 1}])
    assert await facade.get("clients") == Success([{"id": 1}])
    assert remote.fetch_calls == [("clients", {})]

    denied = await facade.get(" analytics", principal=CLIENT)
    assert denied.error == AccessDenied("client", "analytics", "read")

    await facade.mutate(" clients ", {"id": 1})
    assert remote.mutate_calls == [("clients", {"id": 1})]


@pytest.mark.asyncio
async def test_mutate_checks_policy_and_reports_failures():
    remote = FakeRemote()
    facade = _facade(remote)

    denied = await facade.mutate("analytics", {"x": 1})
    assert denied.error == AccessDenied("agent", "analytics", "update")

    created = await facade.mutate("support", {"topic": "help"}, action="create")
    assert created.is_success()

    remote.fail = RemoteStoreError("conflict", status=409)
    failed = await facade.mutate("clients", {"id": 1})
    assert failed.error.status == 409
    assert not failed.error.retryable
    assert len(remote.mutate_calls) == 2


@pytest.mark.asyncio
async def test_invalid_requests_are_validation_failures():
    facade = DataAccessFacade(FakeRemote())

    no_principal = await facade.get("clients")
    assert isinstance(no_principal.error, ValidationError)
    assert no_principal.error.field == "principal"

    bad_resource = await facade.get("clients:all", principal=AGENT)
    assert bad_resource.error.field == "resource"


@pytest.mark.asyncio
async def test_update_change_patches_cached_lists():
    remote = FakeRemote({"clients": [{"id": 1, "name": "Old"}, {"id": 2, "name": "Other"}]})
    facade = _facade(remote)
    await facade.get("clients")

    outcome = facade.apply_change(
        {"table": "clients", "eventType": "UPDATE", "new": {"id": 1, "name": "New"}, "old": {"id": 1}}
    )

    assert outcome == PATCHED
    assert await facade.get("clients") == Success([{"id": 1, "name": "New"}, {"id": 2, "name": "Other"}])
    assert len(remote.fetch_calls) == 1


@pytest.mark.asyncio
async def test_delete_change_removes_rows():
    remote = FakeRemote({"clients": [{"id": 1}, {"id": 2}]})
    facade = _facade(remote)
    await facade.get("clients")

    facade.apply_change({"table": "clients", "eventType": "DELETE", "old": {"id": 2}})

    assert await facade.get("clients") == Success([{"id": 1}])


@pytest.mark.asyncio
async def test_insert_and_unpatchable_changes_invalidate():
    remote = FakeRemote({"clients": [{"id": 1}]})
    facade = _facade(remote)
    await facade.get("clients")

    assert facade.apply_change({"table": "clients", "eventType": "INSERT", "new": {"id": 3}}) == INVALIDATED
    assert facade.cache.keys() == []
    assert facade.apply_change({"eventType": "INSERT"}) == "ignored"


@pytest.mark.asyncio
async def test_attach_applies_db_events_from_connection(make_connector, make_session, eventually):
    remote = FakeRemote({"clients": [{"id": 1, "name": "Old"}]})
    facade = _facade(remote)
    await facade.get("clients")

    session = make_session()
    manager = ConnectionManager("ws://test.invalid/ws", connector=make_connector([session]))
    facade.attach(manager)
    await manager.connect()
    await manager.wait_until_open(timeout=1)

    session.feed(
        {
            "type": "db-event",
            "data": {"table": "clients", "eventType": "UPDATE", "new": {"id": 1, "name": "Pushed"}},
        }
    )

    async def current():
        return (await facade.get("clients")).unwrap()

    for _ in range(100):
        if (await current())[0]["name"] == "Pushed":
            break
        await asyncio.sleep(0.01)
    assert (await current()) == [{"id": 1, "name": "Pushed"}]
    assert len(remote.fetch_calls) == 1
    await manager.close()
