import asyncio

import pytest

from freshline.access.policy import Principal
from freshline.core.result import AccessDenied
from freshline.core.settings import get_settings
from freshline.data.facade import DataAccessFacade
from freshline.data.search import SearchSession, normalize_query


class FakeSearch:
    def __init__(self, results=None):
        self.queries = []
        self.results = results or {}
        self.fail = None

    async def __call__(self, query):
        self.queries.append(query)
        if self.fail is not None:
            raise self.fail
        return self.results.get(query.lower(), [])


@pytest.mark.asyncio
async def test_typing_burst_issues_one_search():
    search = FakeSearch({"john": [{"id": 1}]})
    delivered = []
    session = SearchSession(search, on_results=lambda q, r: delivered.append((q, r)), delay=0.05)

    for partial in ["j", "jo", "joh", "john"]:
        session.set_query(partial)
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.15)

    assert search.queries == ["john"]
    assert delivered == [("john", [{"id": 1}])]
    assert session.last_query == "john"
    assert session.results == [{"id": 1}]


@pytest.mark.asyncio
async def test_short_queries_resolve_empty_without_fetch():
    search = FakeSearch()
    delivered = []
    session = SearchSession(search, on_results=lambda q, r: delivered.append((q, r)), delay=0.02)

    session.set_query(" j ")
    await asyncio.sleep(0.06)

    assert search.queries == []
    assert delivered == [("j", [])]


@pytest.mark.asyncio
async def test_results_are_cached_per_normalized_query():
    search = FakeSearch({"acme corp": ["acme"]})
    session = SearchSession(search, delay=0.02)

    assert await session.run("Acme  Corp") == ["acme"]
    assert await session.run("acme corp ") == ["acme"]
    assert search.queries == ["Acme Corp"]

    session.clear_cache()
    await session.run("acme corp")
    assert len(search.queries) == 2


@pytest.mark.asyncio
async def test_search_failure_reports_and_returns_empty():
    search = FakeSearch()
    search.fail = RuntimeError("backend down")
    errors = []
    session = SearchSession(search, on_error=errors.append, delay=0.02)

    assert await session.run("acme") == []
    assert [str(e) for e in errors] == ["backend down"]


@pytest.mark.asyncio
async def test_close_cancels_pending_search():
    search = FakeSearch()
    session = SearchSession(search, delay=0.05)

    session.set_query("pending")
    assert session.pending
    session.close()
    await asyncio.sleep(0.1)

    assert search.queries == []


class ListingRemote:
    def __init__(self):
        self.calls = []

    async def fetch(self, resource, filters):
        self.calls.append((resource, dict(filters)))
        return [{"id": 1, "match": filters.get("search")}]

    async def mutate(self, resource, patch):
        raise AssertionError("not used")


@pytest.mark.asyncio
async def test_for_resource_goes_through_facade():
    remote = ListingRemote()
    facade = DataAccessFacade(remote, principal=Principal("agent", "1"))
    session = SearchSession.for_resource(facade, "clients", filters={"status": "active"}, delay=0.02)

    assert session.min_query_length == get_settings().search_min_query_length
    assert await session.run("acme") == [{"id": 1, "match": "acme"}]
    assert remote.calls == [("clients", {"search": "acme", "status": "active"})]
    # Search answers live in the session cache only.
    assert facade.cache.keys() == []


@pytest.mark.asyncio
async def test_for_resource_denial_is_reported():
    errors = []
    facade = DataAccessFacade(ListingRemote(), principal=Principal("client", "9"))
    session = SearchSession.for_resource(facade, "clients", on_error=errors.append, delay=0.02)

    assert await session.run("acme") == []
    assert errors == [AccessDenied("client", "clients", "read")]


def test_normalize_query():
    assert normalize_query("  a   b ") == "a b"
    assert normalize_query("") == ""
