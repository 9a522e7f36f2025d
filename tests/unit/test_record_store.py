import pytest
import pytest_asyncio

from opsflow.records import InMemoryRecordStore, SQLRecordStore, get_record_store


@pytest_asyncio.fixture(params=["inmemory", "sql"])
async def store(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryRecordStore()
        return
    sql_store = SQLRecordStore(f"sqlite+aiosqlite:///{tmp_path / 'records.db'}")
    yield sql_store
    await sql_store.close()


@pytest.mark.asyncio
async def test_upsert_merges_fields(store):
    await store.upsert_fields("org-1", "ticket", "T-1", {"status": "open", "priority": 2}, run_id="r1")
    record = await store.upsert_fields("org-1", "ticket", "T-1", {"status": "notified"}, run_id="r2")
    assert record.fields == {"status": "notified", "priority": 2}
    assert record.last_run_id == "r2"

    loaded = await store.get("org-1", "ticket", "T-1")
    assert loaded.fields == {"status": "notified", "priority": 2}
    assert await store.get("org-2", "ticket", "T-1") is None


@pytest.mark.asyncio
async def test_repeated_upserts_converge(store):
    for _ in range(3):
        await store.upsert_fields("org-1", "customer", 42, {"welcomed": True})
    found = await store.query("org-1", "customer")
    assert len(found) == 1
    assert found[0].target_id == "42"
    assert found[0].fields == {"welcomed": True}


@pytest.mark.asyncio
async def test_query_filters_and_limits(store):
    for target_id, status in (("a", "open"), ("b", "closed"), ("c", "open")):
        await store.upsert_fields("org-1", "ticket", target_id, {"status": status})
    await store.upsert_fields("org-2", "ticket", "d", {"status": "open"})

    open_tickets = await store.query("org-1", "ticket", {"status": "open"})
    assert [r.target_id for r in open_tickets] == ["a", "c"]
    assert len(await store.query("org-1", "ticket", limit=2)) == 2


def test_get_record_store_defaults_to_memory():
    assert isinstance(get_record_store(None), InMemoryRecordStore)
    assert isinstance(get_record_store("sqlite+aiosqlite:///:memory:"), SQLRecordStore)
