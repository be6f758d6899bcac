import pytest

from minerva.errors import ConfigurationError, DatabaseError, MinervaRuntimeError
from minerva.notification_store import (
    AddAttributes,
    AddNotificationStore,
    Attribute,
    NotificationStore,
    load_notification_store,
    load_notification_store_from_file,
    load_notification_stores,
    notification_store_exists,
)


class FakeClient:
    def __init__(self, handler=None):
        self.calls = []
        self.handler = handler

    async def _call(self, method, sql, params, default):
        self.calls.append((method, sql, list(params)))
        if self.handler is None:
            return default
        return self.handler(method, sql, list(params))

    async def query(self, sql, params):
        return await self._call("query", sql, params, [])

    async def query_one(self, sql, params):
        return await self._call("query_one", sql, params, [None])

    async def execute(self, sql, params):
        return await self._call("execute", sql, params, 0)


def failing(method, sql, params):
    raise RuntimeError("boom")


def make_store(*names):
    return NotificationStore(
        data_source="alarms",
        attributes=[Attribute(name=n, data_type="integer") for n in names],
    )


def test_from_dict_defaults_description():
    store = NotificationStore.from_dict(
        {"data_source": "alarms", "attributes": [{"name": "severity", "data_type": "integer"}]}
    )
    assert store.data_source == "alarms"
    assert store.title is None
    assert store.attributes == [Attribute("severity", "integer", "")]


def test_from_dict_requires_data_source():
    with pytest.raises(ValueError):
        NotificationStore.from_dict({"attributes": []})


def test_str_of_store():
    assert str(make_store()) == "NotificationStore(alarms)"


def test_diff_without_new_attributes_is_empty():
    assert make_store("a", "b").diff(make_store("b")) == []


def test_diff_reports_new_attributes():
    mine = make_store("a")
    other = make_store("a", "b")
    changes = mine.diff(other)
    assert len(changes) == 1
    assert isinstance(changes[0], AddAttributes)
    assert changes[0].notification_store is mine
    assert [a.name for a in changes[0].attributes] == ["b"]


@pytest.mark.asyncio
async def test_add_notification_store_builds_attribute_array():
    client = FakeClient()
    store = make_store("x", "y")
    message = await AddNotificationStore(store).apply(client)
    assert message == "Created attribute store 'NotificationStore(alarms)'"
    method, sql, params = client.calls[0]
    assert method == "query_one"
    assert "ARRAY[('x', 'integer', ''),('y', 'integer', '')]" in sql
    assert params == ["alarms"]


@pytest.mark.asyncio
async def test_add_notification_store_failure():
    with pytest.raises(DatabaseError, match="^Error creating notification store: boom"):
        await AddNotificationStore(make_store("x")).apply(FakeClient(failing))


@pytest.mark.asyncio
async def test_add_attributes_executes_per_attribute():
    client = FakeClient()
    store = make_store()
    change = AddAttributes(store, [Attribute("p", "text", "d1"), Attribute("q", "real")])
    message = await change.apply(client)
    assert message == "Added attributes to notification store 'NotificationStore(alarms)'"
    assert [c[2] for c in client.calls] == [
        ["p", "text", "d1", "alarms"],
        ["q", "real", "", "alarms"],
    ]


@pytest.mark.asyncio
async def test_add_attributes_failure():
    change = AddAttributes(make_store(), [Attribute("p", "text")])
    with pytest.raises(DatabaseError, match="adding attribute"):
        await change.apply(FakeClient(failing))


@pytest.mark.asyncio
async def test_load_notification_stores():
    def handler(method, sql, params):
        if "FROM notification_directory.notification_store" in sql:
            return [(3, "alarms")]
        assert params == [3]
        return [("severity", "integer", None), ("text", "text", "message")]

    stores = await load_notification_stores(FakeClient(handler))
    assert len(stores) == 1
    assert stores[0].data_source == "alarms"
    assert stores[0].attributes == [
        Attribute("severity", "integer", ""),
        Attribute("text", "text", "message"),
    ]


@pytest.mark.asyncio
async def test_load_notification_stores_failure():
    with pytest.raises(DatabaseError, match="Error loading notification stores"):
        await load_notification_stores(FakeClient(failing))


@pytest.mark.asyncio
async def test_load_notification_store():
    def handler(method, sql, params):
        if method == "query_one":
            return (9,)
        return [("kind", "text", "k")]

    client = FakeClient(handler)
    store = await load_notification_store(client, "alarms", "node")
    assert store.data_source == "alarms"
    assert store.attributes == [Attribute("kind", "text", "k")]
    assert client.calls[0][2] == ["alarms", "node"]
    assert client.calls[1][2] == [9]


@pytest.mark.asyncio
async def test_load_notification_store_failure():
    with pytest.raises(DatabaseError, match="Could not load attribute stores"):
        await load_notification_store(FakeClient(failing), "alarms", "node")


@pytest.mark.asyncio
@pytest.mark.parametrize("rows,expected", [([], False), ([(1, "alarms")], True)])
async def test_notification_store_exists(rows, expected):
    client = FakeClient(lambda m, s, p: rows)
    assert await notification_store_exists(client, "alarms") is expected
    assert client.calls[0][2] == ["alarms"]


@pytest.mark.asyncio
async def test_notification_store_exists_with_multiple_matches():
    client = FakeClient(lambda m, s, p: [(1, "a"), (2, "a")])
    with pytest.raises(DatabaseError, match="Unexpected number of notification store matches: 2"):
        await notification_store_exists(client, "a")


def test_load_from_file(tmp_path):
    path = tmp_path / "alarms.yaml"
    path.write_text(
        "title: Alarms\n"
        "data_source: alarms\n"
        "attributes:\n"
        "  - name: severity\n"
        "    data_type: integer\n"
        "    description: level\n",
        encoding="utf-8",
    )
    store = load_notification_store_from_file(path)
    assert store.title == "Alarms"
    assert store.attributes == [Attribute("severity", "integer", "level")]


def test_load_from_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="Could not open notification store"):
        load_notification_store_from_file(tmp_path / "absent.yaml")


def test_load_from_invalid_file(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("title: only\n", encoding="utf-8")
    with pytest.raises(MinervaRuntimeError, match="Could not read notification store"):
        load_notification_store_from_file(path)