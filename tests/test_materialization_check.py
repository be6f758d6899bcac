from datetime import timedelta

import pytest

from minerva.errors import MinervaRuntimeError
from minerva.materialization import (
    TrendFunctionMaterialization,
    TrendMaterializationFunction,
    TrendViewMaterialization,
)
from minerva.materialization_check import (
    PopulateSourceFingerprintError,
    RemoveTrendMaterialization,
    TrendStorePartColumn,
    check_function_materialization,
    check_trend_materialization,
    check_view_materialization,
    get_trend_store_part_columns,
    populate_source_fingerprint,
    remove_trend_materialization,
    reset_source_fingerprint,
)


class FakeClient:
    def __init__(self, rows=None, execute_result=1, fail_on=None):
        self.rows = rows or {}
        self.execute_result = execute_result
        self.fail_on = fail_on
        self.calls = []

    def _record(self, query, params):
        self.calls.append((query, list(params)))
        if self.fail_on is not None and self.fail_on in query:
            raise RuntimeError("boom")

    async def query(self, query, params):
        self._record(query, params)
        for key, rows in self.rows.items():
            if key in query:
                return rows
        return []

    async def execute(self, query, params):
        self._record(query, params)
        return self.execute_result


def _view(name="target"):
    return TrendViewMaterialization(
        target_trend_store_part=name,
        enabled=True,
        processing_delay=timedelta(minutes=1),
        stability_delay=timedelta(minutes=2),
        reprocessing_period=timedelta(days=1),
        sources=[],
        fingerprint_function="SELECT 1",
        view="SELECT 1",
    )


def _function(name="target"):
    return TrendFunctionMaterialization(
        target_trend_store_part=name,
        enabled=True,
        processing_delay=timedelta(minutes=1),
        stability_delay=timedelta(minutes=2),
        reprocessing_period=timedelta(days=1),
        sources=[],
        fingerprint_function="SELECT 1",
        function=TrendMaterializationFunction("TABLE (x integer)", "SELECT 1", "plpgsql"),
    )


@pytest.mark.asyncio
async def test_remove_drops_view_and_fingerprint():
    client = FakeClient()
    await remove_trend_materialization(client, "mat")
    queries = [q for q, _ in client.calls]
    assert queries[0].startswith("DELETE FROM trend_directory.materialization")
    assert client.calls[0][1] == ["mat"]
    assert any('DROP VIEW IF EXISTS trend."_mat"' in q for q in queries)
    assert any('DROP FUNCTION IF EXISTS trend."mat_fingerprint"' in q for q in queries)


@pytest.mark.asyncio
async def test_remove_nothing_deleted():
    client = FakeClient(execute_result=0)
    with pytest.raises(MinervaRuntimeError) as info:
        await remove_trend_materialization(client, "mat")
    assert str(info.value) == "No materializations deleted"
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_remove_too_many_deleted():
    client = FakeClient(execute_result=3)
    with pytest.raises(MinervaRuntimeError) as info:
        await remove_trend_materialization(client, "mat")
    assert str(info.value) == "More than 1 materialization deleted (3)"


@pytest.mark.asyncio
async def test_remove_change_messages():
    change = RemoveTrendMaterialization("mat")
    assert str(change) == "RemoveTrendMaterialization(mat)"
    assert await change.apply(FakeClient()) == "Removed trend materialization 'mat'"
    with pytest.raises(MinervaRuntimeError) as info:
        await change.apply(FakeClient(execute_result=0))
    assert str(info.value).startswith("Error removing trend materialization 'mat': ")
    assert "No materializations deleted" in str(info.value)


@pytest.mark.asyncio
async def test_populate_without_sources():
    client = FakeClient()
    with pytest.raises(PopulateSourceFingerprintError) as info:
        await populate_source_fingerprint(client, "mat")
    assert info.value.kind == PopulateSourceFingerprintError.NO_SOURCES
    assert str(info.value) == "No sources found for materialization"


@pytest.mark.asyncio
async def test_populate_builds_joined_query():
    client = FakeClient(rows={"materialization_trend_store_link": [("f1", "a"), ("f2", "b")]})
    await populate_source_fingerprint(client, "mat")
    query, params = client.calls[-1]
    assert params == ["mat"]
    assert query == (
        'WITH source_1 AS (select f1(timestamp) AS timestamp from trend."a" group by timestamp),'
        'source_2 AS (select f2(timestamp) AS timestamp from trend."b" group by timestamp) '
        "SELECT trend_directory.update_source_fingerprint(m.id, source_1.timestamp) "
        "FROM source_1 JOIN source_2 ON source_1.timestamp = source_2.timestamp, "
        "trend_directory.materialization m WHERE m::text = $1"
    )


@pytest.mark.asyncio
async def test_populate_source_loading_failure():
    client = FakeClient(fail_on="materialization_trend_store_link")
    with pytest.raises(PopulateSourceFingerprintError) as info:
        await populate_source_fingerprint(client, "mat")
    assert info.value.kind == PopulateSourceFingerprintError.SOURCES_LOADING
    assert str(info.value) == "Could not load materialization sources: boom"


@pytest.mark.asyncio
async def test_populate_update_failure():
    client = FakeClient(
        rows={"materialization_trend_store_link": [("f1", "a")]},
        fail_on="update_source_fingerprint",
    )
    with pytest.raises(PopulateSourceFingerprintError) as info:
        await populate_source_fingerprint(client, "mat")
    assert info.value.kind == PopulateSourceFingerprintError.FINGERPRINT_UPDATING
    assert str(info.value) == "Could not update fingerprints: boom"


@pytest.mark.asyncio
async def test_reset_source_fingerprint():
    client = FakeClient()
    await reset_source_fingerprint(client, "mat")
    query, params = client.calls[0]
    assert 'trend."mat_fingerprint"(ms.timestamp)' in query
    assert params == ["mat"]

    failing = FakeClient(fail_on="materialization_state")
    with pytest.raises(MinervaRuntimeError) as info:
        await reset_source_fingerprint(failing, "mat")
    assert str(info.value) == "Error loading trend materializations: boom"


@pytest.mark.asyncio
async def test_get_trend_store_part_columns():
    client = FakeClient(rows={"table_trend": [("a", "integer"), ("b", "text")]})
    columns = await get_trend_store_part_columns(client, "part")
    assert columns == [TrendStorePartColumn("a", "integer"), TrendStorePartColumn("b", "text")]
    assert client.calls[0][1] == ["part"]


_VIEW_ROWS = [
    ("entity_id", "integer"),
    ("timestamp", "timestamp with time zone"),
    ("a", "integer"),
    ("b", "text"),
    ("c", "bigint"),
]
_TREND_ROWS = [("a", "integer"), ("b", "numeric"), ("d", "real")]


@pytest.mark.asyncio
async def test_check_view_reports_mismatches():
    client = FakeClient(rows={"relkind = 'v'": _VIEW_ROWS, "table_trend": _TREND_ROWS})
    report = await check_view_materialization(client, _view())
    assert report == [
        "Column 'b'(text) returned from view differs in type: 'text' != 'numeric' ",
        "Column 'c'(bigint) is returned from view but has no matching trend",
        "Column 'd'(real) is defined as trend in trend store part 'target' "
        "but is not returned from view",
    ]
    assert client.calls[0][1] == ["trend", "_target"]


@pytest.mark.asyncio
async def test_check_view_matching_is_clean():
    client = FakeClient(
        rows={"relkind = 'v'": [("a", "integer")], "table_trend": [("a", "integer")]}
    )
    assert await check_view_materialization(client, _view()) == []


@pytest.mark.asyncio
async def test_check_function_reports_mismatches():
    client = FakeClient(rows={"proargnames": _VIEW_ROWS, "table_trend": _TREND_ROWS})
    report = await check_function_materialization(client, _function())
    assert len(report) == 3
    assert all("function" in line for line in report)
    assert client.calls[0][1] == ["trend", "target"]


@pytest.mark.asyncio
async def test_check_trend_materialization_dispatches():
    rows = {"proargnames": [("x", "integer")], "relkind = 'v'": [], "table_trend": []}
    report = await check_trend_materialization(FakeClient(rows=rows), _function())
    assert report == ["Column 'x'(integer) is returned from function but has no matching trend"]

    view_report = await check_trend_materialization(
        FakeClient(rows={"table_trend": [("y", "text")]}), _view()
    )
    assert view_report == [
        "Column 'y'(text) is defined as trend in trend store part 'target' "
        "but is not returned from view"
    ]

    with pytest.raises(TypeError):
        await check_trend_materialization(FakeClient(), object())