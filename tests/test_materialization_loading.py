from datetime import timedelta

import pytest

from minerva.errors import ConfigurationError, DatabaseError, MinervaRuntimeError
from minerva.materialization import (
    TrendFunctionMaterialization,
    TrendMaterializationSource,
    TrendViewMaterialization,
    map_sql_to_plpgsql,
)
from minerva.materialization_loading import (
    LoadTrendMaterializationError,
    ResultColumn,
    coerce_to_plpgsql,
    get_function_def,
    get_function_result_columns,
    get_function_return_type,
    get_view_def,
    get_view_result_columns,
    load_materialization,
    load_materializations,
    load_materializations_from,
    load_sources,
    load_trend_materialization,
    trend_materialization_from_config,
)


class FakeClient:
    def __init__(self, rules):
        self.rules = rules
        self.calls = []

    async def query(self, sql, params):
        self.calls.append((sql, list(params)))
        for needle, response in self.rules:
            if needle in sql:
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(params)
                return response
        return []

    async def query_one(self, sql, params):
        rows = await self.query(sql, params)
        if len(rows) != 1:
            raise LookupError(f"expected one row, got {len(rows)}")
        return rows[0]

    async def execute(self, sql, params):
        self.calls.append((sql, list(params)))
        return 1


def _function_defs(params):
    defs = {
        "part_a_fingerprint": [("sql", "SELECT fp")],
        "part_a": [("sql", "SELECT body")],
    }
    return defs.get(params[0], [])


def _rules(row, view_def="SELECT viewdef"):
    return [
        ("FROM trend_directory.materialization AS m", [row]),
        ("SELECT lanname, prosrc", _function_defs),
        ("pg_get_viewdef", [(view_def,)] if view_def is not None else []),
        ("materialization_trend_store_link mtsl", [("src_part", "trend.map_id")]),
        ("unnest(proargnames", [("x", "integer"), ("y", "text")]),
    ]


VIEW_ROW = (7, "00:01:00", "00:00:30", "1 day", True, None, "part_a", "trend._part_a", None)
FUNCTION_ROW = (8, "00:01:00", "00:00:30", "1 day", False, None, "part_a", None, "trend.part_a")


def _view_materialization():
    return TrendViewMaterialization(
        target_trend_store_part="part_a",
        enabled=True,
        processing_delay=timedelta(minutes=5),
        stability_delay=timedelta(minutes=3),
        reprocessing_period=timedelta(days=3),
        sources=[TrendMaterializationSource("src_part", "trend.map_id")],
        fingerprint_function="SELECT now()",
        view="SELECT 1",
    )


def test_coerce_sql_is_wrapped():
    assert coerce_to_plpgsql("sql", "SELECT 1") == ("plpgsql", map_sql_to_plpgsql("SELECT 1"))


def test_coerce_plpgsql_is_unchanged():
    assert coerce_to_plpgsql("plpgsql", "BEGIN END;") == ("plpgsql", "BEGIN END;")


def test_coerce_other_language_fails():
    with pytest.raises(MinervaRuntimeError, match="Unexpected language 'c'"):
        coerce_to_plpgsql("c", "x")


def test_config_round_trip(tmp_path):
    original = _view_materialization()
    path = tmp_path / "part_a.yaml"
    path.write_text(original.dump(), encoding="utf-8")
    assert trend_materialization_from_config(path) == original


def test_config_missing_file(tmp_path):
    with pytest.raises(MinervaRuntimeError) as info:
        trend_materialization_from_config(tmp_path / "absent.yaml")
    assert str(info.value).startswith("could not open definition file")


def test_config_invalid_content(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("target_trend_store_part: x\n", encoding="utf-8")
    with pytest.raises(MinervaRuntimeError) as info:
        trend_materialization_from_config(path)
    assert str(info.value).startswith("could not deserialize materialization")


def test_load_materializations_from_skips_bad(tmp_path, capsys):
    directory = tmp_path / "materialization"
    directory.mkdir()
    first = _view_materialization()
    (directory / "b.yaml").write_text(first.dump(), encoding="utf-8")
    second = _view_materialization()
    second.target_trend_store_part = "part_0"
    (directory / "a.yaml").write_text(second.dump(), encoding="utf-8")
    (directory / "c.yaml").write_text("- not a mapping\n", encoding="utf-8")
    (directory / "d.json").write_text("{}", encoding="utf-8")

    loaded = list(load_materializations_from(tmp_path))

    assert [m.name() for m in loaded] == ["part_0", "part_a"]
    assert "Error loading materialization" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_get_view_def():
    client = FakeClient([("pg_get_viewdef", [("SELECT 2",)])])
    assert await get_view_def(client, "trend._x") == "SELECT 2"
    assert "'trend._x'::regclass" in client.calls[0][0]


@pytest.mark.asyncio
async def test_get_view_def_failure_gives_none():
    client = FakeClient([("pg_get_viewdef", RuntimeError("boom"))])
    assert await get_view_def(client, "trend._x") is None


@pytest.mark.asyncio
async def test_get_function_def():
    client = FakeClient([("SELECT lanname, prosrc", _function_defs)])
    assert await get_function_def(client, "part_a") == ("sql", "SELECT body")
    assert await get_function_def(client, "unknown") is None


@pytest.mark.asyncio
async def test_function_result_columns_and_return_type():
    client = FakeClient(_rules(VIEW_ROW))
    columns = await get_function_result_columns(client, "trend", "part_a")
    assert columns == [ResultColumn("x", "integer"), ResultColumn("y", "text")]
    return_type = await get_function_return_type(client, "trend", "part_a")
    assert return_type == 'TABLE (\n    "x" integer,\n    "y" text\n)\n'


@pytest.mark.asyncio
async def test_view_result_columns_error():
    client = FakeClient([("relkind = 'v'", RuntimeError("down"))])
    with pytest.raises(MinervaRuntimeError) as info:
        await get_view_result_columns(client, "trend", "_x")
    assert str(info.value).startswith("could not retrieve result columns for view")


@pytest.mark.asyncio
async def test_load_sources():
    client = FakeClient(_rules(VIEW_ROW))
    assert await load_sources(client, 7) == [
        TrendMaterializationSource("src_part", "trend.map_id")
    ]
    assert client.calls[0][1] == [7]


@pytest.mark.asyncio
async def test_load_sources_error():
    client = FakeClient([("materialization_trend_store_link", RuntimeError("x"))])
    with pytest.raises(DatabaseError, match="Error loading trend materializations"):
        await load_sources(client, 1)


@pytest.mark.asyncio
async def test_load_trend_materialization_view():
    client = FakeClient(_rules(VIEW_ROW))
    result = await load_trend_materialization(client, "part_a")
    assert isinstance(result, TrendViewMaterialization)
    assert result.view == "SELECT viewdef"
    assert result.processing_delay == timedelta(seconds=60)
    assert result.fingerprint_function == "SELECT fp"
    assert result.sources == [TrendMaterializationSource("src_part", "trend.map_id")]


@pytest.mark.asyncio
async def test_load_trend_materialization_function():
    client = FakeClient(_rules(FUNCTION_ROW))
    result = await load_trend_materialization(client, "part_a")
    assert isinstance(result, TrendFunctionMaterialization)
    assert result.function.language == "plpgsql"
    assert result.function.src == map_sql_to_plpgsql("SELECT body")
    assert result.function.return_type.startswith("TABLE (")
    assert result.enabled is False


@pytest.mark.asyncio
async def test_missing_fingerprint_uses_placeholder():
    row = VIEW_ROW[:6] + ("part_b",) + VIEW_ROW[7:]
    client = FakeClient(_rules(row))
    result = await load_trend_materialization(client, "part_b")
    assert result.fingerprint_function == "failed getting sources"


@pytest.mark.asyncio
async def test_load_trend_materialization_not_found():
    client = FakeClient([])
    with pytest.raises(LoadTrendMaterializationError) as info:
        await load_trend_materialization(client, "nothing")
    assert info.value.kind == "not_found"
    assert "nothing" in str(info.value)


@pytest.mark.asyncio
async def test_load_trend_materialization_parse_error():
    row = (7, "bogus", "00:00:30", "1 day", True, None, "part_a", "trend._part_a", None)
    client = FakeClient(_rules(row))
    with pytest.raises(LoadTrendMaterializationError) as info:
        await load_trend_materialization(client, "part_a")
    assert info.value.kind == "parse"
    assert "processing_delay" in str(info.value)


@pytest.mark.asyncio
async def test_load_trend_materialization_no_view():
    client = FakeClient(_rules(VIEW_ROW, view_def=None))
    with pytest.raises(LoadTrendMaterializationError) as info:
        await load_trend_materialization(client, "part_a")
    assert info.value.kind == "no_such_view"
    assert str(info.value) == "no such view 'trend._part_a' could be loaded"


@pytest.mark.asyncio
async def test_load_trend_materialization_neither():
    row = VIEW_ROW[:7] + (None, None)
    client = FakeClient(_rules(row))
    with pytest.raises(LoadTrendMaterializationError) as info:
        await load_trend_materialization(client, "part_a")
    assert info.value.kind == "configuration"


@pytest.mark.asyncio
async def test_load_materialization_empty():
    with pytest.raises(ConfigurationError, match="No materialization that matches name 'x'"):
        await load_materialization(FakeClient([]), "x")


@pytest.mark.asyncio
async def test_load_materialization_neither():
    row = VIEW_ROW[:7] + (None, None)
    with pytest.raises(MinervaRuntimeError, match="not a view and not a function"):
        await load_materialization(FakeClient(_rules(row)), "part_a")


@pytest.mark.asyncio
async def test_load_materialization_view():
    result = await load_materialization(FakeClient(_rules(VIEW_ROW)), "part_a")
    assert result.name() == "part_a"
    assert result.reprocessing_period == timedelta(days=1)


@pytest.mark.asyncio
async def test_load_materializations_both_kinds():
    row = VIEW_ROW[:8] + ("trend.part_a",)
    client = FakeClient(_rules(row))
    result = await load_materializations(client)
    assert [type(m) for m in result] == [
        TrendViewMaterialization,
        TrendFunctionMaterialization,
    ]


@pytest.mark.asyncio
async def test_load_materializations_query_error():
    client = FakeClient([("FROM trend_directory.materialization AS m", RuntimeError("x"))])
    with pytest.raises(DatabaseError, match="Error loading trend materializations"):
        await load_materializations(client)