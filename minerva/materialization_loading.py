"""Loading trend materializations from definition files and from the database."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import yaml

from .errors import (
    ConfigurationError,
    DatabaseError,
    MinervaError,
    MinervaRuntimeError,
)
from .interval import parse_interval
from .materialization import (
    MATERIALIZATION_FUNCTION_SCHEMA,
    TrendFunctionMaterialization,
    TrendMaterialization,
    TrendMaterializationFunction,
    TrendMaterializationSource,
    TrendViewMaterialization,
    fingerprint_function_name,
    map_sql_to_plpgsql,
    trend_materialization_from_dict,
)

_MATERIALIZATION_QUERY = (
    "SELECT m.id, m.processing_delay::text, m.stability_delay::text, "
    "m.reprocessing_period::text, m.enabled, m.description, tsp.name, "
    "vm.src_view, fm.src_function "
    "FROM trend_directory.materialization AS m "
    "JOIN trend_directory.trend_store_part AS tsp ON tsp.id = m.dst_trend_store_part_id "
    "LEFT JOIN trend_directory.view_materialization AS vm ON vm.materialization_id = m.id "
    "LEFT JOIN trend_directory.function_materialization AS fm ON fm.materialization_id = m.id "
)

_NAMED_MATERIALIZATION_QUERY = _MATERIALIZATION_QUERY + "WHERE m::text = $1"

_SOURCES_QUERY = (
    "SELECT tsp.name, mtsl.timestamp_mapping_func::regproc::text "
    "FROM trend_directory.materialization_trend_store_link mtsl "
    "JOIN trend_directory.trend_store_part tsp ON tsp.id = mtsl.trend_store_part_id "
    "WHERE mtsl.materialization_id = $1"
)

_FUNCTION_DEF_QUERY = (
    "SELECT lanname, prosrc "
    "FROM pg_proc "
    "JOIN pg_language ON pg_language.oid = prolang "
    "WHERE proname = $1"
)

_VIEW_COLUMNS_QUERY = (
    "SELECT attname, format_type(atttypid, null) "
    "FROM pg_class "
    "JOIN pg_namespace ON pg_class.relnamespace = pg_namespace.oid "
    "JOIN pg_attribute ON pg_attribute.attrelid = pg_class.oid "
    "WHERE relkind = 'v' AND nspname = $1 AND relname = $2 AND attnum >= 0"
)

_FUNCTION_COLUMNS_QUERY = (
    "SELECT unnest(proargnames[2:]), format_type(unnest(proallargtypes[2:]), null) "
    "FROM pg_proc "
    "JOIN pg_namespace ON pg_proc.pronamespace = pg_namespace.oid "
    "WHERE nspname = $1 AND proname = $2"
)

_FAILED_DEF = ("failed getting language", "failed getting sources")

_NEITHER_MESSAGE = (
    "Unexpected configuration where materialization is not a view "
    "and not a function materialization"
)


class LoadTrendMaterializationError(MinervaError):
    """Failure while loading a materialization; ``kind`` tells which step failed."""

    _MESSAGES = {
        "no_such_view": "no such view '{}' could be loaded",
        "parse": "could not parse value from database: {}",
        "sources": "could not load materialization sources: {}",
        "function": "could not load materialization function: {}",
        "configuration": "invalid configuration: {}",
        "unexpected": "unexpected issue loading materialization: {}",
        "not_found": "could not find matching materialization: {}",
    }

    def __init__(self, kind: str, detail: str) -> None:
        if kind not in self._MESSAGES:
            raise ValueError(f"unknown load error kind {kind!r}")
        super().__init__(self._MESSAGES[kind].format(detail))
        self.kind = kind
        self.detail = detail


@dataclass(frozen=True)
class ResultColumn:
    """A named, typed column returned by a view or function."""

    name: str
    data_type: str


def trend_materialization_from_config(path: str | Path) -> TrendMaterialization:
    """Read a materialization definition from a YAML file."""
    path = Path(path)
    try:
        with path.open(encoding="utf-8") as stream:
            text = stream.read()
    except OSError as exc:
        raise MinervaRuntimeError(f"could not open definition file: {exc}") from exc

    try:
        return trend_materialization_from_dict(yaml.safe_load(text))
    except (yaml.YAMLError, ValueError, TypeError) as exc:
        raise MinervaRuntimeError(f"could not deserialize materialization: {exc}") from exc


def load_materializations_from(
    minerva_instance_root: str | Path,
) -> Iterator[TrendMaterialization]:
    """Yield the materializations defined in the instance's materialization directory.

    Definitions that cannot be loaded are reported and skipped.
    """
    for path in sorted(Path(minerva_instance_root).glob("materialization/*.yaml")):
        try:
            yield trend_materialization_from_config(path)
        except MinervaError as exc:
            print(f"Error loading materialization '{path}': {exc}")


def coerce_to_plpgsql(lang: str, src: str) -> tuple[str, str]:
    """Turn a plain SQL function body into PL/pgSQL.

    Citus does not support parameterized queries in plain SQL functions, so
    these are wrapped in a PL/pgSQL body instead.
    """
    if lang == "sql":
        return "plpgsql", map_sql_to_plpgsql(src)
    if lang == "plpgsql":
        return lang, src
    raise MinervaRuntimeError(f"Unexpected language '{lang}'")


async def load_sources(client: Any, materialization_id: int) -> list[TrendMaterializationSource]:
    """Load the source trend store parts linked to a materialization."""
    try:
        rows = await client.query(_SOURCES_QUERY, [materialization_id])
    except Exception as exc:
        raise DatabaseError(f"Error loading trend materializations: {exc}") from exc
    return [
        TrendMaterializationSource(trend_store_part=part, mapping_function=mapping)
        for part, mapping in rows
    ]


async def get_view_def(client: Any, view: str) -> str | None:
    """The definition of ``view``, or None when it cannot be retrieved."""
    try:
        row = await client.query_one(f"SELECT pg_get_viewdef('{view}'::regclass::oid);", [])
    except Exception:
        return None
    return row[0]


async def get_function_def(client: Any, function: str) -> tuple[str, str] | None:
    """Language and source of ``function``, or None when it cannot be retrieved."""
    try:
        row = await client.query_one(_FUNCTION_DEF_QUERY, [function])
    except Exception:
        return None
    return row[0], row[1]


async def get_view_result_columns(
    client: Any, view_schema: str, view_name: str
) -> list[ResultColumn]:
    """The columns returned by a view."""
    try:
        rows = await client.query(_VIEW_COLUMNS_QUERY, [view_schema, view_name])
    except Exception as exc:
        raise MinervaRuntimeError(
            f"could not retrieve result columns for view: {exc}"
        ) from exc
    return [ResultColumn(name, data_type) for name, data_type in rows]


async def get_function_result_columns(
    client: Any, function_schema: str, function_name: str
) -> list[ResultColumn]:
    """The output columns of a function, leaving out its first argument."""
    try:
        rows = await client.query(_FUNCTION_COLUMNS_QUERY, [function_schema, function_name])
    except Exception as exc:
        raise MinervaRuntimeError(
            f"could not retrieve result columns for function: {exc}"
        ) from exc
    return [ResultColumn(name, data_type) for name, data_type in rows]


async def get_function_return_type(
    client: Any, function_schema: str, function_name: str
) -> str:
    """The ``TABLE (...)`` return type of a function."""
    columns = await get_function_result_columns(client, function_schema, function_name)
    columns_part = ",\n".join(
        f'    "{column.name}" {column.data_type}' for column in columns
    )
    return f"TABLE (\n{columns_part}\n)\n"


_Fail = Callable[[str, str, "BaseException | None"], BaseException]


def _generic_failure(kind: str, detail: str, cause: BaseException | None) -> BaseException:
    if cause is not None:
        return cause
    if kind == "no_such_view":
        return MinervaRuntimeError(f"no such view '{detail}' could be loaded")
    return MinervaRuntimeError(detail)


def _load_failure(kind: str, detail: str, cause: BaseException | None) -> BaseException:
    return LoadTrendMaterializationError(kind, detail)


def _reraise(fail: _Fail, kind: str, detail: str, exc: BaseException) -> NoReturn:
    error = fail(kind, detail, exc)
    if error is exc:
        raise exc
    raise error from exc


async def _row_common(
    client: Any, row: Any, fail: _Fail
) -> tuple[int, dict[str, Any], str | None, str | None]:
    (
        materialization_id,
        processing_delay_str,
        stability_delay_str,
        reprocessing_period_str,
        enabled,
        description,
        target,
        src_view,
        src_function,
    ) = row

    fingerprint = await get_function_def(client, fingerprint_function_name(target))
    _, fingerprint_def = fingerprint if fingerprint is not None else _FAILED_DEF

    texts = {
        "processing_delay": processing_delay_str,
        "reprocessing_period": reprocessing_period_str,
        "stability_delay": stability_delay_str,
    }
    delays = {}
    for field_name, text in texts.items():
        try:
            delays[field_name] = parse_interval(text)
        except MinervaRuntimeError as exc:
            message = (
                f"Could not load materialization '{target}' due to failure "
                f"in parsing of {field_name}: {exc}"
            )
            raise fail("parse", message, None) from exc

    common = {
        "target_trend_store_part": target,
        "enabled": enabled,
        "fingerprint_function": fingerprint_def,
        "description": description,
        **delays,
    }
    return materialization_id, common, src_view, src_function


async def _sources(client: Any, materialization_id: int, fail: _Fail) -> list:
    try:
        return await load_sources(client, materialization_id)
    except DatabaseError as exc:
        _reraise(fail, "sources", str(exc), exc)


async def _view_materialization(
    client: Any, materialization_id: int, common: dict[str, Any], view: str, fail: _Fail
) -> TrendViewMaterialization:
    view_def = await get_view_def(client, view)
    if view_def is None:
        raise fail("no_such_view", view, None)
    sources = await _sources(client, materialization_id, fail)
    return TrendViewMaterialization(**common, sources=sources, view=view_def)


async def _function_materialization(
    client: Any, materialization_id: int, common: dict[str, Any], fail: _Fail
) -> TrendFunctionMaterialization:
    target = common["target_trend_store_part"]
    definition = await get_function_def(client, target)
    lang, src = definition if definition is not None else _FAILED_DEF
    try:
        lang, src = coerce_to_plpgsql(lang, src)
    except MinervaRuntimeError as exc:
        _reraise(fail, "function", f"could not load function definition: {exc}", exc)

    return_type = await get_function_return_type(
        client, MATERIALIZATION_FUNCTION_SCHEMA, target
    )
    sources = await _sources(client, materialization_id, fail)
    return TrendFunctionMaterialization(
        **common,
        sources=sources,
        function=TrendMaterializationFunction(return_type=return_type, src=src, language=lang),
    )


async def load_materialization(client: Any, name: str) -> TrendMaterialization:
    """Load the materialization named ``name`` from the database."""
    try:
        rows = await client.query(_NAMED_MATERIALIZATION_QUERY, [name])
    except Exception as exc:
        raise DatabaseError(f"Error loading trend materialization: {exc}") from exc

    if not rows:
        raise ConfigurationError(f"No materialization that matches name '{name}'")

    mid, common, src_view, src_function = await _row_common(client, rows[0], _generic_failure)
    if src_view is not None:
        return await _view_materialization(client, mid, common, src_view, _generic_failure)
    if src_function is not None:
        return await _function_materialization(client, mid, common, _generic_failure)
    raise MinervaRuntimeError(_NEITHER_MESSAGE)


async def load_trend_materialization(client: Any, name: str) -> TrendMaterialization:
    """Load the materialization named ``name``, raising LoadTrendMaterializationError."""
    try:
        rows = await client.query(_NAMED_MATERIALIZATION_QUERY, [name])
    except Exception as exc:
        raise LoadTrendMaterializationError(
            "unexpected", f"Error loading trend materialization: {exc}"
        ) from exc

    if not rows:
        raise LoadTrendMaterializationError(
            "not_found", f"No trend materialization found matching name '{name}'"
        )

    mid, common, src_view, src_function = await _row_common(client, rows[0], _load_failure)
    if src_view is not None:
        return await _view_materialization(client, mid, common, src_view, _load_failure)
    if src_function is not None:
        return await _function_materialization(client, mid, common, _load_failure)
    raise LoadTrendMaterializationError(
        "configuration", "No function or view materialization could be loaded"
    )


async def load_materializations(client: Any) -> list[TrendMaterialization]:
    """Load every materialization defined in the database."""
    try:
        rows = await client.query(_MATERIALIZATION_QUERY, [])
    except Exception as exc:
        raise DatabaseError(f"Error loading trend materializations: {exc}") from exc

    materializations: list[TrendMaterialization] = []
    for row in rows:
        mid, common, src_view, src_function = await _row_common(client, row, _generic_failure)
        if src_view is not None:
            materializations.append(
                await _view_materialization(client, mid, common, src_view, _generic_failure)
            )
        if src_function is not None:
            materializations.append(
                await _function_materialization(client, mid, common, _generic_failure)
            )
    return materializations