"""Removing materializations, maintaining source fingerprints and checking definitions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import DatabaseError, MinervaError, MinervaRuntimeError
from .materialization import (
    MATERIALIZATION_FUNCTION_SCHEMA,
    TrendFunctionMaterialization,
    TrendMaterialization,
    TrendViewMaterialization,
    drop_fingerprint_function,
    drop_materialization_view,
    materialization_view_name,
)
from .materialization_loading import (
    ResultColumn,
    get_function_result_columns,
    get_view_result_columns,
)
from .sql import escape_identifier

_DELETE_QUERY = (
    "DELETE FROM trend_directory.materialization WHERE materialization::text = $1"
)

_SOURCES_QUERY = (
    "SELECT mtsl.timestamp_mapping_func::regproc::text, tsp.name "
    "FROM trend_directory.materialization m "
    "JOIN trend_directory.materialization_trend_store_link mtsl "
    "ON mtsl.materialization_id = m.id "
    "JOIN trend_directory.trend_store_part tsp ON tsp.id = mtsl.trend_store_part_id "
    "WHERE m::text = $1"
)

_TREND_STORE_PART_COLUMNS_QUERY = (
    "SELECT tt.name, tt.data_type "
    "FROM trend_directory.trend_store_part tsp "
    "JOIN trend_directory.table_trend tt ON tt.trend_store_part_id = tsp.id "
    "WHERE tsp.name = $1"
)

_IMPLICIT_COLUMNS = frozenset({"entity_id", "timestamp"})


async def remove_trend_materialization(client: Any, name: str) -> None:
    """Delete the materialization record with its view and fingerprint function."""
    try:
        deleted = await client.execute(_DELETE_QUERY, [name])
    except Exception as exc:
        raise DatabaseError(f"Error deleting materialization: {exc}") from exc

    if deleted == 0:
        raise MinervaRuntimeError("No materializations deleted")
    if deleted != 1:
        raise MinervaRuntimeError(f"More than 1 materialization deleted ({deleted})")

    try:
        await drop_materialization_view(client, name)
    except MinervaError as exc:
        raise MinervaRuntimeError(
            f"error while trying to remove materialization view: {exc}"
        ) from exc
    try:
        await drop_fingerprint_function(client, name)
    except MinervaError as exc:
        raise MinervaRuntimeError(
            f"error while trying to remove fingerprint function: {exc}"
        ) from exc


@dataclass
class RemoveTrendMaterialization:
    """Change that removes a trend materialization."""

    name: str

    def __str__(self) -> str:
        return f"RemoveTrendMaterialization({self.name})"

    async def apply(self, client: Any) -> str:
        try:
            await remove_trend_materialization(client, self.name)
        except MinervaError as exc:
            raise MinervaRuntimeError(
                f"Error removing trend materialization '{self.name}': {exc}"
            ) from exc
        return f"Removed trend materialization '{self.name}'"


class PopulateSourceFingerprintError(MinervaError):
    """Failure while populating source fingerprints; ``kind`` tells which step failed."""

    SOURCES_LOADING = "sources_loading"
    NO_SOURCES = "no_sources"
    FINGERPRINT_UPDATING = "fingerprint_updating"

    def __init__(self, kind: str, cause: BaseException | None = None) -> None:
        if kind == self.SOURCES_LOADING:
            message = f"Could not load materialization sources: {cause}"
        elif kind == self.NO_SOURCES:
            message = "No sources found for materialization"
        elif kind == self.FINGERPRINT_UPDATING:
            message = f"Could not update fingerprints: {cause}"
        else:
            raise ValueError(f"unknown populate error kind {kind!r}")
        super().__init__(message)
        self.kind = kind
        self.cause = cause


async def populate_source_fingerprint(client: Any, materialization: str) -> None:
    """Record source fingerprints for every timestamp present in all sources."""
    try:
        rows = await client.query(_SOURCES_QUERY, [materialization])
    except Exception as exc:
        raise PopulateSourceFingerprintError(
            PopulateSourceFingerprintError.SOURCES_LOADING, exc
        ) from exc

    sources = [(row[0], row[1]) for row in rows]
    if not sources:
        raise PopulateSourceFingerprintError(PopulateSourceFingerprintError.NO_SOURCES)

    ctes: list[str] = []
    query_parts: list[str] = []
    for index, (mapping_func, source_name) in enumerate(sources, start=1):
        cte_name = f"source_{index}"
        source_query = (
            f"select {mapping_func}(timestamp) AS timestamp "
            f"from trend.{escape_identifier(source_name)} group by timestamp"
        )
        ctes.append(f"{cte_name} AS ({source_query})")
        if index == 1:
            query_parts.append(
                "SELECT trend_directory.update_source_fingerprint(m.id, source_1.timestamp) "
                "FROM source_1"
            )
        else:
            query_parts.append(
                f"JOIN {cte_name} ON source_1.timestamp = {cte_name}.timestamp"
            )

    query = (
        f"WITH {','.join(ctes)} {' '.join(query_parts)}, "
        "trend_directory.materialization m WHERE m::text = $1"
    )

    try:
        await client.execute(query, [materialization])
    except Exception as exc:
        raise PopulateSourceFingerprintError(
            PopulateSourceFingerprintError.FINGERPRINT_UPDATING, exc
        ) from exc


async def reset_source_fingerprint(client: Any, materialization: str) -> None:
    """Recompute the stored source fingerprints of a materialization."""
    query = (
        "UPDATE trend_directory.materialization_state nms "
        f'SET source_fingerprint = (trend."{materialization}_fingerprint"(ms.timestamp)).body '
        "FROM trend_directory.materialization_state ms "
        "JOIN trend_directory.materialization m ON ms.materialization_id = m.id "
        "WHERE m::text = $1 AND nms.materialization_id = m.id "
        "AND nms.timestamp = ms.timestamp"
    )
    try:
        await client.execute(query, [materialization])
    except Exception as exc:
        raise MinervaRuntimeError(f"Error loading trend materializations: {exc}") from exc


@dataclass(frozen=True)
class TrendStorePartColumn:
    """A trend column of a trend store part."""

    name: str
    data_type: str


async def get_trend_store_part_columns(
    client: Any, trend_store_part_name: str
) -> list[TrendStorePartColumn]:
    """The trend columns defined for a trend store part."""
    try:
        rows = await client.query(_TREND_STORE_PART_COLUMNS_QUERY, [trend_store_part_name])
    except Exception as exc:
        raise MinervaRuntimeError(
            f"could not retrieve columns for trend store part: {exc}"
        ) from exc
    return [TrendStorePartColumn(name, data_type) for name, data_type in rows]


async def _compare_columns(
    client: Any,
    result_columns: list[ResultColumn],
    target: str,
    origin: str,
) -> list[str]:
    result_columns = [c for c in result_columns if c.name not in _IMPLICIT_COLUMNS]
    result_types = {c.name: c.data_type for c in result_columns}

    trend_columns = await get_trend_store_part_columns(client, target)
    trend_types = {c.name: c.data_type for c in trend_columns}

    report: list[str] = []
    for column in result_columns:
        trend_data_type = trend_types.get(column.name)
        if trend_data_type is None:
            report.append(
                f"Column '{column.name}'({column.data_type}) is returned from {origin} "
                "but has no matching trend"
            )
        elif trend_data_type != column.data_type:
            report.append(
                f"Column '{column.name}'({column.data_type}) returned from {origin} "
                f"differs in type: '{column.data_type}' != '{trend_data_type}' "
            )

    for column in trend_columns:
        if column.name not in result_types:
            report.append(
                f"Column '{column.name}'({column.data_type}) is defined as trend in "
                f"trend store part '{target}' but is not returned from {origin}"
            )
    return report


async def check_view_materialization(
    client: Any, view_materialization: TrendViewMaterialization
) -> list[str]:
    """Report mismatches between the view's columns and the target trends."""
    target = view_materialization.target_trend_store_part
    columns = await get_view_result_columns(
        client, MATERIALIZATION_FUNCTION_SCHEMA, materialization_view_name(target)
    )
    return await _compare_columns(client, columns, target, "view")


async def check_function_materialization(
    client: Any, function_materialization: TrendFunctionMaterialization
) -> list[str]:
    """Report mismatches between the function's columns and the target trends."""
    target = function_materialization.target_trend_store_part
    columns = await get_function_result_columns(
        client, MATERIALIZATION_FUNCTION_SCHEMA, target
    )
    return await _compare_columns(client, columns, target, "function")


async def check_trend_materialization(
    client: Any, trend_materialization: TrendMaterialization
) -> list[str]:
    """Report mismatches for a view or function materialization."""
    if isinstance(trend_materialization, TrendViewMaterialization):
        return await check_view_materialization(client, trend_materialization)
    if isinstance(trend_materialization, TrendFunctionMaterialization):
        return await check_function_materialization(client, trend_materialization)
    raise TypeError(f"unsupported materialization type: {type(trend_materialization).__name__}")