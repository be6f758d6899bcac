"""Trend materializations: definitions, their database objects and changes."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import yaml

from .errors import DatabaseError, MinervaError, MinervaRuntimeError
from .interval import format_duration, parse_duration
from .sql import escape_identifier

MATERIALIZATION_FUNCTION_SCHEMA = "trend"

# The default description is the JSON string "{}", not an empty object.
_DEFAULT_DESCRIPTION = "{}"

_DEFINE_VIEW_QUERY = (
    "SELECT trend_directory.define_view_materialization("
    "id, $1::text::interval, $2::text::interval, $3::text::interval, "
    "$4::text::regclass, $5::jsonb"
    ") "
    "FROM trend_directory.trend_store_part WHERE name = $6"
)

_DEFINE_FUNCTION_QUERY = (
    "SELECT trend_directory.define_function_materialization("
    "id, $1::text::interval, $2::text::interval, $3::text::interval, "
    "$4::text::regprocedure, $5::jsonb"
    ") "
    "FROM trend_directory.trend_store_part WHERE name = $6"
)

_INIT_VIEW_QUERY = (
    "INSERT INTO trend_directory.view_materialization(materialization_id, src_view) "
    "SELECT m.id, $2::text::regclass "
    "FROM trend_directory.materialization m "
    "JOIN trend_directory.trend_store_part dstp "
    "ON m.dst_trend_store_part_id = dstp.id "
    "WHERE dstp.name = $1"
)

_INIT_FUNCTION_QUERY = (
    "INSERT INTO trend_directory.function_materialization(materialization_id, src_function) "
    "SELECT m.id, $2::text::regproc "
    "FROM trend_directory.materialization m "
    "JOIN trend_directory.trend_store_part dstp "
    "ON m.dst_trend_store_part_id = dstp.id "
    "WHERE dstp.name = $1"
)

_ENABLE_QUERY = (
    "UPDATE trend_directory.materialization AS m "
    "SET enabled = true "
    "FROM trend_directory.trend_store_part AS dtsp "
    "WHERE m.dst_trend_store_part_id = dtsp.id "
    "AND dtsp.name = $1"
)

_DROP_SOURCES_QUERY = (
    "DELETE FROM trend_directory.materialization_trend_store_link tsl "
    "USING trend_directory.materialization m "
    "JOIN trend_directory.trend_store_part dstp "
    "ON m.dst_trend_store_part_id = dstp.id "
    "WHERE tsl.materialization_id = m.id AND dstp.name = $1"
)

_TEARDOWN_VIEW_QUERY = (
    "DELETE FROM trend_directory.view_materialization vm "
    "USING trend_directory.materialization m "
    "JOIN trend_directory.trend_store_part dstp "
    "ON m.dst_trend_store_part_id = dstp.id "
    "WHERE m.id = vm.materialization_id AND dstp.name = $1"
)

_TEARDOWN_FUNCTION_QUERY = (
    "DELETE FROM trend_directory.function_materialization fm "
    "USING trend_directory.materialization m "
    "JOIN trend_directory.trend_store_part dstp "
    "ON m.dst_trend_store_part_id = dstp.id "
    "WHERE m.id = fm.materialization_id AND dstp.name = $1"
)

_DELETE_MATERIALIZATION_QUERY = (
    "DELETE FROM trend_directory.materialization WHERE materialization::text = $1"
)

_CONNECT_SOURCE_QUERY = (
    "INSERT INTO trend_directory.materialization_trend_store_link"
    "(materialization_id, trend_store_part_id, timestamp_mapping_func) "
    "SELECT m.id, $3, $1::regprocedure "
    "FROM trend_directory.materialization m JOIN trend_directory.trend_store_part dstp "
    "ON m.dst_trend_store_part_id = dstp.id "
    "WHERE dstp.name = $2"
)

_TREND_STORE_PART_ID_QUERY = "SELECT id FROM trend_directory.trend_store_part WHERE name = $1"


async def _db(coro: Any, message: str) -> Any:
    try:
        return await coro
    except Exception as exc:
        raise DatabaseError(f"{message}: {exc}") from exc


def _json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _description_json(description: Any) -> str:
    return _json_text(_DEFAULT_DESCRIPTION if description is None else description)


def materialization_view_name(materialization_name: str) -> str:
    """Name of the view that holds the query of a view materialization."""
    return f"_{materialization_name}"


def fingerprint_function_name(materialization_name: str) -> str:
    """Name of the fingerprint function of a materialization."""
    return f"{materialization_name}_fingerprint"


def map_sql_to_plpgsql(src: str) -> str:
    """Wrap a plain SQL query in a PL/pgSQL body returning its rows."""
    return (
        "BEGIN\n"
        "RETURN QUERY EXECUTE $query$\n"
        f"{src}"
        "$query$ USING $1;\n"
        "END;\n"
    )


@dataclass
class TrendMaterializationSource:
    """A source trend store part with its timestamp mapping function."""

    trend_store_part: str
    mapping_function: str


@dataclass
class TrendMaterializationFunction:
    """The function computing the data of a function materialization."""

    return_type: str
    src: str
    language: str


@dataclass
class TrendMaterialization(ABC):
    """Common part of view and function materializations."""

    target_trend_store_part: str
    enabled: bool
    processing_delay: timedelta
    stability_delay: timedelta
    reprocessing_period: timedelta
    sources: list[TrendMaterializationSource]
    fingerprint_function: str

    def name(self) -> str:
        """Name of the materialization: that of its target trend store part."""
        return self.target_trend_store_part

    def dump(self) -> str:
        """Render the definition as YAML."""
        try:
            return yaml.safe_dump(self._to_dict(), sort_keys=False)
        except yaml.YAMLError as exc:
            raise MinervaRuntimeError(
                f"Could not dump {self._kind} materialization: {exc}"
            ) from exc

    async def drop_sources(self, client: Any) -> None:
        """Remove the links to the source trend store parts."""
        await _db(
            client.execute(_DROP_SOURCES_QUERY, [self.name()]),
            "Error removing materialization_trend_store_link records",
        )

    async def teardown(self, client: Any) -> None:
        """Remove implementation details while keeping the materialization record.

        Both view and function implementations are removed, so this can be used
        to switch between the two.
        """
        await _db(
            client.execute(_TEARDOWN_VIEW_QUERY, [self.name()]),
            "Error removing view_materialization record",
        )
        await _db(
            client.execute(_TEARDOWN_FUNCTION_QUERY, [self.name()]),
            "Error removing function_materialization record",
        )
        await self.drop_sources(client)

        function_name = fingerprint_function_name(self.name())
        await _db(
            client.execute(
                f"DROP FUNCTION IF EXISTS trend.{escape_identifier(function_name)}"
                "(timestamp with time zone)",
                [],
            ),
            f"Error dropping fingerprint function '{function_name}'",
        )

    async def update(self, client: Any) -> None:
        """Tear down and rebuild the implementation of the materialization."""
        await self.teardown(client)
        await self._rebuild(client)

    async def update_attributes(self, client: Any) -> None:
        """Store delays, period, enabled flag and description."""
        query = (
            "UPDATE trend_directory.materialization "
            "SET processing_delay = $1::text::interval, "
            "stability_delay = $2::text::interval, "
            "reprocessing_period = $3::text::interval, "
            "enabled = $4, "
            f"description = '{_description_json(self.description)}'::jsonb "
            "WHERE materialization::text = $5"
        )
        await _db(
            client.execute(
                query,
                [
                    format_duration(self.processing_delay),
                    format_duration(self.stability_delay),
                    format_duration(self.reprocessing_period),
                    self.enabled,
                    self.target_trend_store_part,
                ],
            ),
            "Error updating view materialization attributes",
        )

    async def connect_sources(self, client: Any) -> None:
        """Link the source trend store parts to this materialization."""
        await connect_materialization_sources(
            client, self.target_trend_store_part, self.sources
        )

    async def _define(self, client: Any, query: str, source_ident: str, message: str) -> None:
        await _db(
            client.query(
                query,
                [
                    format_duration(self.processing_delay),
                    format_duration(self.stability_delay),
                    format_duration(self.reprocessing_period),
                    source_ident,
                    _description_json(self.description),
                    self.target_trend_store_part,
                ],
            ),
            message,
        )

    def _common_dict(self) -> dict[str, Any]:
        return {
            "target_trend_store_part": self.target_trend_store_part,
            "enabled": self.enabled,
            "processing_delay": format_duration(self.processing_delay),
            "stability_delay": format_duration(self.stability_delay),
            "reprocessing_period": format_duration(self.reprocessing_period),
            "sources": [
                {
                    "trend_store_part": source.trend_store_part,
                    "mapping_function": source.mapping_function,
                }
                for source in self.sources
            ],
        }

    _kind = "trend"
    description: Any = None

    @abstractmethod
    def _to_dict(self) -> dict[str, Any]:
        """Definition as plain data."""

    @abstractmethod
    async def _rebuild(self, client: Any) -> None:
        """Recreate the implementation after a teardown."""

    @abstractmethod
    async def create(self, client: Any) -> None:
        """Create the materialization and all its database objects."""

    @abstractmethod
    async def delete(self, client: Any) -> None:
        """Remove the database objects of the materialization."""

    @abstractmethod
    def diff(self, other: TrendMaterialization) -> list[Any]:
        """Changes needed to bring this materialization in line with ``other``."""


@dataclass
class TrendViewMaterialization(TrendMaterialization):
    """A materialization whose data is defined by a view."""

    view: str = ""
    description: Any = None

    _kind = "view"

    def __str__(self) -> str:
        return f"TrendViewMaterialization('{self.target_trend_store_part}')"

    def _view_ident(self) -> str:
        return "trend." + escape_identifier(
            materialization_view_name(self.target_trend_store_part)
        )

    def _to_dict(self) -> dict[str, Any]:
        data = self._common_dict()
        data["view"] = self.view
        data["fingerprint_function"] = self.fingerprint_function
        data["description"] = self.description
        return data

    async def create_view(self, client: Any) -> None:
        """Create the view holding the materialization query."""
        await _db(
            client.execute(f"CREATE VIEW {self._view_ident()} AS {self.view}", []),
            "Error creating view",
        )

    async def init_view_materialization(self, client: Any) -> None:
        """Register the view as the source of the materialization."""
        await _db(
            client.execute(
                _INIT_VIEW_QUERY, [self.target_trend_store_part, self._view_ident()]
            ),
            "Error initializing view materialization",
        )

    async def create(self, client: Any) -> None:
        await self.create_view(client)
        await self._define(
            client,
            _DEFINE_VIEW_QUERY,
            self._view_ident(),
            "Error defining view materialization",
        )
        await self.connect_sources(client)
        await create_fingerprint_function(
            client, self.target_trend_store_part, self.fingerprint_function
        )

    async def _rebuild(self, client: Any) -> None:
        await self.create_view(client)
        await self.init_view_materialization(client)
        await create_fingerprint_function(
            client, self.target_trend_store_part, self.fingerprint_function
        )
        await self.connect_sources(client)
        await self.update_attributes(client)

    async def delete(self, client: Any) -> None:
        await drop_materialization_view(client, self.target_trend_store_part)
        await drop_fingerprint_function(client, self.target_trend_store_part)

    def diff(self, other: TrendMaterialization) -> list[Any]:
        if not isinstance(other, TrendViewMaterialization):
            raise TypeError("Incompatible materialization types")
        # The view text is not compared: PostgreSQL rewrites the SQL it stores.
        if (
            self.enabled != other.enabled
            or self.processing_delay != other.processing_delay
            or self.stability_delay != other.stability_delay
            or self.reprocessing_period != other.reprocessing_period
        ):
            return [UpdateTrendViewMaterializationAttributes(other)]
        return []


@dataclass
class TrendFunctionMaterialization(TrendMaterialization):
    """A materialization whose data is computed by a function."""

    function: TrendMaterializationFunction | None = None
    description: Any = None

    _kind = "function"

    def __post_init__(self) -> None:
        if self.function is None:
            raise ValueError("a function materialization needs a function")

    def __str__(self) -> str:
        return f"TrendFunctionMaterialization('{self.target_trend_store_part}')"

    def _function_ident(self) -> str:
        return "trend." + escape_identifier(self.target_trend_store_part)

    def _to_dict(self) -> dict[str, Any]:
        data = self._common_dict()
        data["function"] = {
            "return_type": self.function.return_type,
            "src": self.function.src,
            "language": self.function.language,
        }
        data["fingerprint_function"] = self.fingerprint_function
        if self.description is not None:
            data["description"] = self.description
        return data

    async def create_function(self, client: Any) -> None:
        """Create the function computing the materialization data."""
        query = (
            f"CREATE FUNCTION {self._function_ident()}(timestamp with time zone) "
            f"RETURNS {self.function.return_type} AS $function$\n"
            f"{self.function.src}\n"
            f"$function$ LANGUAGE {self.function.language}"
        )
        await _db(client.execute(query, []), "Error creating function")

    async def init_function_materialization(self, client: Any) -> None:
        """Register the function as the source of the materialization."""
        await _db(
            client.execute(
                _INIT_FUNCTION_QUERY,
                [self.target_trend_store_part, self._function_ident()],
            ),
            "Error initializing function materialization",
        )

    async def _enable(self, client: Any) -> None:
        await _db(
            client.query(_ENABLE_QUERY, [self.target_trend_store_part]),
            "Unable to enable materialization",
        )

    async def _drop_own_sources(self, client: Any) -> None:
        query = (
            "DELETE FROM trend_directory.materialization_trend_store_link tsl "
            "USING trend_directory.materialization m JOIN trend_directory.trend_store_part dstp "
            "ON m.dst_trend_store_part_id = dstp.id "
            f"WHERE dstp.name = '{self.target_trend_store_part}' "
            "AND tsl.materialization_id = m.id"
        )
        await _db(client.query(query, []), "Error removing old sources")

    async def _drop_materialization(self, client: Any) -> None:
        await _db(
            client.execute(_DELETE_MATERIALIZATION_QUERY, [self.target_trend_store_part]),
            "Error deleting view materialization",
        )

    async def create(self, client: Any) -> None:
        await self.create_function(client)
        await create_fingerprint_function(
            client, self.target_trend_store_part, self.fingerprint_function
        )
        await self._define(
            client,
            _DEFINE_FUNCTION_QUERY,
            f"{self._function_ident()}(timestamp with time zone)",
            "Error defining function materialization",
        )
        if self.enabled:
            await self._enable(client)
        await self.connect_sources(client)

    async def _rebuild(self, client: Any) -> None:
        await self.create_function(client)
        await self.init_function_materialization(client)
        await create_fingerprint_function(
            client, self.target_trend_store_part, self.fingerprint_function
        )
        await self.connect_sources(client)
        await self.update_attributes(client)

    async def delete(self, client: Any) -> None:
        await self._drop_own_sources(client)
        await self._drop_materialization(client)
        await drop_fingerprint_function(client, self.target_trend_store_part)

    def diff(self, other: TrendMaterialization) -> list[Any]:
        if not isinstance(other, TrendFunctionMaterialization):
            raise TypeError("Incompatible materialization types")
        return []


def _require(data: Mapping[str, Any], key: str, kind: type, owner: str) -> Any:
    value = data.get(key)
    if not isinstance(value, kind):
        raise ValueError(f"missing or invalid field '{key}' in {owner}")
    return value


def _duration(data: Mapping[str, Any], key: str) -> timedelta:
    text = _require(data, key, str, "materialization")
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise ValueError(f"invalid duration in field '{key}': {exc}") from exc


def _source_from_dict(data: Any) -> TrendMaterializationSource:
    if not isinstance(data, Mapping):
        raise ValueError("materialization source must be a mapping")
    return TrendMaterializationSource(
        trend_store_part=_require(data, "trend_store_part", str, "source"),
        mapping_function=_require(data, "mapping_function", str, "source"),
    )


def _common_from_dict(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "target_trend_store_part": _require(
            data, "target_trend_store_part", str, "materialization"
        ),
        "enabled": _require(data, "enabled", bool, "materialization"),
        "processing_delay": _duration(data, "processing_delay"),
        "stability_delay": _duration(data, "stability_delay"),
        "reprocessing_period": _duration(data, "reprocessing_period"),
        "sources": [
            _source_from_dict(item)
            for item in _require(data, "sources", list, "materialization")
        ],
        "fingerprint_function": _require(
            data, "fingerprint_function", str, "materialization"
        ),
        "description": data.get("description"),
    }


def trend_materialization_from_dict(data: Any) -> TrendMaterialization:
    """Build a view or function materialization from a parsed definition.

    A definition is taken as a view materialization when it fits one, and as a
    function materialization otherwise. Raises ValueError when neither fits.
    """
    if not isinstance(data, Mapping):
        raise ValueError("materialization definition must be a mapping")

    try:
        return TrendViewMaterialization(
            **_common_from_dict(data), view=_require(data, "view", str, "materialization")
        )
    except ValueError as view_error:
        function_data = data.get("function")
        if not isinstance(function_data, Mapping):
            raise ValueError(
                "definition matches neither a view nor a function materialization: "
                f"{view_error}"
            ) from view_error
        function = TrendMaterializationFunction(
            return_type=_require(function_data, "return_type", str, "function"),
            src=_require(function_data, "src", str, "function"),
            language=_require(function_data, "language", str, "function"),
        )
        return TrendFunctionMaterialization(**_common_from_dict(data), function=function)


async def drop_materialization_view(client: Any, materialization_name: str) -> None:
    """Drop the view of a materialization if it exists."""
    ident = escape_identifier(materialization_view_name(materialization_name))
    await _db(client.execute(f"DROP VIEW IF EXISTS trend.{ident}", []), "Error dropping view")


async def create_fingerprint_function(
    client: Any, materialization_name: str, function_body: str
) -> None:
    """Create the fingerprint function of a materialization."""
    ident = escape_identifier(fingerprint_function_name(materialization_name))
    query = (
        f"CREATE FUNCTION trend.{ident}(timestamp with time zone) "
        "RETURNS trend_directory.fingerprint AS $$\n"
        f"{function_body}\n"
        "$$ LANGUAGE sql STABLE\n"
    )
    await _db(client.query(query, []), "Error creating fingerprint function")


async def drop_fingerprint_function(client: Any, materialization_name: str) -> None:
    """Drop the fingerprint function of a materialization if it exists."""
    ident = escape_identifier(fingerprint_function_name(materialization_name))
    await _db(
        client.query(
            f"DROP FUNCTION IF EXISTS trend.{ident}(timestamp with time zone)", []
        ),
        "Error dropping fingerprint function",
    )


async def _trend_store_part_id(client: Any, name: str) -> int:
    try:
        rows = await client.query(_TREND_STORE_PART_ID_QUERY, [name])
    except Exception as exc:
        raise DatabaseError(str(exc)) from exc
    if not rows:
        raise DatabaseError(f"Materialization source '{name}' does not exist")
    return rows[0][0]


async def connect_materialization_sources(
    client: Any,
    target_trend_store_part_name: str,
    sources: list[TrendMaterializationSource],
) -> None:
    """Link each source trend store part to the target materialization."""
    for source in sources:
        part_id = await _trend_store_part_id(client, source.trend_store_part)
        mapping_function = f"{source.mapping_function}(timestamptz)"
        insert_count = await _db(
            client.execute(
                _CONNECT_SOURCE_QUERY,
                [mapping_function, target_trend_store_part_name, part_id],
            ),
            "Error connecting sources",
        )
        if insert_count == 0:
            raise MinervaRuntimeError(
                f"Unexpectedly no link was created for source '{source.trend_store_part}'"
            )


@dataclass
class UpdateTrendViewMaterializationAttributes:
    """Change that stores new attributes of a view materialization."""

    trend_view_materialization: TrendViewMaterialization

    def __str__(self) -> str:
        return (
            "UpdateTrendViewMaterializationAttributes("
            f"{self.trend_view_materialization.target_trend_store_part})"
        )

    async def apply(self, client: Any) -> str:
        await self.trend_view_materialization.update_attributes(client)
        return "Updated attributes of view materialization"


@dataclass
class UpdateView:
    """Change that replaces the view of a view materialization."""

    trend_view_materialization: TrendViewMaterialization

    def __str__(self) -> str:
        name = self.trend_view_materialization.target_trend_store_part
        return f"UpdateView({name}, {materialization_view_name(name)})"

    async def apply(self, client: Any) -> str:
        name = self.trend_view_materialization.target_trend_store_part
        await drop_materialization_view(client, name)
        await self.trend_view_materialization.create_view(client)
        return f"Updated view {materialization_view_name(name)}"


@dataclass
class AddTrendMaterialization:
    """Change that creates a trend materialization."""

    trend_materialization: TrendMaterialization

    def __str__(self) -> str:
        return f"AddTrendMaterialization({self.trend_materialization})"

    async def apply(self, client: Any) -> str:
        try:
            await self.trend_materialization.create(client)
        except MinervaError as exc:
            raise MinervaRuntimeError(
                f"Error adding trend materialization '{self.trend_materialization}': {exc}"
            ) from exc
        return f"Added trend materialization '{self.trend_materialization}'"


@dataclass
class UpdateTrendMaterialization:
    """Change that rebuilds a trend materialization."""

    trend_materialization: TrendMaterialization

    def __str__(self) -> str:
        return f"UpdateTrendMaterialization({self.trend_materialization})"

    async def apply(self, client: Any) -> str:
        try:
            await self.trend_materialization.update(client)
        except MinervaError as exc:
            raise MinervaRuntimeError(
                f"Error updating trend materialization '{self.trend_materialization}': {exc}"
            ) from exc
        return f"Updated trend materialization '{self.trend_materialization}'"