"""Relation definitions between entities and their materialization."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError, DatabaseError, MinervaError, MinervaRuntimeError
from .sql import escape_identifier


@dataclass
class Relation:
    """A named relation defined by a query yielding source_id/target_id pairs."""

    name: str
    query: str

    def __str__(self) -> str:
        return f"Relation({self.name})"


def _relation_from_dict(data: Any) -> Relation:
    if not isinstance(data, Mapping):
        raise ValueError("relation definition must be a mapping")
    values = {}
    for key in ("name", "query"):
        value = data.get(key)
        if not isinstance(value, str):
            raise ValueError(f"missing or invalid field '{key}' in relation")
        values[key] = value
    return Relation(**values)


def load_relation_from_file(path: str | Path) -> Relation:
    """Read a relation definition from a YAML or JSON file."""
    path = Path(path)
    try:
        with path.open(encoding="utf-8") as stream:
            text = stream.read()
    except OSError as exc:
        raise ConfigurationError(
            f"Could not open relation definition file '{path}': {exc}"
        ) from exc

    extension = path.suffix[1:]
    if extension == "yaml":
        parse = yaml.safe_load
        parse_errors: tuple[type[Exception], ...] = (yaml.YAMLError, ValueError)
    elif extension == "json":
        parse = json.loads
        parse_errors = (ValueError,)
    else:
        raise ConfigurationError(
            f"Unsupported relation definition format '{extension}'"
        )

    try:
        return _relation_from_dict(parse(text))
    except parse_errors as exc:
        raise MinervaRuntimeError(
            f"Could not read relation definition from file '{path}': {exc}"
        ) from exc


async def _run(client: Any, query: str, error_prefix: str) -> None:
    try:
        await client.query(query, [])
    except Exception as exc:
        raise DatabaseError(f"{error_prefix}: {exc}") from exc


@dataclass
class AddRelation:
    """Change that creates the table, view and registration of a relation."""

    relation: Relation

    def __str__(self) -> str:
        return f"AddRelation({self.relation})"

    async def apply(self, client: Any) -> str:
        name = self.relation.name
        await _run(
            client,
            f'CREATE TABLE relation."{name}"(source_id integer, target_id integer)',
            "Error creating relation table",
        )
        await _run(
            client,
            f'CREATE VIEW relation_def."{name}" AS {self.relation.query}',
            "Error creating relation view",
        )
        await _run(
            client,
            f'CREATE UNIQUE INDEX ON relation."{name}"(source_id, target_id)',
            "Error creating index on relation table",
        )
        await _run(
            client,
            f'CREATE INDEX ON relation."{name}"(target_id)',
            "Error creating index on relation table",
        )
        # Make the table available on each of the Citus nodes.
        await _run(
            client,
            f"SELECT create_reference_table('relation.\"{name}\"')",
            "Error converting relation table to reference table",
        )
        try:
            await client.query_one("SELECT relation_directory.register_type($1)", [name])
        except Exception as exc:
            raise DatabaseError(f"Error registering relation: {exc}") from exc

        return f"Added relation {self.relation}"


@dataclass
class UpdateRelation:
    """Change that replaces the defining view of a relation."""

    relation: Relation

    def __str__(self) -> str:
        return f"UpdateRelation({self.relation})"

    async def apply(self, client: Any) -> str:
        await _run(
            client,
            f'CREATE OR REPLACE VIEW relation_def."{self.relation.name}" AS {self.relation.query}',
            "Error updating relation view",
        )
        return f"Updated relation {self.relation}"


class MaterializeRelationError(MinervaError):
    """Failure while refreshing a relation table; ``stage`` is 'delete' or 'insert'."""

    _MESSAGES = {
        "delete": "Could not delete current relations",
        "insert": "Could not insert new relations",
    }

    def __init__(self, stage: str, source: BaseException) -> None:
        if stage not in self._MESSAGES:
            raise ValueError(f"unknown materialization stage {stage!r}")
        super().__init__(f"{self._MESSAGES[stage]}: {source}")
        self.stage = stage
        self.source = source


@dataclass(frozen=True)
class MaterializeRelationResult:
    """Number of relation rows removed and inserted by a refresh."""

    deleted_count: int
    inserted_count: int


async def materialize_relation(client: Any, name: str) -> MaterializeRelationResult:
    """Replace the contents of a relation table with the rows of its view."""
    identifier = escape_identifier(name)

    try:
        deleted_count = await client.execute(f"DELETE FROM relation.{identifier}", [])
    except Exception as exc:
        raise MaterializeRelationError("delete", exc) from exc

    insert_query = (
        f"INSERT INTO relation.{identifier}(source_id, target_id) "
        f"SELECT source_id, target_id FROM relation_def.{identifier}"
    )
    try:
        inserted_count = await client.execute(insert_query, [])
    except Exception as exc:
        raise MaterializeRelationError("insert", exc) from exc

    return MaterializeRelationResult(deleted_count, inserted_count)