"""Entity sets: named, owned collections of entities of one entity type."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .errors import DatabaseError, DatabaseErrorKind, MinervaError, MinervaRuntimeError

logger = logging.getLogger(__name__)

_LOAD_ALL_QUERY = (
    'SELECT name, "group", source_entity_type, owner, description, '
    "entity_id, first_appearance, modified "
    "FROM attribute.minerva_entity_set es"
)

_LOAD_ONE_QUERY = (
    'SELECT name, "group", source_entity_type, owner, description, '
    "first_appearance, modified, entity_id "
    "FROM attribute.minerva_entity_set es "
    "WHERE es.entity_id = $1"
)

_MEMBERS_QUERY = "SELECT relation_directory.get_entity_set_members($1)"

_CURRENT_QUERY = (
    "SELECT source_entity_type, owner, description "
    "FROM attribute.minerva_entity_set WHERE entity_id = $1"
)

_TRANSFER_STAGED_QUERY = (
    "SELECT attribute_directory.transfer_staged(at) "
    "FROM attribute_directory.attribute_store at WHERE at::text = 'minerva_entity_set'"
)

_MATERIALIZE_QUERY = (
    "SELECT attribute_directory.materialize_curr_ptr(at) "
    "FROM attribute_directory.attribute_store at WHERE at::text = 'minerva_entity_set'"
)

_UPDATE_HISTORY_QUERY = (
    "WITH data AS (SELECT max(id) AS lastid FROM attribute_history.minerva_entity_set "
    "WHERE entity_id = $1) "
    "UPDATE attribute_history.minerva_entity_set "
    'SET name = $2, fullname = $3, "group" = $4, owner = $5, description = $6 '
    "FROM data WHERE id = lastid"
)

_RELOAD_QUERY = (
    'SELECT name, "group", source_entity_type, owner, description, first_appearance, modified '
    "FROM attribute.minerva_entity_set es WHERE entity_id = $1"
)

_EXISTS_QUERY = "SELECT relation_directory.entity_set_exists($1, $2)"

_ENTITY_TYPE_QUERY = "SELECT name FROM directory.entity_type WHERE NAME = $1"

_CREATED_QUERY = (
    "SELECT entity_id, first_appearance, modified "
    "FROM attribute.minerva_entity_set es WHERE name = $1 AND owner = $2"
)


class EntitySetError(MinervaError):
    """Base class of failures specific to entity set operations."""


class EntitySetNotFound(EntitySetError):
    """The entity set to change does not exist."""


class ExistingEntitySet(EntitySetError):
    """An entity set with the same name and owner already exists."""

    def __init__(self, name: str, owner: str) -> None:
        super().__init__(f"An entity set with name {name} and owner {owner} already exists.")
        self.name = name
        self.owner = owner


class EmptyEntitySet(EntitySetError):
    """An entity set must hold at least one entity."""

    def __init__(self) -> None:
        super().__init__("Entity sets cannot be empty")


class MissingEntities(EntitySetError):
    """Some of the entities named for the set do not exist."""

    def __init__(self, entities: list[str]) -> None:
        super().__init__(f"The following entities do not exist: {', '.join(entities)}")
        self.entities = list(entities)


class UnchangeableFields(EntitySetError):
    """An attempt was made to change fields that are fixed after creation."""

    def __init__(self, fields: list[str]) -> None:
        super().__init__(f"Fields cannot be changed: {', '.join(fields)}")
        self.fields = list(fields)


class IncorrectEntityType(EntitySetError):
    """The entity type of the set does not exist."""

    def __init__(self, entity_type: str) -> None:
        super().__init__(f"Entity type '{entity_type}' does not exist")
        self.entity_type = entity_type


def _entities_array(entities: list[str]) -> str:
    return "ARRAY['" + "', '".join(entities) + "']"


async def _db_call(coro: Any) -> Any:
    try:
        return await coro
    except Exception as exc:
        raise DatabaseError(str(exc)) from exc


@dataclass
class EntitySet:
    """An entity set as stored in the database."""

    id: int
    name: str
    group: str
    entity_type: str
    owner: str
    description: str
    entities: list[str]
    created: datetime
    modified: datetime

    def __str__(self) -> str:
        return f"EntitySet({self.owner}:{self.name})"

    async def update(self, client: Any) -> EntitySet:
        """Store the entities and descriptive fields of this set in the database."""
        try:
            current = await client.query_one(_CURRENT_QUERY, [self.id])
        except Exception as exc:
            raise EntitySetNotFound(str(exc)) from exc

        found_entity_type, owner, description = current[0], current[1], current[2]
        if self.entity_type != found_entity_type:
            raise UnchangeableFields(["entity_type"])
        if not self.entities:
            raise EmptyEntitySet()

        query = (
            "SELECT relation_directory.change_set_entities_guarded("
            f"{self.id}, {_entities_array(self.entities)})"
        )
        logger.info("%s", query)
        row = await _db_call(client.query_one(query, []))
        missing_entities = list(row[0])
        if missing_entities:
            raise MissingEntities(missing_entities)

        logger.info("%s", _TRANSFER_STAGED_QUERY)
        await _db_call(client.execute(_TRANSFER_STAGED_QUERY, []))

        if self.owner:
            owner = self.owner
        if self.description:
            description = self.description

        await _db_call(
            client.execute(
                _UPDATE_HISTORY_QUERY,
                [
                    self.id,
                    self.name,
                    f"{self.name}__{self.owner}",
                    self.group,
                    owner,
                    description,
                ],
            )
        )

        logger.info("%s", _MATERIALIZE_QUERY)
        await _db_call(client.execute(_MATERIALIZE_QUERY, []))

        logger.info("%s", _RELOAD_QUERY)
        new_data = await _db_call(client.query_one(_RELOAD_QUERY, [self.id]))
        return EntitySet(
            id=self.id,
            name=new_data[0],
            group=new_data[1],
            entity_type=new_data[2],
            owner=new_data[3],
            description=new_data[4],
            entities=list(self.entities),
            created=new_data[5],
            modified=new_data[5],
        )


@dataclass
class NewEntitySet:
    """The definition of an entity set that is yet to be created."""

    name: str
    group: str
    entity_type: str
    owner: str
    description: str
    entities: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"EntitySet({self.owner}:{self.name})"

    async def create(self, client: Any) -> EntitySet:
        """Create this entity set in the database and return the stored set."""
        exists_row = await _db_call(client.query_one(_EXISTS_QUERY, [self.owner, self.name]))

        try:
            await client.query_one(_ENTITY_TYPE_QUERY, [self.entity_type])
        except Exception as exc:
            raise IncorrectEntityType(self.entity_type) from exc

        if exists_row[0]:
            raise ExistingEntitySet(self.name, self.owner)
        if not self.entities:
            raise EmptyEntitySet()

        array = _entities_array(self.entities)
        query = (
            "SELECT relation_directory.create_entity_set_guarded("
            f"$1, $2, $3, $4, $5, {array})"
        )
        logger.info(
            "SELECT relation_directory.create_entity_set_guarded"
            "('%s', '%s', '%s', '%s', '%s', %s)",
            self.name,
            self.group,
            self.entity_type,
            self.owner,
            self.description,
            array,
        )
        row = await _db_call(
            client.query_one(
                query,
                [self.name, self.group, self.entity_type, self.owner, self.description],
            )
        )
        missing_entities = list(row[0])
        if missing_entities:
            raise MissingEntities(missing_entities)

        id_data = await _db_call(client.query_one(_CREATED_QUERY, [self.name, self.owner]))
        return EntitySet(
            id=id_data[0],
            name=self.name,
            group=self.group,
            entity_type=self.entity_type,
            owner=self.owner,
            description=self.description,
            entities=list(self.entities),
            created=id_data[1],
            modified=id_data[2],
        )


async def load_entity_sets(client: Any) -> list[EntitySet]:
    """Load all entity sets with their members."""
    try:
        rows = await client.query(_LOAD_ALL_QUERY, [])
    except Exception as exc:
        raise MinervaRuntimeError(f"Error loading entity sets: {exc}") from exc

    entity_sets = []
    for row in rows:
        try:
            members = await client.query_one(_MEMBERS_QUERY, [row[5]])
        except Exception as exc:
            raise MinervaRuntimeError(f"Error loading entity set content: {exc}") from exc
        entity_sets.append(
            EntitySet(
                id=row[5],
                name=row[0],
                group=row[1],
                entity_type=row[2],
                owner=row[3],
                description=row[4] or "",
                entities=list(members[0]),
                created=row[6],
                modified=row[7],
            )
        )
    return entity_sets


async def load_entity_set(client: Any, entity_set_id: int) -> EntitySet:
    """Load one entity set by its id."""
    try:
        row = await client.query_one(_LOAD_ONE_QUERY, [entity_set_id])
    except Exception as exc:
        raise MinervaRuntimeError(
            f"Could not load entity set {entity_set_id}: {exc}"
        ) from exc

    try:
        members = await client.query_one(_MEMBERS_QUERY, [entity_set_id])
    except Exception as exc:
        raise MinervaRuntimeError(
            f"Could not load entity set members for entity set {entity_set_id}: {exc}"
        ) from exc

    return EntitySet(
        id=row[7],
        name=row[0],
        group=row[1],
        entity_type=row[2],
        owner=row[3],
        description=row[4] or "",
        entities=list(members[0]),
        created=row[5],
        modified=row[6],
    )


def _existing_error(error: ExistingEntitySet) -> DatabaseError:
    return DatabaseError(
        f"An entity set with name {error.name} and owner {error.owner} already exists.",
        DatabaseErrorKind.UNIQUE_VIOLATION,
    )


@dataclass
class ChangeEntitySet:
    """Change that updates an existing entity set."""

    entity_set: EntitySet
    entities: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"ChangeEntitySet({self.entity_set.owner}:{self.entity_set.name})"

    async def apply(self, client: Any) -> str:
        try:
            await self.entity_set.update(client)
        except DatabaseError:
            raise
        except ExistingEntitySet as exc:
            raise _existing_error(exc) from exc
        except (EmptyEntitySet, MissingEntities) as exc:
            raise MinervaRuntimeError(exc.msg) from exc
        except EntitySetError as exc:
            raise DatabaseError("Unexpected Error") from exc
        return "Entity set updated"


@dataclass
class CreateEntitySet:
    """Change that creates a new entity set."""

    entity_set: NewEntitySet

    def __str__(self) -> str:
        return f"CreateEntitySet({self.entity_set.owner}:{self.entity_set.name})"

    async def apply(self, client: Any) -> str:
        try:
            entity_set = await self.entity_set.create(client)
        except DatabaseError:
            raise
        except ExistingEntitySet as exc:
            raise _existing_error(exc) from exc
        except (EmptyEntitySet, MissingEntities) as exc:
            raise MinervaRuntimeError(exc.msg) from exc
        except IncorrectEntityType as exc:
            raise MinervaRuntimeError("Entity set type does not exist") from exc
        except EntitySetError as exc:
            raise MinervaRuntimeError("Unexpected Error") from exc
        return f"Entity set number {entity_set.id} created"