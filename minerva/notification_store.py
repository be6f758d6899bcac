"""Notification store definitions, their changes and loading from the database."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError, DatabaseError, MinervaRuntimeError

_ADD_ATTRIBUTE_QUERY = (
    "with a as ("
    "insert into notification_directory.attribute(notification_store_id, name, data_type, description) "
    "select ns.id, $1, $2, $3 from notification_directory.notification_store ns "
    "join directory.data_source ds on ds.id = ns.data_source_id where ds.name = $4 returning attribute"
    ") "
    "select notification_directory.create_attribute_column(a.attribute) from a;"
)

_STORES_QUERY = (
    "SELECT notification_store.id, data_source.name "
    "FROM notification_directory.notification_store "
    "JOIN directory.data_source ON data_source.id = notification_store.data_source_id "
)

_ATTRIBUTES_QUERY = (
    "SELECT name, data_type, description FROM notification_directory.attribute "
    "WHERE notification_store_id = $1"
)


def _require_str(data: Mapping[str, Any], key: str, owner: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ValueError(f"missing or invalid field '{key}' in {owner}")
    return value


@dataclass
class Attribute:
    """An attribute of a notification store."""

    name: str
    data_type: str
    description: str = ""


def _attribute_from_dict(data: Any) -> Attribute:
    if not isinstance(data, Mapping):
        raise ValueError("attribute definition must be a mapping")
    description = data.get("description", "")
    if not isinstance(description, str):
        raise ValueError("invalid field 'description' in attribute")
    return Attribute(
        name=_require_str(data, "name", "attribute"),
        data_type=_require_str(data, "data_type", "attribute"),
        description=description,
    )


@dataclass
class NotificationStore:
    """A notification store of one data source."""

    data_source: str
    attributes: list[Attribute] = field(default_factory=list)
    title: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> NotificationStore:
        """Build a store from a parsed definition; raises ValueError when invalid."""
        if not isinstance(data, Mapping):
            raise ValueError("notification store definition must be a mapping")
        title = data.get("title")
        if title is not None and not isinstance(title, str):
            raise ValueError("invalid field 'title' in notification store")
        attributes = data.get("attributes")
        if not isinstance(attributes, list):
            raise ValueError("missing or invalid field 'attributes' in notification store")
        return cls(
            data_source=_require_str(data, "data_source", "notification store"),
            attributes=[_attribute_from_dict(item) for item in attributes],
            title=title,
        )

    def diff(self, other: NotificationStore) -> list[Any]:
        """Changes needed to bring this store in line with ``other``."""
        known = {attribute.name for attribute in self.attributes}
        new_attributes = [a for a in other.attributes if a.name not in known]
        if not new_attributes:
            return []
        return [AddAttributes(notification_store=self, attributes=new_attributes)]

    def __str__(self) -> str:
        return f"NotificationStore({self.data_source})"


@dataclass
class AddAttributes:
    """Change that adds attributes to an existing notification store."""

    notification_store: NotificationStore
    attributes: list[Attribute]

    def __str__(self) -> str:
        return f"AddAttributes({self.notification_store}, {self.attributes!r})"

    async def apply(self, client: Any) -> str:
        for attribute in self.attributes:
            try:
                await client.execute(
                    _ADD_ATTRIBUTE_QUERY,
                    [
                        attribute.name,
                        attribute.data_type,
                        attribute.description,
                        self.notification_store.data_source,
                    ],
                )
            except Exception as exc:
                raise DatabaseError(
                    f"Error adding attribute to notification store: {exc}"
                ) from exc
        return f"Added attributes to notification store '{self.notification_store}'"


@dataclass
class AddNotificationStore:
    """Change that creates a new notification store."""

    notification_store: NotificationStore

    def __str__(self) -> str:
        return f"AddNotificationStore({self.notification_store})"

    async def apply(self, client: Any) -> str:
        attr_defs = ",".join(
            f"('{attribute.name}', '{attribute.data_type}', '')"
            for attribute in self.notification_store.attributes
        )
        query = (
            "SELECT notification_directory.create_notification_store("
            f"$1::text, ARRAY[{attr_defs}]::notification_directory.attr_def[])"
        )
        try:
            await client.query_one(query, [self.notification_store.data_source])
        except Exception as exc:
            raise DatabaseError(f"Error creating notification store: {exc}") from exc
        return f"Created attribute store '{self.notification_store}'"


async def _load_attributes(client: Any, notification_store_id: int) -> list[Attribute]:
    rows = await client.query(_ATTRIBUTES_QUERY, [notification_store_id])
    return [
        Attribute(name=name, data_type=data_type, description=description or "")
        for name, data_type, description in rows
    ]


async def load_notification_stores(client: Any) -> list[NotificationStore]:
    """Load all notification stores defined in the database."""
    try:
        rows = await client.query(_STORES_QUERY, [])
    except Exception as exc:
        raise DatabaseError(f"Error loading notification stores: {exc}") from exc

    return [
        NotificationStore(
            data_source=data_source,
            attributes=await _load_attributes(client, store_id),
        )
        for store_id, data_source in rows
    ]


async def load_notification_store(
    client: Any, data_source: str, entity_type: str
) -> NotificationStore:
    """Load the store of ``data_source`` from the database."""
    query = (
        "SELECT attribute_store.id "
        "FROM attribute_directory.attribute_store "
        "JOIN directory.data_source ON data_source.id = attribute_store.data_source_id "
        "WHERE data_source.name = $1"
    )
    try:
        row = await client.query_one(query, [data_source, entity_type])
    except Exception as exc:
        raise DatabaseError(f"Could not load attribute stores: {exc}") from exc

    return NotificationStore(
        data_source=data_source,
        attributes=await _load_attributes(client, row[0]),
    )


def load_notification_store_from_file(path: str | Path) -> NotificationStore:
    """Read a notification store definition from a YAML file."""
    path = Path(path)
    try:
        with path.open(encoding="utf-8") as stream:
            text = stream.read()
    except OSError as exc:
        raise ConfigurationError(
            f"Could not open notification store definition file '{path}': {exc}"
        ) from exc

    try:
        return NotificationStore.from_dict(yaml.safe_load(text))
    except (yaml.YAMLError, ValueError) as exc:
        raise MinervaRuntimeError(
            f"Could not read notification store definition from file '{path}': {exc}"
        ) from exc


async def notification_store_exists(client: Any, data_source_name: str) -> bool:
    """Tell whether a notification store exists for ``data_source_name``."""
    query = _STORES_QUERY + "WHERE data_source.name = $1"
    try:
        rows = await client.query(query, [data_source_name])
    except Exception as exc:
        raise DatabaseError(
            f"Error checking notification store existence: {exc}"
        ) from exc

    if len(rows) == 0:
        return False
    if len(rows) == 1:
        return True
    raise DatabaseError(
        f"Unexpected number of notification store matches: {len(rows)}"
    )