# minerva

Building blocks for managing the definitions that make up a Minerva instance
in a PostgreSQL database: notification stores, relations, entity sets and
trend materializations, together with helpers for intervals, typed
measurement values and job logging.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## The database client

The package does not open database connections itself. Every function and
change that talks to the database takes an asynchronous `client` object that
you supply, offering three coroutines:

- `query(sql, params)` – returns a list of rows,
- `query_one(sql, params)` – returns exactly one row, raising otherwise,
- `execute(sql, params)` – returns the number of affected rows.

Rows are indexable sequences, and parameters are passed as a list matching
`$1`, `$2`, … placeholders in the SQL. Transactions (begin, commit,
rollback) are left to the caller.

## Modules

- `minerva.errors` – the error hierarchy. `MinervaError` is the base, with
  `DatabaseError` (carrying a `DatabaseErrorKind`, `DEFAULT` or
  `UNIQUE_VIOLATION`), `ConfigurationError` and `MinervaRuntimeError`.
  `map_error_kind` maps a SQLSTATE code to a `DatabaseErrorKind`.
- `minerva.interval` – `parse_duration` reads durations such as `"1h 30m"`
  or `"2 months 29 days"`; `parse_interval` also accepts PostgreSQL interval
  text such as `"00:01:00"` or `"1 mon"`; `format_duration` renders a
  `timedelta` back into the compact form `parse_duration` reads.
- `minerva.sql` – `escape_identifier` quotes a PostgreSQL identifier.
- `minerva.job` – `start_job` and `end_job` for the `logging` schema.
- `minerva.meas_value` – `DataType`, `MeasValue`, `parse_meas_value` and the
  `map_int2` … `map_numeric` conversions between numeric types.
- `minerva.notification_store` – `Attribute`, `NotificationStore` (with
  `from_dict` and `diff`), the `AddNotificationStore` and `AddAttributes`
  changes, `load_notification_stores`, `load_notification_store`,
  `load_notification_store_from_file` and `notification_store_exists`.
- `minerva.relation` – `Relation`, `load_relation_from_file` (YAML or JSON),
  the `AddRelation` and `UpdateRelation` changes, and
  `materialize_relation`, which refreshes a relation table from its view and
  returns a `MaterializeRelationResult`.
- `minerva.entity_set` – `EntitySet` (with `update`), `NewEntitySet` (with
  `create`), `load_entity_sets`, `load_entity_set`, the `CreateEntitySet`
  and `ChangeEntitySet` changes, and the `EntitySetError` family
  (`EntitySetNotFound`, `ExistingEntitySet`, `EmptyEntitySet`,
  `MissingEntities`, `UnchangeableFields`, `IncorrectEntityType`).
- `minerva.materialization` – `TrendViewMaterialization` and
  `TrendFunctionMaterialization` (both `TrendMaterialization`s with `name`,
  `dump`, `create`, `update`, `delete`, `teardown`, `diff` and more),
  `trend_materialization_from_dict`, and the `AddTrendMaterialization`,
  `UpdateTrendMaterialization`, `UpdateTrendViewMaterializationAttributes`
  and `UpdateView` changes.
- `minerva.materialization_loading` – `trend_materialization_from_config`
  and `load_materializations_from` read YAML definitions;
  `load_materialization`, `load_trend_materialization` and
  `load_materializations` read them back from the database.
- `minerva.materialization_check` – `check_trend_materialization` compares
  a materialization's result columns with the trends of its target trend
  store part; also `remove_trend_materialization`,
  `RemoveTrendMaterialization`, `populate_source_fingerprint` and
  `reset_source_fingerprint`.

Every change class has an `apply(client)` coroutine that returns a message
describing what was done, and raises a `MinervaError` when it fails. Its
`str()` names the change and its subject.

## Examples

```python
from minerva.interval import parse_interval
from minerva.materialization_loading import load_materializations_from

print(parse_interval("00:15:00"))          # 0:15:00

for materialization in load_materializations_from("/path/to/instance"):
    print(materialization.name())
    print(materialization.dump())
```

Definitions that cannot be read are reported on standard output and skipped.

Applying a change:

```python
from minerva.relation import AddRelation, Relation


async def add_relation(client):
    change = AddRelation(Relation(name="cell->site", query="SELECT ..."))
    return await change.apply(client)
```

## What this package does not do

- It has no command-line tool; it is used as a library.
- It contains no PostgreSQL driver and does not create or migrate the
  Minerva database schema.
- It does not cover trend stores or attribute stores, loading measurement
  data from files, or comparing and initializing a whole instance at once;
  only the definitions listed above are handled.