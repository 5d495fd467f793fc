"""PostgresCatalog — SourceCatalog backed by PostgreSQL system catalogs."""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

import psycopg
import structlog
from psycopg import sql

from cdc_snapshot.config.models import SourceConfig
from cdc_snapshot.errors import TransientSourceError
from cdc_snapshot.splits.keys import MAX_KEY, MIN_KEY, KeyField
from cdc_snapshot.splits.models import ShardRange
from cdc_snapshot.splits.schema import CollectionSchema, SchemaField

logger = structlog.get_logger()

_RANGE_BOUND = re.compile(r"^FOR VALUES FROM \((?P<lower>.*)\) TO \((?P<upper>.*)\)$")
_BOUND_TOKEN = re.compile(r"'(?:[^']|'')*'|[^,\s]+")

_KEY_SCHEMA_SQL = """
SELECT a.attname, format_type(a.atttypid, a.atttypmod)
FROM pg_index i
JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey)
WHERE i.indrelid = %s::regclass AND i.indisprimary
ORDER BY array_position(i.indkey::int2[], a.attnum)
"""

_ESTIMATE_SQL = "SELECT reltuples::bigint FROM pg_class WHERE oid = %s::regclass"

_PARTITIONS_SQL = """
SELECT c.relname, pg_get_expr(c.relpartbound, c.oid)
FROM pg_inherits i
JOIN pg_class c ON c.oid = i.inhrelid
WHERE i.inhparent = %s::regclass
"""

_SCHEMA_SQL = """
SELECT column_name, data_type, is_nullable = 'YES'
FROM information_schema.columns
WHERE table_schema = %s AND table_name = %s
ORDER BY ordinal_position
"""


def _parse_bound_value(token: str) -> Any:
    if token == "MINVALUE":
        return MIN_KEY
    if token == "MAXVALUE":
        return MAX_KEY
    if token.startswith("'") and token.endswith("'"):
        return token[1:-1].replace("''", "'")
    try:
        return int(token)
    except ValueError:
        pass
    try:
        return float(token)
    except ValueError:
        return token


def _parse_bound(text: str) -> Any:
    values = [_parse_bound_value(t) for t in _BOUND_TOKEN.findall(text)]
    return values[0] if len(values) == 1 else tuple(values)


def parse_range_partition(expr: str) -> tuple[Any, Any] | None:
    """Parse ``FOR VALUES FROM (..) TO (..)``; None for list/hash/default bounds."""
    match = _RANGE_BOUND.match(expr.strip())
    if match is None:
        return None
    return _parse_bound(match.group("lower")), _parse_bound(match.group("upper"))


def _split_name(collection_id: str) -> tuple[str, str]:
    schema, _, table = collection_id.partition(".")
    return schema, table


class PostgresCatalog:
    """Reads planning statistics from ``pg_class``, ``pg_index`` and friends.

    Uses short-lived psycopg3 async connections; connection-level failures
    surface as :class:`TransientSourceError` so the planner retries them.
    """

    def __init__(
        self,
        config: SourceConfig,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        self._config = config
        self._connect = connect or psycopg.AsyncConnection.connect

    async def _fetchall(self, query: Any, params: tuple[Any, ...] = ()) -> list[Any]:
        try:
            async with await self._connect(self._config.dsn, autocommit=True) as conn:
                cur = await conn.execute(query, params)
                return list(await cur.fetchall())
        except psycopg.OperationalError as exc:
            raise TransientSourceError(str(exc)) from exc

    async def key_schema(self, collection_id: str) -> tuple[KeyField, ...]:
        rows = await self._fetchall(_KEY_SCHEMA_SQL, (collection_id,))
        if not rows:
            msg = f"Table '{collection_id}' has no primary key to split on"
            raise ValueError(msg)
        return tuple(KeyField(name=name, type=type_) for name, type_ in rows)

    async def estimate_count(self, collection_id: str) -> int | None:
        rows = await self._fetchall(_ESTIMATE_SQL, (collection_id,))
        if not rows or rows[0][0] is None or rows[0][0] < 0:
            # reltuples is -1 until the table has been vacuumed/analyzed
            return None
        return int(rows[0][0])

    async def sample_keys(
        self,
        collection_id: str,
        key_schema: tuple[KeyField, ...],
        size: int,
    ) -> list[Any]:
        estimate = await self.estimate_count(collection_id)
        percent = 100.0 if not estimate else min(100.0, size * 100.0 / estimate)
        schema, table = _split_name(collection_id)
        query = sql.SQL(
            "SELECT {cols} FROM {table} TABLESAMPLE BERNOULLI (%s) LIMIT %s"
        ).format(
            cols=sql.SQL(", ").join(sql.Identifier(k.name) for k in key_schema),
            table=sql.Identifier(schema, table),
        )
        rows = await self._fetchall(query, (percent, size))
        if len(key_schema) == 1:
            return [row[0] for row in rows]
        return [tuple(row) for row in rows]

    async def shard_ranges(
        self,
        collection_id: str,
        key_schema: tuple[KeyField, ...],
    ) -> list[ShardRange]:
        rows = await self._fetchall(_PARTITIONS_SQL, (collection_id,))
        ranges: list[ShardRange] = []
        for relname, bound_expr in rows:
            parsed = parse_range_partition(bound_expr or "")
            if parsed is None:
                logger.info(
                    "postgres_catalog.non_range_partitioning",
                    collection=collection_id,
                    partition=relname,
                    bound=bound_expr,
                )
                return []
            ranges.append(ShardRange(lower=parsed[0], upper=parsed[1], shard=relname))
        return ranges

    async def fetch_schema(self, collection_id: str) -> CollectionSchema:
        schema, table = _split_name(collection_id)
        rows = await self._fetchall(_SCHEMA_SQL, (schema, table))
        if not rows:
            msg = f"Table '{collection_id}' not found in information_schema"
            raise ValueError(msg)
        return CollectionSchema(
            collection_id=collection_id,
            fields=tuple(
                SchemaField(name=name, type=type_, nullable=bool(nullable))
                for name, type_, nullable in rows
            ),
        )

    async def close(self) -> None:
        # Connections are per-call; nothing to release.
        return None
