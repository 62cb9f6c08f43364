"""Record store adapter.

Each RecordCollection maps one pydantic model onto one table and exposes the
small set of operations the reconcilers need: bulk replace for backfill and
find/save/delete by column filter for live sync.
"""
import logging
from typing import Any, Dict, Generic, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel

from .exceptions import InvalidFilterError
from .models import Collection, Item, Offer

logger = logging.getLogger(__name__)

ModelT = TypeVar('ModelT', bound=BaseModel)


class RecordCollection(Generic[ModelT]):
    """CRUD access to one record table."""

    def __init__(self, pool, table: str, model: Type[ModelT], key: Sequence[str]):
        self.pool = pool
        self.table = table
        self.model = model
        self.columns: Tuple[str, ...] = tuple(model.model_fields)
        self.key: Tuple[str, ...] = tuple(key)

        unknown = set(self.key) - set(self.columns)
        if unknown:
            raise InvalidFilterError(f"Key columns {sorted(unknown)} not in {table}")

    def _where(self, filters: Dict[str, Any], start: int = 1) -> Tuple[str, List[Any]]:
        unknown = set(filters) - set(self.columns)
        if unknown:
            raise InvalidFilterError(f"Unknown columns for {self.table}: {sorted(unknown)}")
        if not filters:
            return '', []

        clauses = []
        values = []
        for i, (column, value) in enumerate(filters.items(), start=start):
            clauses.append(f'{column} = ${i}')
            values.append(value)
        return ' WHERE ' + ' AND '.join(clauses), values

    def _row(self, record: ModelT) -> Tuple[Any, ...]:
        data = record.model_dump()
        return tuple(data[column] for column in self.columns)

    def _insert_sql(self) -> str:
        placeholders = ', '.join(f'${i}' for i in range(1, len(self.columns) + 1))
        return f'INSERT INTO {self.table} ({", ".join(self.columns)}) VALUES ({placeholders})'

    async def delete_all(self) -> None:
        """Remove every record from the table."""
        async with self.pool.acquire() as conn:
            await conn.execute(f'DELETE FROM {self.table}')

    async def insert_many(self, records: Iterable[ModelT]) -> int:
        """Insert records in one bulk statement."""
        rows = [self._row(record) for record in records]
        if not rows:
            return 0
        async with self.pool.acquire() as conn:
            await conn.executemany(self._insert_sql(), rows)
        return len(rows)

    async def replace_all(self, records: Iterable[ModelT]) -> int:
        """Swap the table contents for ``records`` inside one transaction.

        Readers see either the old snapshot or the new one, never an empty table.
        """
        rows = [self._row(record) for record in records]
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(f'DELETE FROM {self.table}')
                if rows:
                    await conn.executemany(self._insert_sql(), rows)
        logger.debug(f"Replaced {self.table} with {len(rows)} records")
        return len(rows)

    async def find_one(self, filters: Dict[str, Any]) -> Optional[ModelT]:
        """Return the first record matching every filter, or None."""
        where, values = self._where(filters)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f'SELECT {", ".join(self.columns)} FROM {self.table}{where} LIMIT 1',
                *values
            )
        if row is None:
            return None
        return self.model(**dict(row))

    async def find_many(self, filters: Optional[Dict[str, Any]] = None) -> List[ModelT]:
        where, values = self._where(filters or {})
        order = ', '.join(self.key)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f'SELECT {", ".join(self.columns)} FROM {self.table}{where} ORDER BY {order}',
                *values
            )
        return [self.model(**dict(row)) for row in rows]

    async def save(self, record: ModelT) -> None:
        """Insert the record or overwrite the one with the same key."""
        updates = [column for column in self.columns if column not in self.key]
        if updates:
            conflict = 'DO UPDATE SET ' + ', '.join(
                f'{column} = EXCLUDED.{column}' for column in updates
            )
        else:
            conflict = 'DO NOTHING'

        async with self.pool.acquire() as conn:
            await conn.execute(
                f'{self._insert_sql()} ON CONFLICT ({", ".join(self.key)}) {conflict}',
                *self._row(record)
            )

    async def delete_many(self, filters: Dict[str, Any]) -> int:
        """Delete every record matching the filters and return how many went."""
        if not filters:
            raise InvalidFilterError("delete_many requires at least one filter, use delete_all")
        where, values = self._where(filters)
        async with self.pool.acquire() as conn:
            status = await conn.execute(f'DELETE FROM {self.table}{where}', *values)
        # asyncpg returns the command tag, e.g. "DELETE 3"
        try:
            return int(status.split()[-1])
        except (AttributeError, IndexError, ValueError):
            return 0

    async def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        where, values = self._where(filters or {})
        async with self.pool.acquire() as conn:
            return await conn.fetchval(f'SELECT count(*) FROM {self.table}{where}', *values)


class MarketplaceRecords:
    """The three record tables the indexer owns."""

    def __init__(self, pool):
        self.pool = pool
        self.collections: RecordCollection[Collection] = RecordCollection(
            pool, 'collections', Collection, key=('id',)
        )
        self.items: RecordCollection[Item] = RecordCollection(
            pool, 'items', Item, key=('id',)
        )
        self.offers: RecordCollection[Offer] = RecordCollection(
            pool, 'offers', Offer, key=('item_id', 'offerer')
        )
