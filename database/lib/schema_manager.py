"""Database schema management module.

This module handles database schema versioning for the indexer's record
tables. A fresh store gets the latest schema version created directly; an
older store has to be rebuilt with force_recreate.
"""
import importlib
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'

class SchemaManager:
    """Manages database schema versioning."""

    def __init__(self, pool, schema_dir: Optional[Path] = None) -> None:
        """Initialize schema manager.

        Args:
            pool: Database connection pool
            schema_dir: Directory containing schema version files
        """
        self.pool = pool
        self._schema_dir = Path(schema_dir) if schema_dir else SCHEMA_DIR
        self.current_version = 0
        self._schema_files = {}

    async def initialize(self, force_recreate: bool = False) -> None:
        """Initialize schema management.

        Creates the schema version table if it doesn't exist and the latest schema if it is missing.

        Args:
            force_recreate: Drop every table and create the latest schema from scratch

        Raises:
            DatabaseSchemaError: If schema initialization fails or no valid schema files are found
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute('''
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INT8 PRIMARY KEY,
                        applied_at TIMESTAMP NOT NULL DEFAULT now()
                    )
                ''')

                if force_recreate:
                    logger.info("Force recreate requested, resetting schema version")
                    await conn.execute('DELETE FROM schema_version')

                row = await conn.fetchrow(
                    'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
                )
                self.current_version = row['version'] if row else 0

            schema_files = self._load_schema_files()
            if not schema_files:
                logger.error("No valid schema files found in schema directory")
                raise DatabaseSchemaError("No valid schema files found in schema directory")

            await self._apply_migrations(schema_files)

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}") from e

    def _load_schema_files(self) -> Dict[int, Dict[str, Any]]:
        """Load all schema version files.

        Returns:
            Dict mapping version numbers to schema definitions
        """
        schema_files = {}

        if not self._schema_dir.exists():
            return schema_files

        # Load all vX.py files
        for file in self._schema_dir.glob('v*.py'):
            try:
                version = int(file.stem[1:])  # Extract number from vX.py
            except ValueError:
                logger.warning(f"Invalid schema filename: {file}")
                continue

            module = importlib.import_module(f"database.schema.{file.stem}")

            if not hasattr(module, 'schema'):
                raise DatabaseSchemaError(
                    f"Schema file {file} missing 'schema' definition"
                )

            schema = module.schema
            if schema['version'] != version:
                raise DatabaseSchemaError(
                    f"Schema version mismatch in {file}: "
                    f"Expected v{version}, got v{schema['version']}"
                )

            schema_files[version] = schema

        self._schema_files = dict(sorted(schema_files.items()))
        return self._schema_files

    async def _apply_migrations(self, schema_files: Dict[int, Dict[str, Any]]) -> None:
        """Create the latest schema unless it is already in place.

        Args:
            schema_files: Dict mapping version numbers to schema definitions

        Raises:
            DatabaseSchemaError: If the store holds an older version, which
                requires force_recreate
        """
        latest_version = max(schema_files.keys())
        if self.current_version >= latest_version:
            logger.info("Schema is up to date")
            return

        if self.current_version:
            raise DatabaseSchemaError(
                f"Store is at schema version {self.current_version}, latest is "
                f"{latest_version}; rerun with force_recreate to rebuild it"
            )

        logger.info(f"Creating schema version {latest_version}")
        try:
            async with self.pool.acquire() as conn:
                await self._create_fresh_schema(conn, schema_files[latest_version])
        except Exception as e:
            logger.error(f"Schema creation failed: {e}")
            raise DatabaseSchemaError(f"Failed to create schema: {e}") from e

    async def _create_fresh_schema(self, conn, schema: Dict[str, Any]) -> None:
        """Create a fresh schema installation.

        Args:
            conn: Database connection
            schema: Latest schema definition
        """
        for table in schema.get('tables', []):
            await conn.execute(f'DROP TABLE IF EXISTS {table["name"]} CASCADE')
            await self._create_table(conn, table)
            await self._add_indexes(conn, table)

        await conn.execute(
            'INSERT INTO schema_version (version) VALUES ($1)',
            schema['version']
        )
        logger.info(f"Successfully created fresh schema version {schema['version']}")

    async def _create_table(self, conn, table: Dict[str, Any]) -> None:
        """Create a single table.

        Args:
            conn: Database connection
            table: Table definition dictionary
        """
        columns = []
        constraints = []

        for col in table['columns']:
            col_def = f"{col['name']} {col['type']}"

            if col.get('primary_key'):
                constraints.append(f"PRIMARY KEY ({col['name']})")

            if 'default' in col:
                col_def += f" DEFAULT {col['default']}"

            if col.get('nullable') is False:
                col_def += " NOT NULL"

            columns.append(col_def)

        # Composite primary key
        if isinstance(table.get('primary_key'), list):
            constraints.append(
                f"PRIMARY KEY ({', '.join(table['primary_key'])})"
            )

        table_def = ', '.join(columns + constraints)

        await conn.execute(f'''
            CREATE TABLE IF NOT EXISTS {table['name']} (
                {table_def}
            )
        ''')
        logger.info(f"Created table {table['name']}")

    async def _add_indexes(self, conn, table: Dict[str, Any]) -> None:
        """Create the indexes of a table.

        Args:
            conn: Database connection
            table: Table definition dictionary
        """
        for idx in table.get('indexes', []):
            unique = 'UNIQUE ' if idx.get('unique') else ''
            await conn.execute(f'''
                CREATE {unique}INDEX IF NOT EXISTS {idx['name']}
                ON {table['name']}({', '.join(idx['columns'])})
            ''')
            logger.info(f"Created index {idx['name']} on {table['name']}")
