"""Database module for managing the indexer's record store connection.

This module handles:
- Database connection pool initialization
- Schema management
- Connection lifecycle

Unlike a process-wide singleton, init_db returns the pool; callers own it and
hand it to the record collections in database.records.
"""

import logging
import ssl
from typing import Optional, Dict, Any
import backoff
import asyncpg
from urllib.parse import urlparse, parse_qs

from .exceptions import DatabaseError, DatabaseSchemaError, InvalidFilterError
from .lib.schema_manager import SchemaManager
from .records import RecordCollection, MarketplaceRecords

logger = logging.getLogger(__name__)

SSL_MODES = ('require', 'verify-ca', 'verify-full')

def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for CockroachDB Cloud connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context

def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    parsed = urlparse(db_url)
    params = parse_qs(parsed.query)

    kwargs: Dict[str, Any] = {
        'server_settings': {
            'statement_timeout': '300000',  # 5 minutes
        }
    }

    sslmode = params.get('sslmode', ['disable'])[0]
    if sslmode in SSL_MODES:
        kwargs['ssl'] = _get_ssl_context()
    else:
        kwargs['ssl'] = False

    return kwargs

def _get_database_name(db_url: str) -> str:
    parsed = urlparse(db_url)
    db_name = parsed.path.strip('/')
    if not db_name:
        params = parse_qs(parsed.query)
        db_name = params.get('database', ['defaultdb'])[0]
    return db_name

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def create_database_if_not_exists(db_url: str) -> None:
    """Create the database if it doesn't exist.

    Args:
        db_url: Database connection URL

    Raises:
        Exception: If database creation fails after retries
    """
    try:
        db_name = _get_database_name(db_url)
        if db_name == 'defaultdb':
            return

        # Connect to default database
        base_url = urlparse(db_url)._replace(path='/defaultdb').geturl()
        logger.info(f"Connecting to defaultdb to create {db_name} if needed")

        conn_kwargs = _get_connection_kwargs(base_url)
        conn = await asyncpg.connect(base_url, **conn_kwargs)

        try:
            await conn.execute(f'CREATE DATABASE IF NOT EXISTS "{db_name}"')
            logger.info(f"Ensured database {db_name} exists")
        finally:
            await conn.close()

    except Exception as e:
        logger.error(f"Error creating database: {e}")
        raise

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def init_db(db_url: str, force_recreate: bool = False) -> asyncpg.Pool:
    """Create the connection pool and bring the schema up to date.

    Args:
        db_url: Database URL
        force_recreate: If True, drop and recreate all tables

    Returns:
        The connection pool

    Raises:
        ValueError: If database URL is not provided
        DatabaseError: If initialization fails after retries
    """
    if not db_url:
        raise ValueError("Database URL not provided")

    pool: Optional[asyncpg.Pool] = None
    try:
        await create_database_if_not_exists(db_url)

        conn_kwargs = _get_connection_kwargs(db_url)

        pool = await asyncpg.create_pool(
            db_url,
            min_size=2,          # Minimum idle connections
            max_size=20,         # Maximum connections
            max_queries=10000,   # Reset connection after this many queries
            max_inactive_connection_lifetime=300.0,  # 5 minutes
            command_timeout=60.0,  # 1 minute command timeout
            **conn_kwargs
        )

        schema_manager = SchemaManager(pool)
        await schema_manager.initialize(force_recreate=force_recreate)

        logger.info("Connected to record store")
        return pool

    except (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError):
        if pool is not None:
            await pool.close()
        raise
    except DatabaseError:
        if pool is not None:
            await pool.close()
        raise
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        if pool is not None:
            await pool.close()
        raise DatabaseError(f"Database initialization failed: {e}") from e

async def close(pool: Optional[asyncpg.Pool]) -> None:
    """Close the database connection pool."""
    if pool is not None:
        await pool.close()
        logger.info("Record store connection closed")

# Export public interface
__all__ = [
    'init_db',
    'close',
    'RecordCollection',
    'MarketplaceRecords',
    'DatabaseError',
    'DatabaseSchemaError',
    'InvalidFilterError'
]
