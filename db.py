import asyncpg
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List, Iterable

from config import (
    DATABASE_URL,
    DB_POOL_MIN_SIZE,
    DB_POOL_SIZE,
    DB_COMMAND_TIMEOUT,
    LOG_DIR,
)

# Create logs directory if it doesn't exist
os.makedirs(LOG_DIR, exist_ok=True)

# Setup system_info logger
info_logger = logging.getLogger('system_info')
info_logger.setLevel(logging.INFO)
if not info_logger.handlers:
    info_handler = logging.FileHandler(LOG_DIR / 'system_info.log')
    info_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    info_handler.setFormatter(info_formatter)
    info_logger.addHandler(info_handler)

# Setup system_error logger
error_logger = logging.getLogger('system_error')
error_logger.setLevel(logging.ERROR)
if not error_logger.handlers:
    error_handler = logging.FileHandler(LOG_DIR / 'system_error.log')
    error_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(filename)s:%(lineno)d - %(funcName)s - %(message)s')
    error_handler.setFormatter(error_formatter)
    error_logger.addHandler(error_handler)

# Setup app_info logger
app_info_logger = logging.getLogger('app_info')
app_info_logger.setLevel(logging.INFO)
if not app_info_logger.handlers:
    app_info_handler = logging.FileHandler(LOG_DIR / 'app_info.log')
    app_info_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    app_info_handler.setFormatter(app_info_formatter)
    app_info_logger.addHandler(app_info_handler)

# Setup app_error logger
app_error_logger = logging.getLogger('app_error')
app_error_logger.setLevel(logging.ERROR)
if not app_error_logger.handlers:
    app_error_handler = logging.FileHandler(LOG_DIR / 'app_error.log')
    app_error_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(filename)s:%(lineno)d - %(funcName)s - %(message)s')
    app_error_handler.setFormatter(app_error_formatter)
    app_error_logger.addHandler(app_error_handler)

logger = logging.getLogger(__name__)


# ==========================================================
# Schema
# ==========================================================
SCHEMA_SQL = '''
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        full_name VARCHAR(255),
        age INTEGER,
        voter_number VARCHAR(100),
        gender VARCHAR(50),
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS complaints (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users(id),
        category VARCHAR(255),
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_complaints_created_at ON complaints(created_at DESC);

    -- Media rows are removed explicitly before their complaint, no cascade
    CREATE TABLE IF NOT EXISTS complaint_media (
        id BIGSERIAL PRIMARY KEY,
        complaint_id BIGINT NOT NULL REFERENCES complaints(id),
        file_path VARCHAR(255) UNIQUE NOT NULL,
        file_type VARCHAR(255)
    );

    CREATE INDEX IF NOT EXISTS idx_complaint_media_complaint ON complaint_media(complaint_id);

    CREATE TABLE IF NOT EXISTS register_users (
        id BIGSERIAL PRIMARY KEY,
        full_name VARCHAR(255) NOT NULL,
        age INTEGER NOT NULL,
        gender VARCHAR(50) NOT NULL,
        email VARCHAR(255) UNIQUE NOT NULL,
        password_hash VARCHAR(255) NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    );
'''

INSERT_USER_SQL = '''
    INSERT INTO users (full_name, age, voter_number, gender)
    VALUES ($1, $2, $3, $4)
    RETURNING id
'''

INSERT_COMPLAINT_SQL = '''
    INSERT INTO complaints (user_id, category)
    VALUES ($1, $2)
    RETURNING id
'''

INSERT_MEDIA_SQL = '''
    INSERT INTO complaint_media (complaint_id, file_path, file_type)
    VALUES ($1, $2, $3)
    RETURNING id
'''

SELECT_COMPLAINT_PAGE_SQL = '''
    SELECT c.id, c.user_id, c.category, c.created_at,
           u.full_name, u.age, u.voter_number, u.gender
    FROM complaints c
    LEFT JOIN users u ON c.user_id = u.id
    ORDER BY c.created_at DESC, c.id DESC
    LIMIT $1 OFFSET $2
'''

COUNT_COMPLAINTS_SQL = 'SELECT COUNT(*) FROM complaints'

SELECT_COMPLAINT_SQL = '''
    SELECT c.id, c.user_id, c.category, c.created_at,
           u.full_name, u.age, u.voter_number, u.gender
    FROM complaints c
    LEFT JOIN users u ON c.user_id = u.id
    WHERE c.id = $1
'''

SELECT_MEDIA_FOR_COMPLAINTS_SQL = '''
    SELECT id, complaint_id, file_path, file_type
    FROM complaint_media
    WHERE complaint_id = ANY($1::bigint[])
    ORDER BY complaint_id, id
'''

SELECT_MEDIA_KEYS_SQL = '''
    SELECT file_path FROM complaint_media
    WHERE complaint_id = $1
    ORDER BY id
'''

DELETE_MEDIA_SQL = 'DELETE FROM complaint_media WHERE complaint_id = $1'

DELETE_COMPLAINT_SQL = 'DELETE FROM complaints WHERE id = $1'

INSERT_ACCOUNT_SQL = '''
    INSERT INTO register_users (full_name, age, gender, email, password_hash)
    VALUES ($1, $2, $3, $4, $5)
    RETURNING id, full_name, age, gender, email, created_at
'''

SELECT_ACCOUNT_BY_EMAIL_SQL = '''
    SELECT id, full_name, age, gender, email, password_hash, created_at
    FROM register_users
    WHERE email = $1
'''


class Database:
    """Owns the asyncpg connection pool for the lifetime of the process.

    Callers borrow connections with ``async with database.connection()``
    or ``async with database.transaction()``; both hand the connection back
    to the pool on every exit path. When all ``max_size`` connections are
    checked out, further callers wait for one to be returned.
    """

    def __init__(
        self,
        dsn: str = DATABASE_URL,
        min_size: int = DB_POOL_MIN_SIZE,
        max_size: int = DB_POOL_SIZE,
        command_timeout: float = DB_COMMAND_TIMEOUT,
        pool=None,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool = pool

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self):
        """Initialize database connection pool"""
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout,
                )
                logger.info("✅ Database connection pool created successfully")
                info_logger.info(f"SYSTEM_INFO: Database connection pool initialized - Pool size: {self.min_size}-{self.max_size} connections")
            except Exception as e:
                logger.error(f"❌ Failed to connect to database: {e}")
                error_logger.error(f"SYSTEM_ERROR: Database connection failed - Error: {str(e)}")
                raise
        await self.init_tables()

    async def disconnect(self):
        """Close database connection pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("📤 Database connection pool closed")
            info_logger.info("SYSTEM_INFO: Database connection pool closed successfully")

    @asynccontextmanager
    async def connection(self):
        """Borrow a pooled connection"""
        if self._pool is None:
            raise RuntimeError("Database pool is not initialized")
        async with self._pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self):
        """Borrow a pooled connection inside a transaction.

        Commits when the block exits normally, rolls back when it raises.
        """
        async with self.connection() as connection:
            async with connection.transaction():
                yield connection

    async def init_tables(self):
        """Initialize database tables"""
        try:
            async with self.connection() as connection:
                await connection.execute(SCHEMA_SQL)
            logger.info("✅ Database tables initialized successfully")
            info_logger.info("SYSTEM_INFO: Database schema verified")
        except Exception as e:
            logger.error(f"❌ Failed to initialize tables: {e}")
            error_logger.error(f"SYSTEM_ERROR: Schema initialization failed - Error: {str(e)}")
            raise


# ==========================================================
# Data access helpers
# ==========================================================
def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3"
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


async def insert_user(connection, full_name: Optional[str], age: Optional[int],
                      voter_number: Optional[str], gender: Optional[str]) -> int:
    return await connection.fetchval(INSERT_USER_SQL, full_name, age, voter_number, gender)


async def insert_complaint(connection, user_id: int, category: Optional[str]) -> int:
    return await connection.fetchval(INSERT_COMPLAINT_SQL, user_id, category)


async def insert_media(connection, complaint_id: int, file_path: str, file_type: str) -> int:
    return await connection.fetchval(INSERT_MEDIA_SQL, complaint_id, file_path, file_type)


async def fetch_complaint_page(connection, limit: int, offset: int) -> List[Dict[str, Any]]:
    rows = await connection.fetch(SELECT_COMPLAINT_PAGE_SQL, limit, offset)
    return [dict(row) for row in rows]


async def count_complaints(connection) -> int:
    return await connection.fetchval(COUNT_COMPLAINTS_SQL)


async def fetch_complaint(connection, complaint_id: int) -> Optional[Dict[str, Any]]:
    row = await connection.fetchrow(SELECT_COMPLAINT_SQL, complaint_id)
    return dict(row) if row else None


async def fetch_media_for_complaints(connection, complaint_ids: Iterable[int]) -> Dict[int, List[Dict[str, Any]]]:
    """Fetch media for many complaints in one round trip, grouped by complaint id.

    Every requested id is present in the result, with an empty list when it
    has no media (or no longer exists).
    """
    ids = list(complaint_ids)
    grouped: Dict[int, List[Dict[str, Any]]] = {complaint_id: [] for complaint_id in ids}
    if not ids:
        return grouped

    rows = await connection.fetch(SELECT_MEDIA_FOR_COMPLAINTS_SQL, ids)
    for row in rows:
        media = dict(row)
        grouped.setdefault(media.pop('complaint_id'), []).append(media)
    return grouped


async def fetch_media_keys(connection, complaint_id: int) -> List[str]:
    rows = await connection.fetch(SELECT_MEDIA_KEYS_SQL, complaint_id)
    return [row['file_path'] for row in rows]


async def delete_media_rows(connection, complaint_id: int) -> int:
    return _affected_rows(await connection.execute(DELETE_MEDIA_SQL, complaint_id))


async def delete_complaint_row(connection, complaint_id: int) -> int:
    return _affected_rows(await connection.execute(DELETE_COMPLAINT_SQL, complaint_id))


async def insert_account(connection, full_name: str, age: int, gender: str,
                         email: str, password_hash: str) -> Dict[str, Any]:
    row = await connection.fetchrow(INSERT_ACCOUNT_SQL, full_name, age, gender, email, password_hash)
    return dict(row)


async def fetch_account_by_email(connection, email: str) -> Optional[Dict[str, Any]]:
    row = await connection.fetchrow(SELECT_ACCOUNT_BY_EMAIL_SQL, email)
    return dict(row) if row else None
