import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import SimpleConnectionPool
import logging
import os
import threading
from typing import Optional, Dict
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configuration
DATABASE_URL = os.getenv("DATABASE_URL")
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory").lower()
LOG_DIR = os.getenv("LOG_DIR", "logs")

# Create logs directory if it doesn't exist
os.makedirs(LOG_DIR, exist_ok=True)

# Setup system_info logger
info_logger = logging.getLogger('system_info')
info_logger.setLevel(logging.INFO)
if not info_logger.handlers:
    info_handler = logging.FileHandler(os.path.join(LOG_DIR, 'system_info.log'))
    info_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    info_handler.setFormatter(info_formatter)
    info_logger.addHandler(info_handler)

# Setup system_error logger
error_logger = logging.getLogger('system_error')
error_logger.setLevel(logging.ERROR)
if not error_logger.handlers:
    error_handler = logging.FileHandler(os.path.join(LOG_DIR, 'system_error.log'))
    error_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(filename)s:%(lineno)d - %(funcName)s - %(message)s')
    error_handler.setFormatter(error_formatter)
    error_logger.addHandler(error_handler)

# Setup app_info logger
app_info_logger = logging.getLogger('app_info')
app_info_logger.setLevel(logging.INFO)
if not app_info_logger.handlers:
    app_info_handler = logging.FileHandler(os.path.join(LOG_DIR, 'app_info.log'))
    app_info_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    app_info_handler.setFormatter(app_info_formatter)
    app_info_logger.addHandler(app_info_handler)

# Setup app_error logger
app_error_logger = logging.getLogger('app_error')
app_error_logger.setLevel(logging.ERROR)
if not app_error_logger.handlers:
    app_error_handler = logging.FileHandler(os.path.join(LOG_DIR, 'app_error.log'))
    app_error_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(filename)s:%(lineno)d - %(funcName)s - %(message)s')
    app_error_handler.setFormatter(app_error_formatter)
    app_error_logger.addHandler(app_error_handler)

logger = logging.getLogger(__name__)


class Database:
    _pool: Optional[SimpleConnectionPool] = None

    @classmethod
    def connect(cls):
        """Initialize database connection pool"""
        if cls._pool is None:
            try:
                cls._pool = SimpleConnectionPool(
                    1, 20, DATABASE_URL
                )
                logger.info("✅ Database connection pool created successfully")
                info_logger.info("SYSTEM_INFO: Database connection pool initialized - Pool size: 1-20 connections")
                cls.init_tables()
            except Exception as e:
                logger.error(f"❌ Failed to connect to database: {e}")
                error_logger.error(f"SYSTEM_ERROR: Database connection failed - Error: {str(e)}")
                raise

    @classmethod
    def disconnect(cls):
        """Close database connection pool"""
        if cls._pool:
            cls._pool.closeall()
            cls._pool = None
            logger.info("📤 Database connection pool closed")
            info_logger.info("SYSTEM_INFO: Database connection pool closed successfully")

    @classmethod
    def get_connection(cls):
        """Get database connection from pool"""
        if cls._pool is None:
            cls.connect()
        return cls._pool.getconn()

    @classmethod
    def return_connection(cls, connection):
        """Return connection to pool"""
        cls._pool.putconn(connection)

    @classmethod
    def init_tables(cls):
        """Create the key-value table backing every ledger and session record"""
        connection = cls.get_connection()
        cursor = connection.cursor()
        try:
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS kv_store (
                    key VARCHAR(100) PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
                );
            ''')
            connection.commit()
            logger.info("✅ Store table initialized successfully")
        except Exception as e:
            connection.rollback()
            logger.error(f"❌ Failed to initialize tables: {e}")
            raise
        finally:
            cursor.close()
            cls.return_connection(connection)


class StoreAdapter:
    """Named string values in a flat namespace.

    Writes to two different keys are two independent operations; nothing
    here groups them. Implementations return the raw string untouched, so
    a malformed value is the codec's problem, not the store's.
    """

    name = "abstract"

    def read(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def write(self, key: str, raw: str) -> None:
        raise NotImplementedError

    def clear(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(StoreAdapter):
    """Process-local store, the equivalent of one browsing context"""

    name = "memory"

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def write(self, key: str, raw: str) -> None:
        with self._lock:
            self._data[key] = raw

    def clear(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class PostgresStore(StoreAdapter):
    """Store backed by the kv_store table"""

    name = "postgres"

    def read(self, key: str) -> Optional[str]:
        connection = Database.get_connection()
        cursor = connection.cursor(cursor_factory=RealDictCursor)

        try:
            cursor.execute("SELECT value FROM kv_store WHERE key = %s", (key,))
            row = cursor.fetchone()
            return row['value'] if row else None

        except Exception as e:
            error_logger.error(f"SYSTEM_ERROR: Store read failed - Key: {key}, Error: {str(e)}")
            raise e
        finally:
            cursor.close()
            Database.return_connection(connection)

    def write(self, key: str, raw: str) -> None:
        connection = Database.get_connection()
        cursor = connection.cursor()

        try:
            cursor.execute('''
                INSERT INTO kv_store (key, value)
                VALUES (%s, %s)
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    updated_at = NOW()
            ''', (key, raw))
            connection.commit()

        except Exception as e:
            connection.rollback()
            error_logger.error(f"SYSTEM_ERROR: Store write failed - Key: {key}, Error: {str(e)}")
            raise e
        finally:
            cursor.close()
            Database.return_connection(connection)

    def clear(self, key: str) -> None:
        connection = Database.get_connection()
        cursor = connection.cursor()

        try:
            cursor.execute("DELETE FROM kv_store WHERE key = %s", (key,))
            connection.commit()

        except Exception as e:
            connection.rollback()
            error_logger.error(f"SYSTEM_ERROR: Store clear failed - Key: {key}, Error: {str(e)}")
            raise e
        finally:
            cursor.close()
            Database.return_connection(connection)


def get_store(backend: Optional[str] = None) -> StoreAdapter:
    """Build the store selected by STORE_BACKEND"""
    backend = (backend or STORE_BACKEND).lower()
    if backend == "memory":
        store = MemoryStore()
    elif backend == "postgres":
        if not DATABASE_URL:
            raise ValueError("DATABASE_URL is required for the postgres store backend")
        store = PostgresStore()
    else:
        raise ValueError(f"Unknown store backend: {backend}")

    info_logger.info(f"SYSTEM_INFO: Store initialized - Backend: {store.name}")
    return store
