import logging
from contextlib import contextmanager
from typing import Dict, Any, List, Optional, Generator, Type, Union
from pathlib import Path
from urllib.parse import quote_plus

from sqlalchemy import create_engine, text, MetaData, event, inspect
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.exc import SQLAlchemyError

from batchex.config.batchex_config import BatchExConfig

# Configure logging
logger = logging.getLogger(__name__)

# Global variables
metadata = MetaData()
Base = declarative_base(metadata=metadata)

REQUIRED_TABLES = [
    'projects',
    'image_batches',
    'images',
    'extraction_rows',
    'queue_jobs',
    'llm_endpoints',
    'endpoint_usage',
    'user_limits',
    'user_endpoint_limits',
    'processing_metrics',
]


def get_base() -> Type:
    """
    Get the base class for declarative models

    Returns:
        Base class for declarative models
    """
    return Base


class Database:
    """
    Database connection manager for BatchEx

    Handles SQLite and PostgreSQL connections with proper configuration
    and connection pooling. ``type: memory`` gives a private in-memory SQLite
    database shared across threads, which is what the tests use.
    """

    def __init__(self, config: Optional[BatchExConfig] = None):
        """
        Initialize database connection

        Args:
            config: BatchExConfig instance. If None, uses the global configuration.
        """
        self.config = config if config is not None else BatchExConfig()
        self.engine = None
        self.Session = None
        self._initialize()

    @classmethod
    def in_memory(cls) -> 'Database':
        """Create a throwaway in-memory database with all tables"""
        db = cls(BatchExConfig.from_dict({'database': {'type': 'memory'}}))
        db.create_tables()
        return db

    def _initialize(self) -> None:
        db_config = self.config.get('database', {})
        db_type = db_config.get('type', 'sqlite')

        try:
            if db_type == 'memory':
                self.engine = create_engine(
                    'sqlite://',
                    poolclass=StaticPool,
                    connect_args={'check_same_thread': False}
                )
                self._enable_sqlite_foreign_keys()

            elif db_type == 'sqlite':
                db_path = Path(db_config.get('path', 'batchex.db'))

                # Ensure directory exists
                db_path.parent.mkdir(parents=True, exist_ok=True)

                self.engine = create_engine(
                    f'sqlite:///{db_path}',
                    poolclass=QueuePool,
                    pool_size=5,
                    max_overflow=10,
                    pool_timeout=30,
                    pool_recycle=1800,
                    connect_args={
                        'timeout': 30,
                        'check_same_thread': False
                    }
                )
                self._enable_sqlite_foreign_keys()

            elif db_type in ['postgresql', 'postgres']:
                postgres_config = db_config.get('postgres', db_config.get('postgresql', {}))
                host = postgres_config.get('host', 'localhost')
                port = postgres_config.get('port', 5432)
                database = postgres_config.get('database', 'batchex')

                # URL-encode user and password
                user_encoded = quote_plus(postgres_config.get('user', 'postgres'))
                password_encoded = quote_plus(postgres_config.get('password', '') or '')
                sslmode = postgres_config.get('sslmode', 'disable' if host in ['localhost', '127.0.0.1'] else 'require')

                connection_url = f'postgresql://{user_encoded}:{password_encoded}@{host}:{port}/{database}?sslmode={sslmode}'
                self.engine = create_engine(
                    connection_url,
                    poolclass=QueuePool,
                    pool_size=5,
                    max_overflow=10,
                    pool_timeout=30,
                    pool_recycle=1800
                )
            else:
                raise ValueError(f"Unsupported database type: {db_type}")

            # Test connection
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            self.Session = sessionmaker(
                bind=self.engine,
                expire_on_commit=False,
                autocommit=False,
                autoflush=False
            )
            logger.debug(f"Initialized {db_type} database")
        except SQLAlchemyError as e:
            logger.error(f"Database initialization failed: {str(e)}")
            raise RuntimeError(f"Failed to initialize database: {str(e)}")

    def _enable_sqlite_foreign_keys(self) -> None:
        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    def get_engine(self):
        """Get SQLAlchemy engine instance"""
        return self.engine

    def session(self) -> Session:
        """
        Get a database session

        Returns:
            SQLAlchemy session
        """
        return self.Session()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Get a database session with transaction management

        Yields:
            SQLAlchemy session
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database transaction error: {str(e)}")
            raise
        finally:
            session.close()

    def execute(self, query: Union[str, Any], params: Optional[Dict] = None) -> Any:
        """
        Execute a SQL query

        Args:
            query: SQL query string or SQLAlchemy query
            params: Query parameters

        Returns:
            Query result
        """
        with self.transaction() as session:
            if isinstance(query, str):
                return session.execute(text(query), params or {})
            return session.execute(query)

    def fetch_all(self, query: Union[str, Any], params: Optional[Dict] = None) -> List[Dict]:
        """Fetch all rows from the database as dictionaries"""
        result = self.execute(query, params)
        return [dict(row._mapping) for row in result.fetchall()]

    def create_tables(self) -> None:
        """Create all tables defined in the metadata and verify the required ones exist"""
        # Importing models registers them on the shared metadata
        from batchex.db import models  # noqa: F401

        try:
            Base.metadata.create_all(self.engine)
        except Exception as e:
            logger.error(f"Failed to create database tables: {str(e)}")
            raise

        existing = set(inspect(self.engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            raise RuntimeError(f"Missing required tables after creation: {', '.join(missing)}")
        logger.info("Database tables created successfully")

    def drop_tables(self) -> None:
        """Drop all tables defined in the metadata"""
        Base.metadata.drop_all(self.engine)

    def close(self) -> None:
        """Close database connection"""
        if self.engine:
            self.engine.dispose()
