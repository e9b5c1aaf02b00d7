import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Optional, Union
from urllib.parse import quote_plus

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from invoex.config.invoex_config import InvoexConfig

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """
    Database connection manager

    Handles SQLite and PostgreSQL connections with connection pooling. All
    writes should go through ``transaction()`` so that a failure rolls the
    whole unit of work back.
    """

    def __init__(self, config: Optional[Union[InvoexConfig, Dict[str, Any]]] = None):
        """
        Args:
            config: InvoexConfig, or a plain ``database`` section dictionary
        """
        if isinstance(config, InvoexConfig):
            self.db_config = config.section('database')
        else:
            self.db_config = dict(config or {})
        self.engine: Optional[Engine] = None
        self.Session: Optional[sessionmaker] = None
        self._initialize()

    def _initialize(self) -> None:
        """Create the engine, retrying briefly if the server is not reachable yet"""
        max_retries = 3
        retry_delay = 1  # seconds

        for attempt in range(max_retries):
            try:
                self.engine = self._create_engine()
                with self.engine.connect() as conn:
                    conn.execute(text('SELECT 1'))
                self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
                logger.debug(f"Database initialized ({self.db_config.get('type', 'sqlite')})")
                return
            except OperationalError as e:
                if attempt == max_retries - 1:
                    logger.error(f"Failed to initialize database after {max_retries} attempts: {str(e)}")
                    raise
                logger.warning(f"Database connection attempt {attempt + 1} failed: {str(e)}")
                time.sleep(retry_delay)
                retry_delay *= 2

    def _create_engine(self) -> Engine:
        db_type = self.db_config.get('type', 'sqlite')

        if db_type == 'sqlite':
            db_path = str(self.db_config.get('path', 'invoex.db'))
            if db_path == ':memory:':
                engine = create_engine(
                    'sqlite://',
                    poolclass=StaticPool,
                    connect_args={'check_same_thread': False}
                )
            else:
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
                engine = create_engine(
                    f'sqlite:///{db_path}',
                    poolclass=QueuePool,
                    pool_size=5,
                    max_overflow=10,
                    pool_timeout=30,
                    connect_args={
                        'timeout': 30,  # seconds to wait on a locked database
                        'check_same_thread': False
                    }
                )

            @event.listens_for(engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            return engine

        if db_type in ['postgresql', 'postgres']:
            postgres_config = self.db_config.get('postgres', {})
            host = postgres_config.get('host', 'localhost')
            port = postgres_config.get('port', 5432)
            database = postgres_config.get('database', 'invoex')
            user = quote_plus(str(postgres_config.get('user', 'postgres')))
            password = quote_plus(str(postgres_config.get('password', '')))
            sslmode = postgres_config.get('sslmode', 'prefer')
            return create_engine(
                f'postgresql://{user}:{password}@{host}:{port}/{database}?sslmode={sslmode}',
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
                pool_pre_ping=True
            )

        raise ValueError(f"Unsupported database type: {db_type}")

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Session with transaction management

        Commits when the block exits cleanly, rolls back and re-raises otherwise.
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

    def create_tables(self) -> None:
        """Create all tables defined in the metadata"""
        # registers the ORM classes on Base.metadata
        from invoex.db import models  # noqa: F401
        try:
            Base.metadata.create_all(self.engine)
            logger.info("Database tables created successfully")
        except Exception as e:
            logger.error(f"Failed to create database tables: {str(e)}")
            raise

    def dispose(self) -> None:
        if self.engine:
            self.engine.dispose()
