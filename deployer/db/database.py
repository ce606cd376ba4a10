"""
Database engine and session management.
Default database: data/deployer.db (SQLite), override with DEPLOYER_DATABASE_URL.
"""
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

# Base class for models
Base = declarative_base()


class Database:
    """
    Owns one engine and its session factory.

    Constructed explicitly and passed to whoever needs it; call init() before
    use and close() on shutdown.
    """

    def __init__(self, url: str):
        self.url = url
        self._engine = None
        self._session_factory = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def init(self) -> None:
        """Create the engine and tables. Safe to call multiple times."""
        if self._engine is not None:
            return

        connect_args = {}
        if self.is_sqlite:
            # Ensure the parent directory of a file database exists
            db_path = self.url.split("sqlite:///", 1)[-1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            # Worker slots use sessions from threads
            connect_args = {"check_same_thread": False, "timeout": 30}

        self._engine = create_engine(
            self.url,
            connect_args=connect_args,
            echo=False,  # No SQL logging (security)
        )

        if self.is_sqlite:
            @event.listens_for(self._engine, "connect")
            def _sqlite_pragmas(dbapi_conn, _record):
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        self._session_factory = sessionmaker(
            autocommit=False, autoflush=False, bind=self._engine
        )

        from deployer.db.models import DeployJob, DeployJobLog  # noqa: F401
        Base.metadata.create_all(bind=self._engine)

    def session(self):
        """Open a new session. Caller closes it."""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized; call init() first")
        return self._session_factory()

    def close(self) -> None:
        """Dispose of the engine's connection pool."""
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None
