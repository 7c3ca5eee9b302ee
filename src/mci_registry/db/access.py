# src/mci_registry/db/access.py
import logging
from sqlalchemy import URL, create_engine, event
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


def get_engine(db_settings, echo: bool = False, pool_pre_ping: bool = True) -> Engine:
    """
    Creates and returns a SQLAlchemy engine based on the loaded pydantic settings.
    Called once at startup; the engine is the process-wide database handle.
    """
    engine_args = {"echo": echo, "pool_pre_ping": pool_pre_ping}

    url_object = None

    match db_settings.type:
        case "postgresql":
            url_object = URL.create(
                drivername=f"postgresql+{db_settings.driver}",
                username=db_settings.username,
                password=db_settings.password,
                host=db_settings.host,
                port=db_settings.port,
                database=db_settings.db_name,
            )
            engine_args["pool_size"] = db_settings.pool_size

        case "sqlite3":
            if db_settings.in_memory:
                url_object = "sqlite:///:memory:"
            else:
                url_object = f"sqlite:///{db_settings.db_location}"

        case _:
            raise ValueError(f"Unsupported DB type: {db_settings.type}")

    if url_object is None:
        raise ValueError("Database URL object was not created. Check configuration.")

    engine = create_engine(url_object, **engine_args)
    if engine.dialect.name == "sqlite":
        configure_sqlite_pragmas(engine)
    return engine


def configure_sqlite_pragmas(engine: Engine) -> None:
    """WAL lets readers proceed while an ingestion commit holds the write lock."""

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA busy_timeout=10000")
            if engine.url.database not in (None, "", ":memory:"):
                cursor.execute("PRAGMA journal_mode=WAL")
        finally:
            cursor.close()
