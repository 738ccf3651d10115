# trigger_server/db/engine.py
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from sheets import conf
from sheets.db.models import Base as CatalogBase
from trigger_server.db.models import Base

logger = logging.getLogger(__name__)

# Cache the engine to avoid recreating it
_engine = None
_session_factory = None


def configure_engine(db_url: str | None = None):
    """(Re)build the engine and session factory for the given database URL."""
    global _engine, _session_factory
    db_url = db_url or conf.DATABASE_URL

    connect_args = {}
    if db_url.startswith("sqlite"):
        conf.ASSETS_DIR.mkdir(parents=True, exist_ok=True)
        connect_args["check_same_thread"] = False
        engine = create_engine(db_url, connect_args=connect_args)
    else:
        # Validate + execute must see committed data only
        engine = create_engine(db_url, isolation_level="READ COMMITTED", pool_pre_ping=True)

    # Create tables if they don't exist (checkfirst=True prevents errors if tables already exist)
    CatalogBase.metadata.create_all(bind=engine, checkfirst=True)
    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.debug("Server DB schema ready → %s", engine.url.render_as_string(hide_password=True))

    if _engine is not None:
        _engine.dispose()
    _engine = engine
    _session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    return _engine


def get_engine():
    """Get SQLAlchemy engine for server database."""
    if _engine is None:
        configure_engine()
    return _engine


def get_session() -> Session:
    """Get database session for server database."""
    if _session_factory is None:
        configure_engine()
    return _session_factory()


def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
