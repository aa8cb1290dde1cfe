# api_server/db/engine.py
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker

from api_server.db.models import Base
from automation import conf

logger = logging.getLogger(__name__)

# Cache the engine to avoid recreating it
_engine = None


def get_engine():
    """Get SQLAlchemy engine for the workflow database."""
    global _engine
    if _engine is None:
        db_url = conf.DATABASE_URL
        connect_args = {}
        if db_url.startswith("sqlite"):
            if db_url == f"sqlite:///{conf.SERVER_DB_PATH}":
                conf.SERVER_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
            # Scheduler threads and request handlers share the file
            connect_args["check_same_thread"] = False
        _engine = create_engine(db_url, connect_args=connect_args)
        # Create tables if they don't exist (checkfirst=True prevents errors if tables already exist)
        Base.metadata.create_all(bind=_engine, checkfirst=True)
        logger.debug("Workflow DB schema ready → %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def get_session():
    """Get database session for the workflow database."""
    engine = get_engine()
    # Rows handed back to callers stay readable after commit/close
    Session = scoped_session(sessionmaker(bind=engine, expire_on_commit=False))
    return Session()
