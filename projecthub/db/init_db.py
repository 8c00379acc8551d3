import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine

from projecthub.core.retry import ReconnectPolicy, acquire_with_retry
from projecthub.db.base import Base
from projecthub.db.session import engine as default_engine

logger = logging.getLogger(__name__)


def wait_for_db(engine: Engine, policy: ReconnectPolicy | None = None) -> None:
    def ping():
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    acquire_with_retry(ping, policy, name="database")


def init_db(engine: Engine = default_engine, policy: ReconnectPolicy | None = None) -> None:
    wait_for_db(engine, policy)
    Base.metadata.create_all(bind=engine)
    logger.info("database schema ready")
