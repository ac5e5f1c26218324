from contextlib import contextmanager
from typing import Generator

from sqlmodel import Session, SQLModel
from KitchenCart.models.models import engine
# Import all model modules to register them with SQLModel metadata
from KitchenCart.models.supplier_models import *
from KitchenCart.models.supplier_credentials import *
from KitchenCart.models.two_factor_models import *
from KitchenCart.models.scraping_log_models import *
from KitchenCart.models.task_models import *
from sqlalchemy import event


# Dependency that will provide a session to FastAPI routes
def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@contextmanager
def session_scope(bind=None) -> Generator[Session, None, None]:
    """
    Short-lived session for code outside a request: commits on success,
    rolls back on error. Loaded rows stay readable after the block exits.
    """
    session = Session(bind if bind is not None else engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# Function to create tables in the SQLite database
def create_db_and_tables():
    SQLModel.metadata.create_all(engine)


@event.listens_for(engine, "connect")
def enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
