"""
Database connection and session management.

This module configures the application's database engine and provides a
function to initialize the database schema based on the defined SQLModels.
"""

import logging
from pathlib import Path

from sqlalchemy.engine import Engine, make_url
from sqlmodel import SQLModel, create_engine

from ..config import get_settings
from . import models  # noqa: F401 - Ensures models are registered with SQLModel metadata

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """
    Creates an engine for the given URL.

    SQLite needs `check_same_thread=False` because FastAPI serves requests and
    background tasks from a thread pool.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


engine = build_engine(get_settings().database_url)


def create_db_and_tables(target: Engine = engine) -> None:
    """
    Initializes the database by creating all tables defined by SQLModel classes.

    This function is idempotent; it will not attempt to recreate tables that
    already exist in the database. It should be called once on application startup.
    """
    url = make_url(str(target.url))
    if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    logger.info("Initializing database at %s", url.render_as_string(hide_password=True))
    SQLModel.metadata.create_all(target)
    logger.info("Database tables created or verified successfully.")
