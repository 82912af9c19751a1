import logging
import os
from pathlib import Path

from sqlmodel import SQLModel, create_engine

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)

DATABASE_URL = os.getenv("BACHAT_DATABASE_URL") or f"sqlite:///{DATA_DIR / 'bachat.db'}"


def build_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=False, connect_args=connect_args, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)


def init_db() -> None:
    """Create database tables if they do not exist."""
    # importing registers every table on SQLModel.metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info("Database tables ready at %s", engine.url.render_as_string(hide_password=True))
