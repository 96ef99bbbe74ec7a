"""
Database connection and setup
SQLite database with SQLAlchemy
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from dashboard.models import Base


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker:
    """
    Create an engine for database_url and return a session factory bound to it.
    Tables are created on first use (safe to call multiple times).
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Store calls run in worker threads
        connect_args["check_same_thread"] = False

    engine = create_engine(database_url, connect_args=connect_args, echo=echo)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
