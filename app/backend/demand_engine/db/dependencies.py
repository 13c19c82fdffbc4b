"""Database dependencies for FastAPI endpoints."""

from sqlalchemy.orm import sessionmaker

from demand_engine.db.session import SessionLocal


def get_session_factory() -> sessionmaker:
    """Session factory handed to the SQL directory; each query opens its own session."""

    return SessionLocal
