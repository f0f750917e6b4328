"""Database session management."""

from typing import Generator

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,  # Prevent lazy loading issues
    )


def get_db(request: Request) -> Generator[Session, None, None]:
    """Dependency to get database session."""
    db = request.app.state.ctx.session_factory()
    try:
        yield db
    finally:
        db.close()
