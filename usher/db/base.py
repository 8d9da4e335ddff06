# usher/db/base.py

"""
Single source of truth for the SQLAlchemy Declarative Base.

Host applications that keep their own Base can still create Usher's tables
through the migration engine; this Base only backs the ORM mappings in
usher.models.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all Usher ORM models."""
    pass
