"""
Declarative base shared by the snapshot, change event, ghost account and
analysis run tables.

Only Base lives here; models import it, never the other way round.
Constraint and index names follow a fixed convention so the same schema is
produced on PostgreSQL and on the SQLite databases used in tests.
"""

from sqlalchemy import MetaData
from sqlalchemy.orm import declarative_base

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

Base = declarative_base(metadata=MetaData(naming_convention=NAMING_CONVENTION))
