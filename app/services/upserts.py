"""Dialect-aware INSERT ... ON CONFLICT helpers.

Production runs on PostgreSQL, tests on SQLite. Both support
ON CONFLICT DO NOTHING / DO UPDATE, but through different dialect
constructs, so callers get the right ``insert()`` for the bound engine.
"""

from sqlalchemy.dialects import postgresql, sqlite

from app.extensions import db


def insert_for(model):
    """Return a dialect-specific insert() for ``model``'s table."""
    if db.engine.dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


def insert_ignore(model, index_elements, **values):
    """INSERT a row, doing nothing if it collides on ``index_elements``.

    Returns True if this call inserted the row.
    """
    stmt = insert_for(model).values(**values).on_conflict_do_nothing(
        index_elements=index_elements
    )
    result = db.session.execute(stmt)
    return result.rowcount == 1
