from __future__ import annotations

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_insert(db: Session, model):
    """
    INSERT ... ON CONFLICT adapté au dialecte de la session.

    Postgres en prod, SQLite pour les tests ; les deux exposent
    on_conflict_do_update / on_conflict_do_nothing.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")
