from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from reconciliation.models import Base


def make_session_factory() -> sessionmaker[Session]:
    """In-memory SQLite database shared by every session of one test."""
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # pysqlite only emits SAVEPOINT correctly once it stops managing transactions itself
    @event.listens_for(engine, 'connect')
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _emit_begin(conn):
        # sessions share one StaticPool connection; another session may already hold a transaction
        if not conn.connection.dbapi_connection.in_transaction:
            conn.exec_driver_sql('BEGIN')

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
