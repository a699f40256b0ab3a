from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.config import settings

engine = create_async_engine(settings.database_url, pool_pre_ping=True)

if engine.dialect.name == "sqlite":
  # pysqlite/aiosqlite only honour SAVEPOINT when the driver's own transaction handling is off.
  @event.listens_for(engine.sync_engine, "connect")
  def _sqlite_connect(dbapi_connection, _record) -> None:
    dbapi_connection.isolation_level = None

  @event.listens_for(engine.sync_engine, "begin")
  def _sqlite_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
