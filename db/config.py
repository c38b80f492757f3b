from typing import Generator

from fastapi import Request
from pymongo import MongoClient
from pymongo.database import Database
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import DatabaseConfig, MongoConfig


def _lock_sqlite_on_begin(engine: Engine):
    """SQLite ignores FOR UPDATE; take the write lock when the transaction starts instead."""

    @event.listens_for(engine, "connect")
    def disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(config: DatabaseConfig) -> Engine:
    options = {"pool_pre_ping": True, "echo": config.echo}
    if config.url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        engine = create_engine(config.url, **options)
        _lock_sqlite_on_begin(engine)
        return engine

    options.update(
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_recycle=config.pool_recycle,
    )
    return create_engine(config.url, **options)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_mongo_client(config: MongoConfig) -> MongoClient:
    return MongoClient(config.uri)


def get_mongo_db(config: MongoConfig) -> Database:
    client = get_mongo_client(config)
    return client[config.db_name]


def get_mysql_session(request: Request) -> Generator[Session, None, None]:
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_archive_db(request: Request):
    return request.app.state.mongo_db
