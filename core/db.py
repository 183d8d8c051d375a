import os
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from dotenv import load_dotenv

# .env 파일에서 환경변수 로드
load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./deployments.db")

# Base 정의 (모델에서 import)
Base = declarative_base()

# 싱글턴 엔진/세션
engine = None
SessionLocal = None


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # sqlite는 FK 검사가 기본 off
    module = type(dbapi_connection).__module__
    if "sqlite" not in module:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_engine(db_url=None):
    global engine, SessionLocal
    if engine is None:
        db_url = db_url or DATABASE_URL
        connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
        engine = create_async_engine(db_url, future=True, connect_args=connect_args)
        SessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine


async def create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    SessionLocal = None


def get_sessionmaker():
    return SessionLocal


# SQLAlchemy 동기 엔진 (시드 스크립트용)
def get_sync_engine(db_url=None):
    db_url = db_url or DATABASE_URL
    sync_url = db_url.replace("+aiosqlite", "") if "+aiosqlite" in db_url else db_url
    return create_engine(sync_url, future=True)
