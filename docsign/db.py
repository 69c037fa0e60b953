from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from docsign.models import Base


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # a single shared connection, otherwise every checkout gets a fresh empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=30)


def init_db(url: str) -> sessionmaker:
    engine = make_engine(url)
    Base.metadata.create_all(bind=engine)

    # Lightweight sanity query
    with engine.connect() as c:
        c.execute(text("SELECT 1"))

    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
