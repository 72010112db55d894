# einvoice/db.py

from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    insert,
    select,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


SCHEMA_VERSION = 1

Base = declarative_base()


class MetaRow(Base):
    __tablename__ = "meta"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


class InvoiceRow(Base):
    __tablename__ = "invoices"

    id = Column(String, primary_key=True)

    # reserved header fields (not filled by the QR parser yet)
    inv_num = Column(String, nullable=True)
    inv_date = Column(String, nullable=True)
    random_code = Column(String, nullable=True)
    seller_id = Column(String, nullable=True)

    # Decimal as text to keep it exact
    total = Column(String, nullable=True)

    raw_left = Column(Text, nullable=False)
    raw_right = Column(Text, nullable=True)

    # epoch milliseconds (UTC)
    created_at = Column(Integer, nullable=False, index=True)


class InvoiceItemRow(Base):
    __tablename__ = "invoice_items"

    id = Column(String, primary_key=True)

    invoice_id = Column(
        String,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    position = Column(Integer, nullable=False)
    name = Column(Text, nullable=False)
    qty = Column(String, nullable=False)
    unit_price = Column(String, nullable=False)


def create_db_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True)

    if not url.database or url.database == ":memory:":
        # One shared connection, otherwise every checkout sees a fresh empty DB.
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def _migrate_v1(conn: Connection) -> None:
    Base.metadata.create_all(
        conn,
        tables=[InvoiceRow.__table__, InvoiceItemRow.__table__],
        checkfirst=True,
    )


def migrate(engine: Engine) -> int:
    """Bring the schema up to SCHEMA_VERSION; returns the resulting version."""
    meta = MetaRow.__table__

    with engine.begin() as conn:
        meta.create(conn, checkfirst=True)
        stored = conn.execute(select(meta.c.value).where(meta.c.key == "schema_version")).scalar()
        version = int(stored) if stored is not None else 0

        if version < 1:
            _migrate_v1(conn)
            version = SCHEMA_VERSION

        if stored is None or int(stored) != version:
            conn.execute(delete(meta).where(meta.c.key == "schema_version"))
            conn.execute(insert(meta).values(key="schema_version", value=str(version)))

    return version
