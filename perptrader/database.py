"""SQLAlchemy models and connection setup."""

import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    create_engine, inspect, text,
    Column, Integer, Float, String, Boolean, DateTime, Text, Index, UniqueConstraint,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/perptrader.db")

Base = declarative_base()


class PreferencesDB(Base):
    """Trading preferences - a single row with id=1."""
    __tablename__ = "preferences"

    id = Column(Integer, primary_key=True)

    order_amount = Column(Float, nullable=False, default=50.0)
    order_type = Column(String(10), nullable=False, default="market")
    margin_mode = Column(String(10), nullable=False, default="cross")
    leverage = Column(Integer, nullable=False, default=20)
    leverage_source = Column(String(10), nullable=False, default="signal")
    slippage_percent = Column(Float, nullable=False, default=1.0)

    trailing_stop_variance = Column(Float, nullable=False, default=2.0)
    trailing_stop_type = Column(String(10), nullable=False, default="tpsl")
    reduce_only = Column(Boolean, nullable=False, default=True)

    auto_execute = Column(Boolean, nullable=False, default=True)
    confirm_before_order = Column(Boolean, nullable=False, default=False)
    channel_id = Column(String(50), nullable=True)

    use_dca = Column(Boolean, nullable=False, default=False)
    dca_mode = Column(String(10), nullable=False, default="display")

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TraderWhitelistDB(Base):
    """Traders whose calls may be executed. Empty table = everyone."""
    __tablename__ = "trader_whitelist"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    name_key = Column(String(100), nullable=False, unique=True)  # lowercased name
    created_at = Column(DateTime, default=datetime.utcnow)


class SignalLogDB(Base):
    """Every gated trade call, accepted or rejected."""
    __tablename__ = "signal_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signal_id = Column(String(12), nullable=False, unique=True)

    # Source message
    channel_id = Column(String(50))
    message_id = Column(String(50), index=True)
    raw_content = Column(Text)

    # Parsed call
    ticker = Column(String(30), index=True)
    inst_id = Column(String(40))
    side = Column(String(5))
    entry_price = Column(Float)
    leverage = Column(Integer)
    trader_name = Column(String(100))
    tp_levels = Column(Text)  # JSON
    dca_levels = Column(Text)  # JSON

    # Gate decision
    is_valid = Column(Boolean, default=False)
    was_executed = Column(Boolean, default=False)
    rejection_reason = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_signal_log_created', 'created_at'),
    )


class SignalEditDB(Base):
    """Version history of edits to a signal message."""
    __tablename__ = "signal_edits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(50), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    raw_content = Column(Text)
    status = Column(String(20))  # 'active' or 'closed'
    tp_hits = Column(Text)  # JSON list of newly hit levels
    final_pnl = Column(String(20))
    is_closed = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('message_id', 'version', name='uq_signal_edits_message_version'),
    )


class OrderHistoryDB(Base):
    """Entry orders placed on the exchange and their protective stops."""
    __tablename__ = "order_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signal_id = Column(String(12), index=True)

    # Order details
    inst_id = Column(String(40), nullable=False, index=True)
    side = Column(String(5), nullable=False)  # 'buy' or 'sell'
    position_side = Column(String(5), nullable=False)  # 'long' or 'short'
    order_type = Column(String(10), nullable=False)
    entry_price = Column(Float)
    size = Column(Float, nullable=False)
    leverage = Column(Integer)
    margin_mode = Column(String(10))

    # Exchange references
    order_id = Column(String(50), unique=True, index=True)
    tpsl_id = Column(String(50))
    algo_id = Column(String(50))
    stop_price = Column(Float)
    dca_orders = Column(Text)  # JSON list of DCA order ids

    # Status: 'pending', 'filled', 'protected', 'stop_failed', 'closed'
    status = Column(String(20), nullable=False, default='pending', index=True)

    # Call context
    trader_name = Column(String(100))
    tp_levels = Column(Text)  # JSON
    dca_levels = Column(Text)  # JSON

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_order_history_inst_status', 'inst_id', 'status'),
        Index('ix_order_history_created', 'created_at'),
    )


def create_db_engine(url: Optional[str] = None) -> Engine:
    """Create an engine. SQLite connections are shared across the service threads."""
    url = url or DATABASE_URL

    if not url.startswith("sqlite"):
        return create_engine(url)

    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)

    db_path = url.replace("sqlite:///", "", 1)
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args={"check_same_thread": False})


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine):
    """Create all tables and run migrations."""
    Base.metadata.create_all(bind=engine)

    inspector = inspect(engine)

    # Migration: Add stop_price column to order_history if missing
    if 'order_history' in inspector.get_table_names():
        columns = [c['name'] for c in inspector.get_columns('order_history')]
        if 'stop_price' not in columns:
            with engine.connect() as conn:
                conn.execute(text("ALTER TABLE order_history ADD COLUMN stop_price FLOAT"))
                conn.commit()
