# Database models for broker connections, orders and their audit trail
from sqlalchemy import (
    Column, Integer, String, Float, JSON, Boolean, DateTime, Text, ForeignKey, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from .connection import Base

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB, "postgresql")


class BrokerConnection(Base):
    """One application user's link to one broker account"""
    __tablename__ = "broker_connections"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    broker_kind = Column(String, nullable=False)          # BrokerKind value
    connection_name = Column(String, nullable=False)
    webhook_id = Column(String, nullable=False, unique=True, index=True)

    # Secrets, all vault-encrypted, nullable per broker kind
    encrypted_api_key = Column(Text)
    encrypted_api_secret = Column(Text)
    encrypted_client_code = Column(Text)
    encrypted_password = Column(Text)
    encrypted_pin = Column(Text)
    encrypted_two_fa = Column(Text)

    # Non-secret identifiers
    broker_user_id = Column(String)
    redirect_uri = Column(String)
    broker_specific_config = Column(JSONType, nullable=False, default=dict)

    # Session
    encrypted_access_token = Column(Text)
    encrypted_refresh_token = Column(Text)
    encrypted_feed_token = Column(Text)
    access_token_expires_at = Column(DateTime(timezone=True))
    state = Column(String, nullable=False, default="created")
    is_active = Column(Boolean, default=True, nullable=False)
    needs_credentials = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_sync = Column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_broker_connections_user_active', 'user_id', 'is_active'),
        Index('idx_broker_connections_kind_state', 'broker_kind', 'state'),
    )


class Order(Base):
    """One placed-or-attempted trade; never deleted"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    # Orders outlive their connection
    broker_connection_id = Column(Integer, ForeignKey("broker_connections.id", ondelete="SET NULL"),
                                  nullable=True, index=True)
    broker_order_id = Column(String, index=True)

    symbol = Column(String, nullable=False)
    exchange = Column(String, nullable=False, default="NSE")
    transaction_type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    order_type = Column(String, nullable=False, default="MARKET")
    product = Column(String, nullable=False, default="MIS")
    price = Column(Float)
    trigger_price = Column(Float)
    validity = Column(String, nullable=False, default="DAY")

    status = Column(String, nullable=False, default="PENDING", index=True)
    status_message = Column(Text)
    executed_price = Column(Float)
    executed_quantity = Column(Integer)
    pnl = Column(Float, default=0.0)

    webhook_data = Column(JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_orders_status_broker_order', 'status', 'broker_order_id'),
    )


class Position(Base):
    """Net position snapshot as last reported by the broker"""
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    broker_connection_id = Column(Integer, ForeignKey("broker_connections.id", ondelete="CASCADE"),
                                  nullable=False, index=True)
    symbol = Column(String, nullable=False)
    exchange = Column(String)
    product = Column(String)
    quantity = Column(Integer, nullable=False, default=0)
    average_price = Column(Float, default=0.0)
    last_price = Column(Float, default=0.0)
    pnl = Column(Float, default=0.0)
    raw = Column(JSONType)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class WebhookLog(Base):
    """Inbound webhook audit row"""
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    webhook_id = Column(String, nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"))
    payload = Column(JSONType)
    status = Column(String, nullable=False, default="RECEIVED")
    error_message = Column(Text)
    processing_time_ms = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
