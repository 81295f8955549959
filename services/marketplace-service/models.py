"""Database models for the marketplace service."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_id() -> str:
    """Generate a 32-character hex identifier."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityAccount(Base):
    """Credential account owned by the identity provider."""
    __tablename__ = "identity_accounts"

    uid = Column(String(32), primary_key=True, default=new_id)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class User(Base):
    """User profile, keyed by the identity provider id."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    identity_id = Column(String(32), unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    user_type = Column(String, default="buyer")
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Product(Base):
    """Product listing."""
    __tablename__ = "products"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(32), index=True, nullable=False)
    seller_email = Column(String, nullable=False)
    name = Column(String, index=True, nullable=False)
    description = Column(Text, nullable=False)
    price = Column(Float, nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=1)
    is_available = Column(Boolean, nullable=False, default=True)
    category = Column(String, index=True, nullable=False)
    condition = Column(String, nullable=False)
    brand = Column(String, index=True)
    side = Column(String)
    part_number = Column(String)
    is_on_offer = Column(Boolean, nullable=False, default=False)
    original_price = Column(Float)
    discount_percentage = Column(Float)
    image_url = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
