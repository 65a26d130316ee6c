"""
User Model - Clients, Drivers and Admins
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean

from app.db.database import Base


class UserRole(str, enum.Enum):
    CLIENT = "client"
    DRIVER = "driver"
    ADMIN = "admin"


class User(Base):
    """One table for every role; role-specific data lives in the role's own tables
    (client_wallets for clients, driver_earnings for drivers)."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(150), nullable=True)
    phone_number = Column(String(20), nullable=True)
    role = Column(
        SQLEnum(UserRole, values_callable=lambda x: [e.value for e in x]),
        default=UserRole.CLIENT,
        nullable=False,
    )
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_client(self) -> bool:
        return self.role == UserRole.CLIENT

    @property
    def is_driver(self) -> bool:
        return self.role == UserRole.DRIVER

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@")[0]
