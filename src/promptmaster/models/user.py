from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, String

from ..database import Base, new_id


class User(Base):
    """SQLAlchemy model for application users."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, unique=True, index=True, nullable=False)
    avatar = Column(String, nullable=False)
    role = Column(String, default="user", nullable=False)
    password_hash = Column(String, nullable=False)
    is_first_login = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_login_at = Column(DateTime, nullable=True)
