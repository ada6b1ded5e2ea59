"""
Account-side tables the subscription service reads (profiles, roles) and
writes (in-app notifications).
"""
from datetime import datetime
import uuid

from sqlmodel import Field, SQLModel

from predictvip.db.models.subscription import utcnow


class Profile(SQLModel, table=True):
    """Registered account, one row per auth user."""
    __tablename__ = "profiles"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    email: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)


class UserRole(SQLModel, table=True):
    """Role grants; only `admin` matters here."""
    __tablename__ = "user_roles"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    role: str


class Notification(SQLModel, table=True):
    """In-app alert shown to a registered user."""
    __tablename__ = "notifications"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    type: str
    title: str
    message: str
    read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
