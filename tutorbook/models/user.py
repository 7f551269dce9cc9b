"""User model definitions."""

import enum
from dataclasses import dataclass

from sqlalchemy import Column, Enum, Integer, String
from tutorbook.database import Base


class UserRole(str, enum.Enum):
    TUTOR = "tutor"
    STUDENT = "student"
    ADMIN = "admin"


class User(Base):
    """Represents an application user."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String)
    role = Column(Enum(UserRole, native_enum=False, length=16), nullable=False)


@dataclass(frozen=True)
class Actor:
    """An already-authenticated caller of the scheduling core."""

    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, role=UserRole(user.role))
