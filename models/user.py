"""
User model - minimal account record the flow engine reads.
"""
from sqlalchemy import Column, Integer, BigInteger, String, Boolean
from models.base import Base, AuditMixin


class User(Base, AuditMixin):
    __tablename__ = 'users'

    userID = Column(Integer, primary_key=True, autoincrement=True)
    telegramID = Column(BigInteger, nullable=True, unique=True, index=True)

    firstname = Column(String, nullable=False)
    surname = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)

    isAdmin = Column(Boolean, default=False, nullable=False)

    @property
    def displayName(self) -> str:
        return " ".join(part for part in (self.firstname, self.surname) if part)

    def __repr__(self):
        return f"<User(userID={self.userID}, name={self.firstname}, admin={self.isAdmin})>"
