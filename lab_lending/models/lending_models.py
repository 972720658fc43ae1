import uuid

from sqlalchemy import Column, Date, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func

from lab_lending.db.base import Base


def new_document_id() -> str:
    return uuid.uuid4().hex


class UserProfile(Base):
    __tablename__ = "users"

    UserID = Column(String(64), primary_key=True)
    Email = Column(String(255), nullable=False)
    DisplayName = Column(String(255))
    Phone = Column(String(50))
    Role = Column(String(20), nullable=False, default="student")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


class Credential(Base):
    __tablename__ = "credentials"

    UserID = Column(String(64), primary_key=True, default=new_document_id)
    Email = Column(String(255), nullable=False, unique=True)
    PasswordHash = Column(String(128), nullable=False)
    PasswordSalt = Column(String(64), nullable=False)
    PasswordUpdatedAt = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())


class Material(Base):
    __tablename__ = "materials"

    MaterialID = Column(String(64), primary_key=True, default=new_document_id)
    Name = Column(String(255), nullable=False)
    Category = Column(String(100))
    Description = Column(Text)
    Quantity = Column(Integer, nullable=False, default=0)
    Available = Column(Integer, nullable=False, default=0)
    Location = Column(String(255))
    ImageUrl = Column(String(500))
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    # Every UPDATE is guarded by "WHERE Version = <read version>".
    __mapper_args__ = {"version_id_col": Version}


class LoanRequest(Base):
    __tablename__ = "requests"
    __table_args__ = (
        Index("ix_requests_user_created", "UserID", "CreatedDate"),
        Index("ix_requests_status_created", "Status", "CreatedDate"),
    )

    RequestID = Column(String(64), primary_key=True, default=new_document_id)
    UserID = Column(String(64), nullable=False)
    # No foreign key: deleting a material leaves its requests orphaned.
    MaterialID = Column(String(64), nullable=False)
    MaterialName = Column(String(255))
    MaterialImage = Column(String(500))
    StudentName = Column(String(255))
    StudentEmail = Column(String(255))
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    Purpose = Column(String(1000))
    Status = Column(String(20), nullable=False, default="pending")
    AdminNotes = Column(String(1000))
    CreatedDate = Column(DateTime)
    UpdatedDate = Column(DateTime)
