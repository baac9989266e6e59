import enum
from datetime import datetime

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    String,
    DateTime,
    Enum,
    ForeignKey,
    Index,
)

Base = declarative_base()


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    LIBRARIAN = "LIBRARIAN"
    STUDENT = "STUDENT"


# Self-scoped tier: may only see its own loans
LEAST_PRIVILEGED_ROLE = Role.STUDENT


class CopyStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    ISSUED = "ISSUED"
    LOST = "LOST"


class LoanStatus(str, enum.Enum):
    ISSUED = "ISSUED"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"


OPEN_LOAN_STATUSES = (LoanStatus.ISSUED, LoanStatus.OVERDUE)


class Book(Base):
    __tablename__ = "book"
    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="ck_book_total_non_negative"),
        CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="ck_book_available_in_range",
        ),
    )

    # PK as Integer autoincrement so SQLite happily generates IDs
    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    author = Column(String(255))
    publisher = Column(String(255))
    year = Column(Integer)

    # Materialized from copy rows; only catalog.py writes these
    total_copies = Column(Integer, nullable=False, default=0)
    available_copies = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    copies = relationship(
        "Copy",
        back_populates="book",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Copy(Base):
    __tablename__ = "copy"
    __table_args__ = (Index("ix_copy_book_status", "book_id", "status"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(
        Integer, ForeignKey("book.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(
        Enum(CopyStatus, name="copy_status"),
        nullable=False,
        default=CopyStatus.AVAILABLE,
    )
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    book = relationship("Book", back_populates="copies")


class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(100), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(Enum(Role, name="user_role"), nullable=False, default=Role.STUDENT)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Loan(Base):
    __tablename__ = "loan"
    __table_args__ = (
        CheckConstraint("renew_count >= 0", name="ck_loan_renew_count"),
        Index("ix_loan_status_due", "status", "due_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.id"), nullable=False, index=True)
    # Removing a copy keeps its lending history, detached
    copy_id = Column(
        Integer, ForeignKey("copy.id", ondelete="SET NULL"), nullable=True, index=True
    )
    issue_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime)
    status = Column(
        Enum(LoanStatus, name="loan_status"),
        nullable=False,
        default=LoanStatus.ISSUED,
    )
    renew_count = Column(Integer, nullable=False, default=0)

    user = relationship("User")
    copy = relationship("Copy")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATUSES
