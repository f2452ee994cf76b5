from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from helpdesk.database import Base


ROLES = ("user", "admin", "superadmin")
STAFF_ROLES = ("admin", "superadmin")
ACCOUNT_STATUSES = ("active", "suspended", "frozen")
COMPANY_STATUSES = ("active", "suspended", "frozen", "pending")
PRIORITIES = ("low", "medium", "high")
# Lifecycle order; a ticket only ever moves to the right.
TICKET_STATUSES = ("pending", "assigned", "in-progress", "resolved")
ATTACHMENT_KINDS = ("user", "admin")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# 👤 USERS
class User(Base):
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(150), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="user")
    employee_code = Column(String(50), unique=True, nullable=True)
    company_name = Column(String(150), nullable=True, index=True)
    department_id = Column(Integer, ForeignKey("departments.department_id"), nullable=True)
    phone_number = Column(String(30), nullable=True)
    status = Column(String(20), nullable=False, default="active")
    status_reason = Column(Text, nullable=True)
    status_changed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    last_login = Column(DateTime, nullable=True)

    # Relationships
    department = relationship("Department", back_populates="members")
    tickets = relationship("Ticket", back_populates="created_by", foreign_keys="Ticket.created_by_id")
    admin_profile = relationship(
        "AdminProfile", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )


# 🏢 DEPARTMENTS
class Department(Base):
    __tablename__ = "departments"

    department_id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    categories = Column(JSON, nullable=False, default=list)  # ordered labels, duplicates allowed
    created_at = Column(DateTime, default=utcnow)

    members = relationship("User", back_populates="department")
    tickets = relationship("Ticket", back_populates="department")


# 🧑‍💼 ADMIN PROFILES (department, phone and employee code live on the user row)
class AdminProfile(Base):
    __tablename__ = "admin_profiles"

    profile_id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), unique=True, nullable=False)
    expertise = Column(JSON, nullable=False, default=list)
    categories = Column(JSON, nullable=False, default=list)  # subset of the department's categories
    joining_date = Column(DateTime, default=utcnow)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="admin_profile")


# 🏭 COMPANIES (derived from users.company_name, recomputed on refresh)
class Company(Base):
    __tablename__ = "companies"

    company_id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), unique=True, nullable=False)
    domain = Column(String(150), nullable=True)
    employee_count = Column(Integer, default=0)
    total_tickets = Column(Integer, default=0)
    resolved_tickets = Column(Integer, default=0)
    pending_tickets = Column(Integer, default=0)
    total_support_time = Column(Float, default=0.0)  # ms
    average_support_time = Column(Float, default=0.0)  # ms
    average_rating = Column(Float, default=0.0)
    total_feedbacks = Column(Integer, default=0)
    status = Column(String(20), nullable=False, default="pending")
    status_reason = Column(Text, nullable=True)
    status_changed_by = Column(Integer, ForeignKey("users.user_id"), nullable=True)
    status_changed_at = Column(DateTime, nullable=True)
    last_refreshed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# 📋 TICKETS
class Ticket(Base):
    __tablename__ = "tickets"

    ticket_id = Column(Integer, primary_key=True, index=True)
    ticket_number = Column(String(20), unique=True, index=True, nullable=False)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(100), nullable=True)
    reason = Column(Text, nullable=True)

    priority = Column(String(20), nullable=False, default="medium")
    status = Column(String(30), nullable=False, default="pending")

    department_id = Column(Integer, ForeignKey("departments.department_id"), nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.user_id"), nullable=True, index=True)
    filed_by_id = Column(Integer, ForeignKey("users.user_id"), nullable=True)
    assigned_to_id = Column(Integer, ForeignKey("users.user_id"), nullable=True)
    solved_by_id = Column(Integer, ForeignKey("users.user_id"), nullable=True)

    # Who the ticket is about when it was filed on someone's behalf
    requester_name = Column(String(100), nullable=True)
    requester_email = Column(String(150), nullable=True)
    requester_employee_code = Column(String(50), nullable=True)
    requester_company = Column(String(150), nullable=True)

    solution = Column(Text, nullable=True)
    solved_at = Column(DateTime, nullable=True)
    time_to_solve = Column(Float, nullable=True)  # ms

    feedback_rating = Column(Integer, nullable=True)
    feedback_comment = Column(Text, nullable=True)
    feedback_submitted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    department = relationship("Department", back_populates="tickets")
    created_by = relationship("User", back_populates="tickets", foreign_keys=[created_by_id])
    filed_by = relationship("User", foreign_keys=[filed_by_id])
    assigned_to = relationship("User", foreign_keys=[assigned_to_id])
    solved_by = relationship("User", foreign_keys=[solved_by_id])
    remarks = relationship(
        "TicketRemark",
        back_populates="ticket",
        order_by="TicketRemark.remark_id",
        cascade="all, delete-orphan",
    )
    attachments = relationship(
        "TicketAttachment",
        back_populates="ticket",
        order_by="TicketAttachment.attachment_id",
        cascade="all, delete-orphan",
    )
    status_logs = relationship(
        "TicketStatusLog",
        back_populates="ticket",
        order_by="TicketStatusLog.log_id",
        cascade="all, delete-orphan",
    )


# 💬 REMARKS (append-only)
class TicketRemark(Base):
    __tablename__ = "ticket_remarks"

    remark_id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.ticket_id"), nullable=False, index=True)
    added_by_id = Column(Integer, ForeignKey("users.user_id"), nullable=False)
    text = Column(Text, nullable=False)
    added_at = Column(DateTime, default=utcnow)

    ticket = relationship("Ticket", back_populates="remarks")
    added_by = relationship("User")


# 📎 ATTACHMENTS
class TicketAttachment(Base):
    __tablename__ = "ticket_attachments"

    attachment_id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.ticket_id"), nullable=False, index=True)
    kind = Column(String(10), nullable=False, default="user")
    filename = Column(String(255), nullable=False)
    original_name = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=False, default="application/octet-stream")
    size = Column(Integer, nullable=False, default=0)
    data = Column(LargeBinary, nullable=False)
    uploaded_by_id = Column(Integer, ForeignKey("users.user_id"), nullable=True)
    uploaded_at = Column(DateTime, default=utcnow)

    ticket = relationship("Ticket", back_populates="attachments")
    uploaded_by = relationship("User")


# 📜 TICKET STATUS LOG
class TicketStatusLog(Base):
    __tablename__ = "ticket_status_log"

    log_id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.ticket_id"), nullable=False)
    changed_by = Column(Integer, ForeignKey("users.user_id"))

    old_status = Column(String(30))
    new_status = Column(String(30))
    changed_at = Column(DateTime, default=utcnow)
    note = Column(Text, nullable=True)

    # Relationships
    ticket = relationship("Ticket", back_populates="status_logs")
    actor = relationship("User")

