"""Account self-service and user administration."""
from __future__ import annotations

import logging
import re

from sqlalchemy import or_
from sqlalchemy.orm import Session

from helpdesk import companies, notifications
from helpdesk.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ReferentialConflict,
    ValidationError,
)
from helpdesk.models import (
    ACCOUNT_STATUSES,
    ROLES,
    STAFF_ROLES,
    Company,
    Department,
    Ticket,
    TicketAttachment,
    TicketRemark,
    TicketStatusLog,
    User,
    utcnow,
)
from helpdesk.security import (
    check_account_status,
    create_reset_token,
    decode_token,
    hash_password,
    revoke_token,
    verify_password,
)


logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6


def normalize_email(email: str | None) -> str:
    email = (email or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError("Email address is invalid", field="email")
    return email


def _check_password(password: str | None, field: str = "password") -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long", field=field
        )
    return password


def _check_name(name: str | None) -> str:
    name = (name or "").strip()
    if len(name) < 2:
        raise ValidationError("Name must be at least 2 characters", field="name")
    return name


def _ensure_unique_email(db: Session, email: str, exclude_id: int | None = None) -> None:
    query = db.query(User).filter(User.email == email)
    if exclude_id is not None:
        query = query.filter(User.user_id != exclude_id)
    if query.first():
        raise ConflictError("Email already exists", field="email")


def _clean_employee_code(db: Session, code: str | None, exclude_id: int | None = None) -> str | None:
    code = (code or "").strip() or None
    if code is None:
        return None
    query = db.query(User).filter(User.employee_code == code)
    if exclude_id is not None:
        query = query.filter(User.user_id != exclude_id)
    if query.first():
        raise ConflictError("Employee code already exists", field="employee_code")
    return code


def _resolve_department(db: Session, role: str, department_id: int | None) -> int | None:
    if department_id is None:
        return None
    if role not in STAFF_ROLES:
        raise ValidationError("Only admins can belong to a department", field="department_id")
    if not db.get(Department, department_id):
        raise NotFoundError("Department not found")
    return department_id


# ---------------------------------------------------------------- self-service

def register(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    employee_code: str | None = None,
    company_name: str | None = None,
    phone_number: str | None = None,
) -> User:
    name = _check_name(name)
    email = normalize_email(email)
    _check_password(password)
    _ensure_unique_email(db, email)
    employee_code = _clean_employee_code(db, employee_code)
    company_name = companies.normalize_company_name(company_name)

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role="user",
        employee_code=employee_code,
        company_name=company_name,
        phone_number=(phone_number or "").strip() or None,
        status="active",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    if company_name:
        companies.ensure_company(db, company_name)
    logger.info("User %s registered", user.email)
    return user


def authenticate(db: Session, email: str, password: str, expected_role: str | None = None) -> User:
    email = (email or "").strip().lower()
    user = db.query(User).filter(User.email == email).first()
    if not user or not verify_password(password or "", user.password_hash):
        logger.debug("Failed login for %s", email)
        raise AuthenticationError("Invalid credentials")
    check_account_status(user)
    if expected_role and user.role != expected_role:
        raise AuthorizationError(f"Use {user.role} portal for this account")

    user.last_login = utcnow()
    db.commit()
    db.refresh(user)
    return user


def change_password(db: Session, user: User, current_password: str, new_password: str) -> None:
    if not verify_password(current_password or "", user.password_hash):
        raise AuthenticationError("Current password is incorrect")
    _check_password(new_password, field="new_password")
    user.password_hash = hash_password(new_password)
    db.commit()
    logger.info("User %s changed password", user.user_id)


def update_profile(db: Session, user: User, changes: dict) -> User:
    updates = {}
    if changes.get("name") is not None:
        updates["name"] = _check_name(changes["name"])
    if "employee_code" in changes:
        updates["employee_code"] = _clean_employee_code(db, changes["employee_code"], exclude_id=user.user_id)
    if "phone_number" in changes:
        updates["phone_number"] = (changes["phone_number"] or "").strip() or None
    if "company_name" in changes:
        updates["company_name"] = companies.normalize_company_name(changes["company_name"])

    for key, value in updates.items():
        setattr(user, key, value)
    db.commit()
    db.refresh(user)
    if user.company_name:
        companies.ensure_company(db, user.company_name)
    return user


def request_password_reset(db: Session, email: str) -> tuple[User, str]:
    email = (email or "").strip().lower()
    user = db.query(User).filter(User.email == email).first()
    if not user:
        raise NotFoundError("User not found with this email")
    token = create_reset_token(user)
    logger.info("Password reset requested for %s", email)
    notifications.send_password_reset(user, token)
    return user, token


def reset_password(db: Session, token: str, new_password: str) -> User:
    claims = decode_token(token, expected_type="reset")
    user = db.get(User, int(claims["sub"]))
    if not user:
        raise NotFoundError("User not found")
    _check_password(new_password, field="new_password")
    user.password_hash = hash_password(new_password)
    db.commit()
    revoke_token(claims)
    logger.info("Password reset completed for user %s", user.user_id)
    return user


# ---------------------------------------------------------------- administration

def list_users(
    db: Session,
    role: str | None = None,
    status: str | None = None,
    company: str | None = None,
    department_id: int | None = None,
    search: str | None = None,
) -> list[User]:
    query = db.query(User)
    if role:
        query = query.filter(User.role == role)
    if status:
        query = query.filter(User.status == status)
    if department_id is not None:
        query = query.filter(User.department_id == department_id)
    if company:
        query = query.filter(User.company_name.ilike(company.strip()))
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(
            or_(User.name.ilike(like), User.email.ilike(like), User.employee_code.ilike(like))
        )
    return query.order_by(User.created_at.desc(), User.user_id.desc()).all()


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def create_user(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    role: str = "user",
    employee_code: str | None = None,
    company_name: str | None = None,
    department_id: int | None = None,
    phone_number: str | None = None,
) -> User:
    if role not in ROLES:
        raise ValidationError(f"Role must be one of {', '.join(ROLES)}", field="role")
    name = _check_name(name)
    email = normalize_email(email)
    _check_password(password)
    _ensure_unique_email(db, email)
    employee_code = _clean_employee_code(db, employee_code)
    department_id = _resolve_department(db, role, department_id)
    company_name = companies.normalize_company_name(company_name)

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role=role,
        employee_code=employee_code,
        company_name=company_name,
        department_id=department_id,
        phone_number=(phone_number or "").strip() or None,
        status="active",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    if company_name:
        companies.ensure_company(db, company_name)
    logger.info("User %s created with role %s", user.email, role)
    return user


def update_user(db: Session, user_id: int, changes: dict) -> User:
    user = get_user(db, user_id)

    role = changes.get("role") or user.role
    if role not in ROLES:
        raise ValidationError(f"Role must be one of {', '.join(ROLES)}", field="role")

    updates = {"role": role}
    if changes.get("name") is not None:
        updates["name"] = _check_name(changes["name"])
    if changes.get("email") is not None:
        email = normalize_email(changes["email"])
        _ensure_unique_email(db, email, exclude_id=user.user_id)
        updates["email"] = email
    if "employee_code" in changes:
        updates["employee_code"] = _clean_employee_code(db, changes["employee_code"], exclude_id=user.user_id)
    if "phone_number" in changes:
        updates["phone_number"] = (changes["phone_number"] or "").strip() or None
    if "company_name" in changes:
        updates["company_name"] = companies.normalize_company_name(changes["company_name"])
    if "department_id" in changes:
        updates["department_id"] = _resolve_department(db, role, changes["department_id"])
    elif role not in STAFF_ROLES:
        updates["department_id"] = None

    for key, value in updates.items():
        setattr(user, key, value)

    db.commit()
    db.refresh(user)
    if user.company_name:
        companies.ensure_company(db, user.company_name)
    return user


def set_user_status(db: Session, actor: User, user_id: int, status: str, reason: str | None = None) -> User:
    if status not in ACCOUNT_STATUSES:
        raise ValidationError(f"Status must be one of {', '.join(ACCOUNT_STATUSES)}", field="status")
    user = get_user(db, user_id)
    if user.user_id == actor.user_id and status != "active":
        raise ValidationError("You cannot change the status of your own account", field="status")

    user.status = status
    user.status_reason = (reason or "").strip() or None
    user.status_changed_at = utcnow()
    db.commit()
    db.refresh(user)
    logger.info("User %s status set to %s by %s", user.user_id, status, actor.user_id)
    return user


def admin_reset_password(db: Session, user_id: int, new_password: str) -> None:
    user = get_user(db, user_id)
    _check_password(new_password, field="new_password")
    user.password_hash = hash_password(new_password)
    db.commit()
    logger.info("Password for user %s reset by administrator", user.user_id)


def delete_user(db: Session, actor: User, user_id: int) -> None:
    user = get_user(db, user_id)
    if user.user_id == actor.user_id:
        raise ValidationError("You cannot delete your own account")

    linked_tickets = (
        db.query(Ticket)
        .filter(
            or_(
                Ticket.created_by_id == user.user_id,
                Ticket.assigned_to_id == user.user_id,
                Ticket.solved_by_id == user.user_id,
                Ticket.filed_by_id == user.user_id,
            )
        )
        .count()
    )
    if linked_tickets:
        raise ReferentialConflict(
            f"User is linked to {linked_tickets} ticket(s) and cannot be deleted; suspend the account instead"
        )
    authored = {
        "ticket remarks": db.query(TicketRemark).filter(TicketRemark.added_by_id == user.user_id),
        "ticket status changes": db.query(TicketStatusLog).filter(TicketStatusLog.changed_by == user.user_id),
        "ticket attachments": db.query(TicketAttachment).filter(TicketAttachment.uploaded_by_id == user.user_id),
        "company status changes": db.query(Company).filter(Company.status_changed_by == user.user_id),
    }
    for label, query in authored.items():
        if query.count():
            raise ReferentialConflict(f"User has recorded {label} and cannot be deleted; suspend the account instead")

    db.delete(user)
    db.commit()
    logger.warning("User %s deleted by %s", user_id, actor.user_id)
