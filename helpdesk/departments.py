from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from helpdesk.errors import ConflictError, NotFoundError, ReferentialConflict, ValidationError
from helpdesk.models import Department, Ticket, User


logger = logging.getLogger(__name__)


def _clean_categories(categories: list[str] | None) -> list[str]:
    # order is kept for display; duplicates are allowed
    return [c.strip() for c in (categories or []) if c and c.strip()]


def _ensure_unique_name(db: Session, name: str, exclude_id: int | None = None) -> None:
    query = db.query(Department).filter(func.lower(Department.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(Department.department_id != exclude_id)
    if query.first():
        raise ConflictError("A department with this name already exists", field="name")


def list_departments(db: Session) -> list[Department]:
    return db.query(Department).order_by(Department.name.asc()).all()


def get_department(db: Session, department_id: int) -> Department:
    department = db.get(Department, department_id)
    if not department:
        raise NotFoundError("Department not found")
    return department


def create_department(
    db: Session,
    name: str,
    description: str | None = None,
    categories: list[str] | None = None,
) -> Department:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Department name is required", field="name")
    _ensure_unique_name(db, name)

    department = Department(
        name=name,
        description=(description or "").strip() or None,
        categories=_clean_categories(categories),
    )
    db.add(department)
    db.commit()
    db.refresh(department)
    logger.info("Department %s created", name)
    return department


def update_department(db: Session, department_id: int, changes: dict) -> Department:
    department = get_department(db, department_id)
    if changes.get("name") is not None:
        name = changes["name"].strip()
        if not name:
            raise ValidationError("Department name is required", field="name")
        _ensure_unique_name(db, name, exclude_id=department.department_id)
        department.name = name
    if "description" in changes:
        department.description = (changes["description"] or "").strip() or None
    if changes.get("categories") is not None:
        department.categories = _clean_categories(changes["categories"])
    db.commit()
    db.refresh(department)
    return department


def delete_department(db: Session, department_id: int) -> None:
    department = get_department(db, department_id)
    ticket_count = db.query(Ticket).filter(Ticket.department_id == department.department_id).count()
    if ticket_count:
        raise ReferentialConflict(
            f"Department has {ticket_count} ticket(s) and cannot be deleted"
        )

    detached = (
        db.query(User)
        .filter(User.department_id == department.department_id)
        .update({User.department_id: None}, synchronize_session="fetch")
    )
    name = department.name
    db.delete(department)
    db.commit()
    logger.warning("Department %s deleted (%d admin(s) detached)", name, detached)
