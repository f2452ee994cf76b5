from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from helpdesk.errors import ConflictError, NotFoundError, ValidationError
from helpdesk.models import COMPANY_STATUSES, Company, Ticket, User, utcnow


logger = logging.getLogger(__name__)


def normalize_company_name(name: str | None) -> str | None:
    name = (name or "").strip()
    return name or None


def ensure_company(db: Session, name: str | None) -> Company | None:
    """Register a company the first time a user or ticket mentions it.

    New entries start as ``pending`` with zero counts; figures appear on the
    next refresh.
    """
    name = normalize_company_name(name)
    if name is None:
        return None
    company = db.query(Company).filter(func.lower(Company.name) == name.lower()).first()
    if company:
        return company
    company = Company(name=name, status="pending")
    db.add(company)
    db.commit()
    db.refresh(company)
    logger.info("Company %r registered", name)
    return company


def list_companies(db: Session) -> list[Company]:
    return db.query(Company).order_by(Company.total_tickets.desc(), Company.name.asc()).all()


def get_company(db: Session, company_id: int) -> Company:
    company = db.get(Company, company_id)
    if not company:
        raise NotFoundError("Company not found")
    return company


def company_employees(db: Session, company: Company) -> list[User]:
    return (
        db.query(User)
        .filter(func.lower(func.trim(User.company_name)) == company.name.strip().lower())
        .order_by(User.name.asc())
        .all()
    )


def get_company_detail(db: Session, company_id: int) -> tuple[Company, list[User], list[Ticket]]:
    company = get_company(db, company_id)
    employees = company_employees(db, company)
    employee_ids = [u.user_id for u in employees]
    tickets: list[Ticket] = []
    if employee_ids:
        tickets = (
            db.query(Ticket)
            .filter(Ticket.created_by_id.in_(employee_ids))
            .order_by(Ticket.created_at.desc())
            .all()
        )
    return company, employees, tickets


def update_company(db: Session, actor: User, company_id: int, changes: dict) -> Company:
    company = get_company(db, company_id)

    if "name" in changes and changes["name"] is not None:
        new_name = normalize_company_name(changes["name"])
        if new_name is None:
            raise ValidationError("Company name is required", field="name")
        clash = (
            db.query(Company)
            .filter(func.lower(Company.name) == new_name.lower(), Company.company_id != company.company_id)
            .first()
        )
        if clash:
            raise ConflictError("A company with this name already exists", field="name")
        # users carry the name, so they move with the rename
        for employee in company_employees(db, company):
            employee.company_name = new_name
        company.name = new_name

    if "domain" in changes:
        company.domain = (changes["domain"] or "").strip().lower() or None

    if changes.get("status") is not None:
        status = changes["status"]
        if status not in COMPANY_STATUSES:
            raise ValidationError(f"Status must be one of {', '.join(COMPANY_STATUSES)}", field="status")
        company.status = status
        company.status_reason = (changes.get("status_reason") or "").strip() or None
        company.status_changed_by = actor.user_id
        company.status_changed_at = utcnow()
        logger.info("Company %s status set to %s by %s", company.name, status, actor.user_id)

    db.commit()
    db.refresh(company)
    return company
