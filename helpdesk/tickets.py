"""Ticket lifecycle: creation, the forward-only status machine, remarks,
attachments and feedback.

All functions take the SQLAlchemy session and the acting ``User``. They
check capability and visibility before touching any row, so a rejected call
leaves the database exactly as it was.
"""
from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from helpdesk import companies, notifications
from helpdesk.accounts import EMAIL_RE
from helpdesk.config import get_settings
from helpdesk.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from helpdesk.models import (
    PRIORITIES,
    STAFF_ROLES,
    TICKET_STATUSES,
    Department,
    Ticket,
    TicketAttachment,
    TicketRemark,
    TicketStatusLog,
    User,
    utcnow,
)
from helpdesk.recommender import recommender
from helpdesk.security import ensure_capability


logger = logging.getLogger(__name__)

MIN_SOLUTION_LENGTH = 10
TICKET_NUMBER_ATTEMPTS = 3

ALLOWED_EXTENSIONS = {"jpeg", "jpg", "png", "gif", "pdf", "doc", "docx", "txt", "csv"}
ALLOWED_MIME_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
    "text/csv",
}


@dataclass
class NewAttachment:
    original_name: str
    mime_type: str
    data: bytes


@dataclass
class TicketFilters:
    status: str | None = None
    priority: str | None = None
    department_id: int | None = None
    company: str | None = None
    search: str | None = None


# ---------------------------------------------------------------- helpers

def status_rank(status: str) -> int:
    return TICKET_STATUSES.index(status)


def is_forward_transition(old_status: str, new_status: str) -> bool:
    return status_rank(new_status) > status_rank(old_status)


def generate_ticket_number(db: Session, department: Department | None, now: datetime | None = None) -> str:
    """``T`` + YYMMDD + department initial + per-day sequence, e.g. ``T250331I007``."""
    now = now or utcnow()
    initial = department.name[0].upper() if department and department.name else "G"
    prefix = f"T{now:%y%m%d}{initial}"

    existing = (
        db.query(Ticket.ticket_number)
        .filter(Ticket.ticket_number.like(f"{prefix}%"))
        .all()
    )
    highest = 0
    for (number,) in existing:
        suffix = number[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{prefix}{highest + 1:03d}"


def decode_upload(filename: str, mime_type: str, payload: str) -> NewAttachment:
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"Attachment {filename} is not valid base64", field="attachments")
    return NewAttachment(original_name=filename, mime_type=mime_type, data=data)


def validate_attachments(files: list[NewAttachment]) -> None:
    settings = get_settings()
    if len(files) > settings.max_attachments_per_request:
        raise ValidationError(
            f"At most {settings.max_attachments_per_request} files per request", field="attachments"
        )
    for item in files:
        extension = item.original_name.rsplit(".", 1)[-1].lower() if "." in item.original_name else ""
        if extension not in ALLOWED_EXTENSIONS or item.mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError("Only image and document files are allowed", field="attachments")
        if len(item.data) > settings.max_attachment_bytes:
            limit_mb = settings.max_attachment_bytes // (1024 * 1024)
            raise ValidationError(f"File size too large. Maximum {limit_mb}MB.", field="attachments")


def _build_attachments(files: list[NewAttachment], kind: str, uploader: User) -> list[TicketAttachment]:
    stamp = int(time.time() * 1000)
    return [
        TicketAttachment(
            kind=kind,
            filename=f"{stamp}-{item.original_name}",
            original_name=item.original_name,
            mime_type=item.mime_type,
            size=len(item.data),
            data=item.data,
            uploaded_by_id=uploader.user_id,
            uploaded_at=utcnow(),
        )
        for item in files
    ]


def _load_ticket(db: Session, ticket_id: int) -> Ticket:
    ticket = db.get(Ticket, ticket_id)
    if not ticket:
        raise NotFoundError("Ticket not found")
    return ticket


def _ensure_department_scope(actor: User, ticket: Ticket) -> None:
    if not get_settings().enforce_department_scope:
        return
    if actor.role != "admin" or actor.department_id is None or ticket.department_id is None:
        return
    if ticket.department_id != actor.department_id:
        raise AuthorizationError("Access denied to this department ticket")


def ensure_can_view(actor: User, ticket: Ticket) -> None:
    if actor.role == "user":
        if ticket.created_by_id != actor.user_id:
            raise AuthorizationError("Access denied")
        return
    _ensure_department_scope(actor, ticket)


def _commit(db: Session) -> None:
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConflictError("Ticket was modified by someone else. Reload and try again.")


# ---------------------------------------------------------------- queries

def ticket_matches(ticket: Ticket, filters: TicketFilters) -> bool:
    if filters.status and ticket.status != filters.status:
        return False
    if filters.priority and ticket.priority != filters.priority:
        return False
    if filters.department_id is not None and ticket.department_id != filters.department_id:
        return False
    if filters.company:
        wanted = filters.company.strip().lower()
        owner_company = (ticket.created_by.company_name if ticket.created_by else None) or ""
        requester_company = ticket.requester_company or ""
        if wanted not in {owner_company.strip().lower(), requester_company.strip().lower()}:
            return False
    if filters.search:
        needle = filters.search.strip().lower()
        haystack = " ".join(
            part.lower() for part in (ticket.title, ticket.description, ticket.ticket_number) if part
        )
        if needle not in haystack:
            return False
    return True


def visible_tickets(db: Session, actor: User, own_only: bool = False) -> list[Ticket]:
    query = db.query(Ticket)
    if actor.role == "user" or own_only:
        ensure_capability(actor, "tickets.list_own")
        query = query.filter(Ticket.created_by_id == actor.user_id)
    else:
        ensure_capability(actor, "tickets.list_all")
        settings = get_settings()
        if settings.enforce_department_scope and actor.role == "admin" and actor.department_id:
            query = query.filter(Ticket.department_id == actor.department_id)
    return query.order_by(Ticket.created_at.desc(), Ticket.ticket_id.desc()).all()


def list_tickets(
    db: Session,
    actor: User,
    filters: TicketFilters | None = None,
    own_only: bool = False,
) -> list[Ticket]:
    filters = filters or TicketFilters()
    return [t for t in visible_tickets(db, actor, own_only=own_only) if ticket_matches(t, filters)]


def get_ticket(db: Session, actor: User, ticket_id: int) -> Ticket:
    ticket = _load_ticket(db, ticket_id)
    ensure_can_view(actor, ticket)
    return ticket


def status_history(db: Session, actor: User, ticket_id: int) -> list[TicketStatusLog]:
    return list(get_ticket(db, actor, ticket_id).status_logs)


# ---------------------------------------------------------------- creation

def _validated_fields(
    db: Session,
    title: str | None,
    description: str | None,
    department_id: int | None,
    priority: str,
) -> tuple[str, str, Department]:
    title = (title or "").strip()
    description = (description or "").strip()
    if not title:
        raise ValidationError("Title is required", field="title")
    if not description:
        raise ValidationError("Description is required", field="description")
    if priority not in PRIORITIES:
        raise ValidationError(f"Priority must be one of {', '.join(PRIORITIES)}", field="priority")
    if department_id is None:
        raise ValidationError("Department is required", field="department_id")
    department = db.get(Department, department_id)
    if not department:
        raise NotFoundError("Department not found")
    return title, description, department


def is_ticket_number_clash(exc: IntegrityError) -> bool:
    return "ticket_number" in str(exc.orig)


def _persist_new_ticket(db: Session, department: Department, build) -> Ticket:
    for attempt in range(1, TICKET_NUMBER_ATTEMPTS + 1):
        ticket = build(generate_ticket_number(db, department))
        db.add(ticket)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if not is_ticket_number_clash(exc):
                raise
            logger.warning("Ticket number %s taken, retrying (%d)", ticket.ticket_number, attempt)
            continue
        db.refresh(ticket)
        return ticket
    raise ConflictError("Could not allocate a ticket number, please retry")


def create_ticket(
    db: Session,
    actor: User,
    *,
    title: str,
    description: str,
    department_id: int | None,
    priority: str = "medium",
    category: str | None = None,
    reason: str | None = None,
    attachments: list[NewAttachment] | None = None,
) -> Ticket:
    ensure_capability(actor, "tickets.create")
    title, description, department = _validated_fields(db, title, description, department_id, priority)
    attachments = attachments or []
    validate_attachments(attachments)

    def build(number: str) -> Ticket:
        now = utcnow()
        return Ticket(
            ticket_number=number,
            title=title,
            description=description,
            category=(category or "").strip() or None,
            reason=(reason or "").strip() or None,
            priority=priority,
            status="pending",
            department_id=department.department_id,
            created_by_id=actor.user_id,
            attachments=_build_attachments(attachments, "user", actor),
            created_at=now,
            updated_at=now,
        )

    ticket = _persist_new_ticket(db, department, build)
    logger.info("Ticket %s created by user %s", ticket.ticket_number, actor.user_id)
    notifications.notify_ticket_created(ticket)
    return ticket


def create_ticket_on_behalf(
    db: Session,
    actor: User,
    requester: dict,
    *,
    title: str,
    description: str,
    department_id: int | None,
    priority: str = "medium",
    category: str | None = None,
    reason: str | None = None,
    attachments: list[NewAttachment] | None = None,
) -> Ticket:
    ensure_capability(actor, "tickets.create_on_behalf")
    title, description, department = _validated_fields(db, title, description, department_id, priority)

    name = (requester.get("name") or "").strip()
    email = (requester.get("email") or "").strip().lower()
    if not name:
        raise ValidationError("Requester name is required", field="user_details.name")
    if not EMAIL_RE.match(email):
        raise ValidationError("Requester email is invalid", field="user_details.email")
    employee_code = (requester.get("employee_code") or "").strip() or None
    company_name = (requester.get("company_name") or "").strip() or None

    attachments = attachments or []
    validate_attachments(attachments)

    subject = db.query(User).filter(User.email == email).first()
    if company_name is None and subject is not None:
        company_name = subject.company_name

    def build(number: str) -> Ticket:
        now = utcnow()
        return Ticket(
            ticket_number=number,
            title=title,
            description=description,
            category=(category or "").strip() or None,
            reason=(reason or "").strip() or None,
            priority=priority,
            status="pending",
            department_id=department.department_id,
            created_by_id=subject.user_id if subject else None,
            filed_by_id=actor.user_id,
            requester_name=name,
            requester_email=email,
            requester_employee_code=employee_code,
            requester_company=company_name,
            attachments=_build_attachments(attachments, "user", actor),
            created_at=now,
            updated_at=now,
        )

    ticket = _persist_new_ticket(db, department, build)
    if company_name:
        companies.ensure_company(db, company_name)
    logger.info(
        "Ticket %s filed by %s on behalf of %s%s",
        ticket.ticket_number,
        actor.user_id,
        email,
        "" if subject else " (no account)",
    )
    notifications.notify_ticket_created(ticket)
    return ticket


# ---------------------------------------------------------------- lifecycle

def update_status(
    db: Session,
    actor: User,
    ticket_id: int,
    new_status: str,
    solution: str | None = None,
    remark: str | None = None,
    assignee_id: int | None = None,
    expected_version: int | None = None,
) -> Ticket:
    ensure_capability(actor, "tickets.update_status")
    if new_status not in TICKET_STATUSES:
        raise ValidationError(f"Status must be one of {', '.join(TICKET_STATUSES)}", field="status")

    ticket = _load_ticket(db, ticket_id)
    _ensure_department_scope(actor, ticket)

    if expected_version is not None and expected_version != ticket.version:
        raise ConflictError("Ticket was modified by someone else. Reload and try again.")

    old_status = ticket.status
    if not is_forward_transition(old_status, new_status):
        raise ValidationError(f"Cannot move ticket from {old_status} to {new_status}", field="status")

    solution_text = (solution or "").strip()
    if new_status == "resolved" and len(solution_text) < MIN_SOLUTION_LENGTH:
        raise ValidationError(
            f"Solution must be at least {MIN_SOLUTION_LENGTH} characters to resolve a ticket",
            field="solution",
        )

    assignee = None
    if assignee_id is not None:
        assignee = db.get(User, assignee_id)
        if not assignee:
            raise NotFoundError("Assignee not found")
        if assignee.role not in STAFF_ROLES:
            raise ValidationError("Tickets can only be assigned to admins", field="assigned_to_id")

    now = utcnow()
    ticket.status = new_status
    ticket.updated_at = now
    if assignee is not None:
        ticket.assigned_to_id = assignee.user_id
    elif new_status in ("assigned", "in-progress") and ticket.assigned_to_id is None:
        ticket.assigned_to_id = actor.user_id

    if new_status == "resolved":
        ticket.solution = solution_text
        ticket.solved_at = now
        ticket.solved_by_id = actor.user_id
        ticket.time_to_solve = (now - ticket.created_at).total_seconds() * 1000

    remark_text = (remark or "").strip()
    if remark_text:
        ticket.remarks.append(TicketRemark(text=remark_text, added_by_id=actor.user_id, added_at=now))

    ticket.status_logs.append(
        TicketStatusLog(
            changed_by=actor.user_id,
            old_status=old_status,
            new_status=new_status,
            changed_at=now,
            note=remark_text or None,
        )
    )
    _commit(db)
    db.refresh(ticket)
    logger.info("Ticket %s moved %s -> %s by %s", ticket.ticket_number, old_status, new_status, actor.user_id)

    if new_status == "resolved":
        recommender.rebuild_cache(db)
        notifications.notify_ticket_resolved(ticket)
    return ticket


def add_remark(db: Session, actor: User, ticket_id: int, text: str) -> TicketRemark:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Remark text is required", field="text")

    ticket = get_ticket(db, actor, ticket_id)
    remark = TicketRemark(text=text, added_by_id=actor.user_id, added_at=utcnow())
    ticket.remarks.append(remark)
    ticket.updated_at = remark.added_at
    _commit(db)
    db.refresh(remark)
    logger.info("Remark added to ticket %s by %s", ticket.ticket_number, actor.user_id)
    return remark


def delete_ticket(db: Session, actor: User, ticket_id: int) -> None:
    ensure_capability(actor, "tickets.delete")
    ticket = _load_ticket(db, ticket_id)
    number = ticket.ticket_number
    db.delete(ticket)
    db.commit()
    logger.warning("Ticket %s deleted by %s", number, actor.user_id)
    recommender.rebuild_cache(db)


# ---------------------------------------------------------------- attachments

def _ensure_attachment_access(actor: User, ticket: Ticket, kind: str) -> None:
    if kind == "admin":
        ensure_capability(actor, "tickets.admin_attachments")
        _ensure_department_scope(actor, ticket)
    else:
        ensure_can_view(actor, ticket)


def list_attachments(db: Session, actor: User, ticket_id: int, kind: str = "user") -> list[TicketAttachment]:
    ticket = _load_ticket(db, ticket_id)
    _ensure_attachment_access(actor, ticket, kind)
    return [a for a in ticket.attachments if a.kind == kind]


def attach_documents(
    db: Session,
    actor: User,
    ticket_id: int,
    files: list[NewAttachment],
    kind: str = "user",
) -> list[TicketAttachment]:
    ticket = _load_ticket(db, ticket_id)
    _ensure_attachment_access(actor, ticket, kind)
    if not files:
        raise ValidationError("No files uploaded", field="attachments")
    validate_attachments(files)

    added = _build_attachments(files, kind, actor)
    ticket.attachments.extend(added)
    ticket.updated_at = utcnow()
    _commit(db)
    logger.info("%d %s attachment(s) added to ticket %s", len(added), kind, ticket.ticket_number)
    return [a for a in ticket.attachments if a.kind == kind]


def get_attachment(
    db: Session,
    actor: User,
    ticket_id: int,
    attachment_id: int,
    kind: str = "user",
) -> TicketAttachment:
    ticket = _load_ticket(db, ticket_id)
    _ensure_attachment_access(actor, ticket, kind)
    for attachment in ticket.attachments:
        if attachment.attachment_id == attachment_id and attachment.kind == kind:
            return attachment
    raise NotFoundError("Attachment not found")


def remove_document(
    db: Session,
    actor: User,
    ticket_id: int,
    attachment_id: int,
    kind: str = "user",
) -> None:
    attachment = get_attachment(db, actor, ticket_id, attachment_id, kind)
    ticket = attachment.ticket
    ticket.attachments.remove(attachment)
    ticket.updated_at = utcnow()
    _commit(db)
    logger.info("Attachment %s removed from ticket %s", attachment_id, ticket.ticket_number)


# ---------------------------------------------------------------- feedback

def submit_feedback(db: Session, actor: User, ticket_id: int, rating: int, comment: str | None = None) -> Ticket:
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5", field="rating")

    ticket = _load_ticket(db, ticket_id)
    if ticket.created_by_id != actor.user_id:
        raise AuthorizationError("You can only give feedback on your own tickets")
    if ticket.status != "resolved":
        raise ValidationError("You can only give feedback on resolved tickets", field="status")
    if ticket.feedback_rating:
        raise ValidationError("Feedback already submitted for this ticket", field="rating")

    ticket.feedback_rating = rating
    ticket.feedback_comment = (comment or "").strip() or None
    ticket.feedback_submitted_at = utcnow()
    _commit(db)
    db.refresh(ticket)
    logger.info("Feedback %d/5 on ticket %s", rating, ticket.ticket_number)
    return ticket


def get_feedback(db: Session, actor: User, ticket_id: int) -> dict:
    ticket = _load_ticket(db, ticket_id)
    if ticket.created_by_id != actor.user_id and actor.role not in STAFF_ROLES:
        raise AuthorizationError("Access denied")
    return {
        "rating": ticket.feedback_rating,
        "comment": ticket.feedback_comment,
        "submitted_at": ticket.feedback_submitted_at,
    }
