"""Read-only views derived from the ticket set.

Nothing here is cached or maintained incrementally: every call recomputes
from the current rows. Company figures are the one exception in that they
are written back, but only when ``refresh_companies`` is invoked.
"""
from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from helpdesk.models import TICKET_STATUSES, Company, Ticket, User, utcnow
from helpdesk.recommender import recommender
from helpdesk.security import ensure_capability
from helpdesk.tickets import visible_tickets


logger = logging.getLogger(__name__)

RECENT_TICKETS = 10
TOP_CONTRIBUTORS = 10
COMMON_ISSUES = 5


def _average_minutes(resolved: list[Ticket]) -> float:
    timed = [t.time_to_solve for t in resolved if t.time_to_solve and t.time_to_solve > 0]
    if not timed:
        return 0
    return round(sum(timed) / len(timed) / 60000, 2)


def compute_dashboard_stats(tickets: list[Ticket]) -> dict:
    status_counter = Counter(t.status for t in tickets)
    priority_counter = Counter(t.priority for t in tickets)

    by_department: dict[int | None, dict] = {}
    for t in tickets:
        key = t.department_id
        if key not in by_department:
            by_department[key] = {
                "department_id": key,
                "name": t.department.name if t.department else "Unassigned",
                "total": 0,
                "resolved": 0,
                "pending": 0,
            }
        row = by_department[key]
        row["total"] += 1
        if t.status == "resolved":
            row["resolved"] += 1
        else:
            row["pending"] += 1

    recent = sorted(tickets, key=lambda t: (t.created_at, t.ticket_id), reverse=True)[:RECENT_TICKETS]
    return {
        "total": len(tickets),
        "pending": status_counter.get("pending", 0),
        "assigned": status_counter.get("assigned", 0),
        "in_progress": status_counter.get("in-progress", 0),
        "resolved": status_counter.get("resolved", 0),
        "by_status": {status: status_counter.get(status, 0) for status in TICKET_STATUSES},
        "by_priority": {p: priority_counter.get(p, 0) for p in ("low", "medium", "high")},
        "by_department": sorted(by_department.values(), key=lambda row: (-row["total"], row["name"])),
        "avg_resolution_time": _average_minutes([t for t in tickets if t.status == "resolved"]),
        "recent_tickets": [
            {
                "ticket_id": t.ticket_id,
                "ticket_number": t.ticket_number,
                "title": t.title,
                "status": t.status,
                "priority": t.priority,
                "created_at": t.created_at,
            }
            for t in recent
        ],
    }


def dashboard_stats(db: Session, actor: User) -> dict:
    return compute_dashboard_stats(visible_tickets(db, actor))


# ---- knowledge base ----

@dataclass
class SolutionQuery:
    search: str | None = None
    categories: list[str] = field(default_factory=list)
    department_ids: list[int] = field(default_factory=list)
    priorities: list[str] = field(default_factory=list)
    sort: str = "newest"


def is_solution(ticket: Ticket) -> bool:
    return ticket.status == "resolved" and bool((ticket.solution or "").strip())


def filter_solutions(tickets: list[Ticket], query: SolutionQuery) -> list[Ticket]:
    needle = (query.search or "").strip().lower()
    out = []
    for t in tickets:
        if not is_solution(t):
            continue
        if needle:
            haystack = f"{t.title} {t.description} {t.solution}".lower()
            if needle not in haystack:
                continue
        if query.categories and (t.category or "Uncategorized") not in query.categories:
            continue
        if query.department_ids and t.department_id not in query.department_ids:
            continue
        if query.priorities and t.priority not in query.priorities:
            continue
        out.append(t)

    newest_first = query.sort != "oldest"
    return sorted(out, key=lambda t: (t.solved_at or t.updated_at, t.ticket_id), reverse=newest_first)


def search_solutions(db: Session, actor: User, query: SolutionQuery) -> list[Ticket]:
    ensure_capability(actor, "reports.knowledge_base")
    tickets = db.query(Ticket).filter(Ticket.status == "resolved").all()
    return filter_solutions(tickets, query)


def _ranked(counter: Counter, label: str, limit: int | None = None) -> list[dict]:
    rows = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    if limit is not None:
        rows = rows[:limit]
    return [{label: key, "count": count} for key, count in rows]


def compute_solution_analytics(tickets: list[Ticket]) -> dict:
    solutions = [t for t in tickets if is_solution(t)]
    by_department: Counter = Counter()
    by_category: Counter = Counter()
    by_priority: Counter = Counter()
    by_month: Counter = Counter()
    contributors: Counter = Counter()
    titles: Counter = Counter()

    for t in solutions:
        by_department[t.department.name if t.department else "Unassigned"] += 1
        by_category[t.category or "Uncategorized"] += 1
        by_priority[t.priority] += 1
        when = t.solved_at or t.updated_at
        if when:
            by_month[f"{when:%Y-%m}"] += 1
        resolver = t.solved_by or t.assigned_to
        contributors[resolver.name if resolver else "Unknown"] += 1
        titles[t.title] += 1

    return {
        "total_solutions": len(solutions),
        "by_department": _ranked(by_department, "name"),
        "by_category": _ranked(by_category, "name"),
        "by_priority": dict(by_priority),
        "by_month": dict(sorted(by_month.items())),
        "top_contributors": _ranked(contributors, "name", TOP_CONTRIBUTORS),
        "most_common_issues": _ranked(titles, "title", COMMON_ISSUES),
        "avg_resolution_time": _average_minutes(solutions),
    }


def solution_analytics(db: Session, actor: User) -> dict:
    ensure_capability(actor, "reports.knowledge_base")
    return compute_solution_analytics(db.query(Ticket).filter(Ticket.status == "resolved").all())


def suggest_solutions(db: Session, actor: User, text: str, top_k: int = 3, min_score: float = 0.15) -> list[dict]:
    """Known fixes for ``text``, drawn only from tickets the caller can see."""
    ensure_capability(actor, "knowledge_base.suggest")
    if not recommender.is_ready:
        recommender.rebuild_cache(db)
    allowed = {t.ticket_id for t in visible_tickets(db, actor)}
    return recommender.get_recommendations(text, top_k=top_k, min_score=min_score, allowed_ids=allowed)


# ---- companies ----

def compute_company_figures(users: list[User], tickets: list[Ticket]) -> dict[str, dict]:
    """Group users by trimmed company name and total up their tickets."""
    members: dict[str, list[User]] = defaultdict(list)
    display: dict[str, str] = {}
    for user in sorted(users, key=lambda u: u.user_id):
        name = (user.company_name or "").strip()
        if not name or user.role == "superadmin":
            continue
        display.setdefault(name.lower(), name)
        members[name.lower()].append(user)

    tickets_by_owner: dict[int, list[Ticket]] = defaultdict(list)
    for t in tickets:
        if t.created_by_id is not None:
            tickets_by_owner[t.created_by_id].append(t)

    figures: dict[str, dict] = {}
    for key, company_users in members.items():
        owned = [t for u in company_users for t in tickets_by_owner.get(u.user_id, [])]
        resolved = [t for t in owned if t.status == "resolved"]
        timed = [t.time_to_solve for t in resolved if t.time_to_solve and t.time_to_solve > 0]
        rated = [t.feedback_rating for t in owned if t.feedback_rating]
        total_support_time = float(sum(timed))
        figures[display[key]] = {
            "employee_count": len(company_users),
            "total_tickets": len(owned),
            "resolved_tickets": len(resolved),
            "pending_tickets": sum(1 for t in owned if t.status == "pending"),
            "total_support_time": total_support_time,
            "average_support_time": total_support_time / len(timed) if timed else 0.0,
            "average_rating": sum(rated) / len(rated) if rated else 0.0,
            "total_feedbacks": len(rated),
        }
    return figures


EMPTY_FIGURES = {
    "employee_count": 0,
    "total_tickets": 0,
    "resolved_tickets": 0,
    "pending_tickets": 0,
    "total_support_time": 0.0,
    "average_support_time": 0.0,
    "average_rating": 0.0,
    "total_feedbacks": 0,
}


def refresh_companies(db: Session, actor: User) -> list[Company]:
    ensure_capability(actor, "companies.manage")
    figures = compute_company_figures(db.query(User).all(), db.query(Ticket).all())

    existing = {c.name.strip().lower(): c for c in db.query(Company).all()}
    now = utcnow()
    for name, values in figures.items():
        company = existing.pop(name.lower(), None)
        if company is None:
            company = Company(name=name, status="active")
            db.add(company)
        elif company.status == "pending":
            company.status = "active"
        for key, value in values.items():
            setattr(company, key, value)
        company.last_refreshed_at = now

    # companies nobody belongs to any more keep their row but lose their figures
    for company in existing.values():
        for key, value in EMPTY_FIGURES.items():
            setattr(company, key, value)
        company.last_refreshed_at = now

    db.commit()
    logger.info("Company refresh by %s: %d companies with members", actor.user_id, len(figures))
    return (
        db.query(Company)
        .order_by(Company.total_tickets.desc(), Company.name.asc())
        .all()
    )
