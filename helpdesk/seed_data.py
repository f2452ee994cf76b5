from __future__ import annotations

import argparse
import logging
import random

from helpdesk import reporting, tickets
from helpdesk.config import configure_logging, get_settings
from helpdesk.database import Base, SessionLocal, engine
from helpdesk.models import AdminProfile, Department, User
from helpdesk.security import hash_password


logger = logging.getLogger(__name__)

DEFAULT_PASSWORD = "password123"

DEPARTMENTS = {
    "IT": ["Hardware", "Software", "Network", "Access", "Email"],
    "HR": ["Payroll", "Leave", "Onboarding", "Policy"],
    "Finance": ["Reimbursement", "Invoices", "Budget"],
    "Facilities": ["Maintenance", "Seating", "Access Cards"],
}

FAKE_NAMES = [
    "Ali Khan",
    "Sara Ahmed",
    "John Smith",
    "Maya Patel",
    "Noah Wilson",
    "Ava Brown",
    "Liam Davis",
    "Emma Johnson",
]

COMPANIES = ["Acme Corp", "Globex", "Initech"]

ISSUES = {
    "Hardware": ("Laptop overheating rapidly", "Run hardware diagnostics and replace the cooling fan."),
    "Software": ("Outlook freezes after update", "Disabled conflicting add-ins and patched Outlook to the latest build."),
    "Network": ("VPN disconnects every 10 minutes", "Restarted the VPN client service and rotated the certificate."),
    "Access": ("SSO login denied", "Re-synced the identity group and forced a token refresh."),
    "Email": ("Mailbox full warning", "Archived old mail and raised the mailbox quota."),
    "Payroll": ("Salary slip missing", "Regenerated the salary slip from the payroll run and emailed it."),
    "Leave": ("Leave balance incorrect", "Recalculated the accrual after correcting the joining date."),
    "Onboarding": ("New joiner cannot access HR portal", "Created the HR portal profile and linked the employee code."),
    "Policy": ("Remote work policy unclear", "Shared the current remote work policy and FAQ document."),
    "Reimbursement": ("Travel claim pending approval", "Escalated the claim to the approver and it was paid out."),
    "Invoices": ("Vendor invoice rejected", "Corrected the PO number on the invoice and resubmitted it."),
    "Budget": ("Cost center missing in budget tool", "Added the cost center mapping in the budget tool."),
    "Maintenance": ("Air conditioning not working", "Facilities vendor replaced the faulty thermostat."),
    "Seating": ("Need a desk near my team", "Moved the seat allocation to the team's row."),
    "Access Cards": ("Access card not working", "Re-encoded the access card and updated door permissions."),
}


def ensure_superadmin(db) -> User:
    settings = get_settings()
    email = (settings.superadmin_email or "superadmin@example.com").lower()
    admin = db.query(User).filter(User.email == email).first()
    if admin:
        return admin
    admin = User(
        name=settings.superadmin_name,
        email=email,
        password_hash=hash_password(settings.superadmin_password or DEFAULT_PASSWORD),
        role="superadmin",
        employee_code="SA001",
        status="active",
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    return admin


def ensure_departments(db) -> dict[str, Department]:
    existing = {d.name: d for d in db.query(Department).all()}
    for name, categories in DEPARTMENTS.items():
        if name in existing:
            continue
        department = Department(name=name, description=f"{name} support", categories=list(categories))
        db.add(department)
        db.flush()
        existing[name] = department
    db.commit()
    return existing


def ensure_admins(db, departments: dict[str, Department]) -> list[User]:
    admins: list[User] = []
    for name, department in departments.items():
        email = f"admin.{name.lower()}@example.com"
        row = db.query(User).filter(User.email == email).first()
        if row is None:
            row = User(
                name=f"{name} Admin",
                email=email,
                password_hash=hash_password(DEFAULT_PASSWORD),
                role="admin",
                department_id=department.department_id,
                status="active",
            )
            row.admin_profile = AdminProfile(
                expertise=department.categories[:2], categories=list(department.categories)
            )
            db.add(row)
            db.flush()
        admins.append(row)
    db.commit()
    return admins


def ensure_fake_users(db, count: int = 8) -> list[User]:
    users: list[User] = []
    for idx in range(count):
        email = f"user{idx+1}@example.com"
        row = db.query(User).filter(User.email == email).first()
        if row is None:
            row = User(
                name=FAKE_NAMES[idx % len(FAKE_NAMES)],
                email=email,
                password_hash=hash_password(DEFAULT_PASSWORD),
                role="user",
                employee_code=f"EMP{idx+1:03d}",
                company_name=COMPANIES[idx % len(COMPANIES)],
                status="active",
            )
            db.add(row)
            db.flush()
        users.append(row)
    db.commit()
    return users


def create_fake_tickets(db, users: list[User], admins: list[User], departments: dict[str, Department], count: int) -> int:
    admin_by_department = {a.department_id: a for a in admins}
    created = 0
    for _ in range(count):
        department = random.choice(list(departments.values()))
        category = random.choice(department.categories)
        title, solution = ISSUES.get(category, (f"{category} issue", "Investigated and fixed the reported problem."))
        owner = random.choice(users)
        ticket = tickets.create_ticket(
            db,
            owner,
            title=title,
            description=f"{title}. Reported by {owner.name} from {owner.company_name}.",
            department_id=department.department_id,
            priority=random.choice(["low", "medium", "high"]),
            category=category,
        )
        created += 1

        admin = admin_by_department[department.department_id]
        target = random.choices(["pending", "assigned", "in-progress", "resolved"], weights=[3, 2, 2, 5], k=1)[0]
        if target == "pending":
            continue
        if target == "resolved":
            tickets.update_status(db, admin, ticket.ticket_id, "resolved", solution=solution)
        else:
            tickets.update_status(db, admin, ticket.ticket_id, target, remark=f"Picked up by {admin.name}")
    return created


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the helpdesk database with demo accounts and tickets.")
    parser.add_argument("--tickets", type=int, default=40, help="Number of demo tickets to create")
    parser.add_argument("--users", type=int, default=8, help="Number of demo end users")
    args = parser.parse_args()

    configure_logging()
    Base.metadata.create_all(bind=engine)
    random.seed(42)
    db = SessionLocal()
    try:
        superadmin = ensure_superadmin(db)
        departments = ensure_departments(db)
        admins = ensure_admins(db, departments)
        users = ensure_fake_users(db, count=args.users)
        created_tickets = create_fake_tickets(db, users, admins, departments, args.tickets)
        refreshed = reporting.refresh_companies(db, superadmin)

        print(f"superadmin={superadmin.email}")
        print(f"departments={len(departments)}")
        print(f"admins={len(admins)}")
        print(f"users={len(users)}")
        print(f"created_tickets={created_tickets}")
        print(f"companies={len(refreshed)}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
