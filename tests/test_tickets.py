import base64
import re

import pytest
from sqlalchemy.exc import IntegrityError

from helpdesk import tickets
from helpdesk.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from helpdesk.models import Company, Ticket, User


def file_ticket(db, owner, department, **overrides):
    fields = {
        "title": "VPN down",
        "description": "Cannot connect to VPN from home",
        "department_id": department.department_id,
        "priority": "high",
        "category": "Network",
    }
    fields.update(overrides)
    return tickets.create_ticket(db, owner, **fields)


def test_create_ticket_starts_pending(db, user_u, it_department):
    ticket = file_ticket(db, user_u, it_department)

    assert ticket.status == "pending"
    assert ticket.created_by_id == user_u.user_id
    assert ticket.assigned_to_id is None
    assert ticket.solution is None
    assert re.fullmatch(r"T\d{6}I\d{3}", ticket.ticket_number)


def test_fetch_after_create_round_trips(db, user_u, it_department):
    created = file_ticket(db, user_u, it_department)

    fetched = tickets.get_ticket(db, user_u, created.ticket_id)

    assert fetched.title == "VPN down"
    assert fetched.description == "Cannot connect to VPN from home"
    assert fetched.priority == "high"
    assert fetched.department_id == it_department.department_id
    assert fetched.status == "pending"


def test_ticket_numbers_increase_within_a_day(db, user_u, it_department):
    first = file_ticket(db, user_u, it_department)
    second = file_ticket(db, user_u, it_department, title="Printer jammed")

    assert first.ticket_number[:-3] == second.ticket_number[:-3]
    assert int(second.ticket_number[-3:]) == int(first.ticket_number[-3:]) + 1


def test_taken_ticket_number_is_retried(db, user_u, it_department, monkeypatch):
    first = file_ticket(db, user_u, it_department)
    numbers = iter([first.ticket_number, "T000000I900"])
    monkeypatch.setattr(tickets, "generate_ticket_number", lambda db, department: next(numbers))

    second = file_ticket(db, user_u, it_department, title="Printer jammed")

    assert second.ticket_number == "T000000I900"
    assert db.query(Ticket).count() == 2


def test_other_integrity_errors_are_not_retried(db, user_u, it_department, monkeypatch):
    calls = []

    def numbered(db, department):
        calls.append(department)
        return f"T000000I{len(calls):03d}"

    monkeypatch.setattr(tickets, "generate_ticket_number", numbered)

    with pytest.raises(IntegrityError) as excinfo:
        tickets._persist_new_ticket(
            db,
            it_department,
            lambda number: Ticket(ticket_number=number, title=None, description="untitled", created_by_id=user_u.user_id),
        )

    assert not tickets.is_ticket_number_clash(excinfo.value)
    assert len(calls) == 1
    assert db.query(Ticket).count() == 0


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"title": "   "}, "title"),
        ({"description": ""}, "description"),
        ({"department_id": None}, "department_id"),
        ({"priority": "urgent"}, "priority"),
    ],
)
def test_create_ticket_rejects_missing_fields(db, user_u, it_department, overrides, field):
    with pytest.raises(ValidationError) as excinfo:
        file_ticket(db, user_u, it_department, **overrides)

    assert excinfo.value.field == field
    assert db.query(Ticket).count() == 0


def test_create_ticket_unknown_department(db, user_u, it_department):
    with pytest.raises(NotFoundError):
        file_ticket(db, user_u, it_department, department_id=9999)


def test_resolve_scenario(db, user_u, admin_a, it_department):
    ticket = file_ticket(db, user_u, it_department)
    ticket2 = file_ticket(db, user_u, it_department, title="Email bouncing")

    resolved = tickets.update_status(
        db, admin_a, ticket.ticket_id, "resolved", solution="Restarted VPN concentrator"
    )

    assert resolved.status == "resolved"
    assert resolved.solved_at is not None
    assert resolved.solved_by_id == admin_a.user_id
    assert resolved.solution == "Restarted VPN concentrator"
    expected_ms = (resolved.solved_at - resolved.created_at).total_seconds() * 1000
    assert resolved.time_to_solve == pytest.approx(expected_ms)
    assert resolved.time_to_solve > 0

    with pytest.raises(ValidationError) as excinfo:
        tickets.update_status(db, admin_a, ticket2.ticket_id, "resolved", solution="fixed")
    assert excinfo.value.field == "solution"

    db.expire_all()
    unchanged = db.get(Ticket, ticket2.ticket_id)
    assert unchanged.status == "pending"
    assert unchanged.solution is None
    assert unchanged.solved_at is None


def test_resolve_without_solution_fails(db, user_u, admin_a, it_department):
    ticket = file_ticket(db, user_u, it_department)

    with pytest.raises(ValidationError):
        tickets.update_status(db, admin_a, ticket.ticket_id, "resolved")
    with pytest.raises(ValidationError):
        tickets.update_status(db, admin_a, ticket.ticket_id, "resolved", solution="  too short  ")

    db.expire_all()
    assert db.get(Ticket, ticket.ticket_id).status == "pending"


def test_status_only_moves_forward(db, user_u, admin_a, it_department):
    ticket = file_ticket(db, user_u, it_department)

    tickets.update_status(db, admin_a, ticket.ticket_id, "in-progress")
    with pytest.raises(ValidationError):
        tickets.update_status(db, admin_a, ticket.ticket_id, "assigned")
    with pytest.raises(ValidationError):
        tickets.update_status(db, admin_a, ticket.ticket_id, "in-progress")

    resolved = tickets.update_status(db, admin_a, ticket.ticket_id, "resolved", solution="Replaced the network cable")
    with pytest.raises(ValidationError):
        tickets.update_status(db, admin_a, ticket.ticket_id, "pending")

    assert resolved.status == "resolved"
    assert [log.new_status for log in resolved.status_logs] == ["in-progress", "resolved"]


def test_assignment_records_assignee(db, user_u, admin_a, superadmin, it_department):
    ticket = file_ticket(db, user_u, it_department)

    assigned = tickets.update_status(db, superadmin, ticket.ticket_id, "assigned", assignee_id=admin_a.user_id)
    assert assigned.assigned_to_id == admin_a.user_id

    other = file_ticket(db, user_u, it_department, title="Another")
    with pytest.raises(ValidationError):
        tickets.update_status(db, superadmin, other.ticket_id, "assigned", assignee_id=user_u.user_id)


def test_update_status_unknown_ticket(db, admin_a):
    with pytest.raises(NotFoundError):
        tickets.update_status(db, admin_a, 4242, "resolved", solution="Restarted VPN concentrator")

    assert db.query(Ticket).count() == 0


def test_user_cannot_update_status(db, user_u, it_department):
    ticket = file_ticket(db, user_u, it_department)

    with pytest.raises(AuthorizationError):
        tickets.update_status(db, user_u, ticket.ticket_id, "resolved", solution="I fixed it myself")

    db.expire_all()
    assert db.get(Ticket, ticket.ticket_id).status == "pending"


def test_stale_version_is_rejected(db, user_u, admin_a, it_department):
    ticket = file_ticket(db, user_u, it_department)
    seen_version = ticket.version

    tickets.update_status(db, admin_a, ticket.ticket_id, "assigned", expected_version=seen_version)

    with pytest.raises(ConflictError):
        tickets.update_status(
            db, admin_a, ticket.ticket_id, "resolved",
            solution="Restarted VPN concentrator", expected_version=seen_version,
        )
    db.expire_all()
    assert db.get(Ticket, ticket.ticket_id).status == "assigned"


def test_created_by_never_changes(db, user_u, admin_a, it_department):
    ticket = file_ticket(db, user_u, it_department)

    tickets.update_status(db, admin_a, ticket.ticket_id, "assigned")
    tickets.add_remark(db, admin_a, ticket.ticket_id, "Looking into it")
    tickets.update_status(db, admin_a, ticket.ticket_id, "resolved", solution="Restarted VPN concentrator")

    db.expire_all()
    assert db.get(Ticket, ticket.ticket_id).created_by_id == user_u.user_id


def test_remarks_are_append_only(db, user_u, admin_a, it_department):
    ticket = file_ticket(db, user_u, it_department)
    lengths = [0]

    first = tickets.add_remark(db, admin_a, ticket.ticket_id, "Checking VPN logs")
    lengths.append(len(db.get(Ticket, ticket.ticket_id).remarks))
    tickets.add_remark(db, user_u, ticket.ticket_id, "Still failing this morning")
    lengths.append(len(db.get(Ticket, ticket.ticket_id).remarks))
    tickets.update_status(db, admin_a, ticket.ticket_id, "in-progress", remark="Escalated to network team")
    lengths.append(len(db.get(Ticket, ticket.ticket_id).remarks))

    assert lengths == sorted(lengths) == [0, 1, 2, 3]
    remarks = db.get(Ticket, ticket.ticket_id).remarks
    assert remarks[0].remark_id == first.remark_id
    assert remarks[0].text == "Checking VPN logs"
    assert remarks[0].added_by_id == admin_a.user_id
    assert remarks[1].added_by_id == user_u.user_id


def test_remark_requires_text_and_visibility(db, user_u, user_u2, it_department):
    ticket = file_ticket(db, user_u, it_department)

    with pytest.raises(ValidationError):
        tickets.add_remark(db, user_u, ticket.ticket_id, "   ")
    with pytest.raises(AuthorizationError):
        tickets.add_remark(db, user_u2, ticket.ticket_id, "Me too")

    db.expire_all()
    assert db.get(Ticket, ticket.ticket_id).remarks == []


def test_user_listing_is_exactly_own_tickets(db, user_u, user_u2, admin_a, it_department):
    mine = [file_ticket(db, user_u, it_department, title=f"Issue {i}") for i in range(3)]
    theirs = file_ticket(db, user_u2, it_department, title="Other issue")

    listed_u = tickets.list_tickets(db, user_u)
    listed_u2 = tickets.list_tickets(db, user_u2)

    assert {t.ticket_id for t in listed_u} == {t.ticket_id for t in mine}
    assert [t.ticket_id for t in listed_u2] == [theirs.ticket_id]
    assert len(tickets.list_tickets(db, admin_a)) == 4
    assert [t.ticket_id for t in tickets.list_tickets(db, admin_a, own_only=True)] == []


def test_other_user_cannot_fetch_ticket(db, user_u, user_u2, it_department):
    ticket = file_ticket(db, user_u, it_department)

    with pytest.raises(AuthorizationError):
        tickets.get_ticket(db, user_u2, ticket.ticket_id)


def test_list_filters_are_anded(db, user_u, user_u2, admin_a, it_department, hr_department):
    vpn = file_ticket(db, user_u, it_department)
    file_ticket(db, user_u, it_department, title="Mouse broken", description="Left click dead", priority="low")
    file_ticket(db, user_u2, hr_department, title="VPN for payroll", description="Needs VPN", priority="high")

    filters = tickets.TicketFilters(priority="high", department_id=it_department.department_id, search="vpn")
    assert [t.ticket_id for t in tickets.list_tickets(db, admin_a, filters)] == [vpn.ticket_id]

    by_company = tickets.list_tickets(db, admin_a, tickets.TicketFilters(company="globex"))
    assert [t.created_by_id for t in by_company] == [user_u2.user_id]

    by_number = tickets.list_tickets(db, admin_a, tickets.TicketFilters(search=vpn.ticket_number.lower()))
    assert [t.ticket_id for t in by_number] == [vpn.ticket_id]


def test_on_behalf_for_existing_account(db, user_u, admin_a, it_department):
    ticket = tickets.create_ticket_on_behalf(
        db,
        admin_a,
        {"name": "Uma User", "email": "UMA@acme.com"},
        title="Laptop will not boot",
        description="Black screen after BIOS logo",
        department_id=it_department.department_id,
    )

    assert ticket.created_by_id == user_u.user_id
    assert ticket.filed_by_id == admin_a.user_id
    assert ticket.requester_company == "Acme"
    assert tickets.list_tickets(db, user_u)[0].ticket_id == ticket.ticket_id


def test_on_behalf_without_account(db, admin_a, it_department):
    users_before = db.query(User).count()

    ticket = tickets.create_ticket_on_behalf(
        db,
        admin_a,
        {"name": "Walk In", "email": "walk.in@initech.com", "employee_code": "E-77", "company_name": "Initech"},
        title="Badge reader broken",
        description="Front door badge reader rejects cards",
        department_id=it_department.department_id,
        priority="low",
    )

    assert ticket.created_by_id is None
    assert ticket.requester_name == "Walk In"
    assert ticket.requester_email == "walk.in@initech.com"
    assert ticket.requester_employee_code == "E-77"
    assert ticket.status == "pending"
    assert db.query(User).count() == users_before
    assert db.query(Company).filter(Company.name == "Initech").one().status == "pending"


def test_user_cannot_file_on_behalf(db, user_u, it_department):
    with pytest.raises(AuthorizationError):
        tickets.create_ticket_on_behalf(
            db,
            user_u,
            {"name": "Someone", "email": "someone@acme.com"},
            title="x",
            description="y",
            department_id=it_department.department_id,
        )


def test_attachments_add_and_remove(db, user_u, user_u2, it_department):
    pdf = tickets.NewAttachment("error.pdf", "application/pdf", b"%PDF-1.4 fake")
    ticket = file_ticket(db, user_u, it_department, attachments=[pdf])
    assert [a.original_name for a in ticket.attachments] == ["error.pdf"]

    png = tickets.NewAttachment("screen.png", "image/png", b"\x89PNG fake")
    listed = tickets.attach_documents(db, user_u, ticket.ticket_id, [png])
    assert [a.original_name for a in listed] == ["error.pdf", "screen.png"]
    assert listed[1].size == len(b"\x89PNG fake")

    with pytest.raises(AuthorizationError):
        tickets.attach_documents(db, user_u2, ticket.ticket_id, [png])

    tickets.remove_document(db, user_u, ticket.ticket_id, listed[0].attachment_id)
    remaining = tickets.list_attachments(db, user_u, ticket.ticket_id)
    assert [a.original_name for a in remaining] == ["screen.png"]


def test_admin_attachments_are_staff_only(db, user_u, admin_a, it_department):
    ticket = file_ticket(db, user_u, it_department)
    note = tickets.NewAttachment("fix.txt", "text/plain", b"steps")

    added = tickets.attach_documents(db, admin_a, ticket.ticket_id, [note], kind="admin")
    assert added[0].kind == "admin"
    assert tickets.list_attachments(db, user_u, ticket.ticket_id) == []
    with pytest.raises(AuthorizationError):
        tickets.list_attachments(db, user_u, ticket.ticket_id, kind="admin")


def test_attachment_validation(db, user_u, it_department, monkeypatch):
    with pytest.raises(ValidationError):
        file_ticket(db, user_u, it_department, attachments=[tickets.NewAttachment("run.exe", "application/octet-stream", b"MZ")])

    monkeypatch.setenv("MAX_ATTACHMENT_BYTES", "4")
    tickets.get_settings.cache_clear()
    with pytest.raises(ValidationError):
        file_ticket(db, user_u, it_department, attachments=[tickets.NewAttachment("a.txt", "text/plain", b"12345")])

    with pytest.raises(ValidationError):
        tickets.decode_upload("a.txt", "text/plain", "not base64!!")
    decoded = tickets.decode_upload("a.txt", "text/plain", base64.b64encode(b"ok").decode())
    assert decoded.data == b"ok"
    assert db.query(Ticket).count() == 0


def test_feedback_rules(db, user_u, user_u2, admin_a, it_department):
    ticket = file_ticket(db, user_u, it_department)

    with pytest.raises(ValidationError):
        tickets.submit_feedback(db, user_u, ticket.ticket_id, 5)

    tickets.update_status(db, admin_a, ticket.ticket_id, "resolved", solution="Restarted VPN concentrator")
    with pytest.raises(AuthorizationError):
        tickets.submit_feedback(db, user_u2, ticket.ticket_id, 5)
    with pytest.raises(ValidationError):
        tickets.submit_feedback(db, user_u, ticket.ticket_id, 6)

    rated = tickets.submit_feedback(db, user_u, ticket.ticket_id, 4, "  quick fix ")
    assert rated.feedback_rating == 4
    assert rated.feedback_comment == "quick fix"
    with pytest.raises(ValidationError):
        tickets.submit_feedback(db, user_u, ticket.ticket_id, 2)

    assert tickets.get_feedback(db, admin_a, ticket.ticket_id)["rating"] == 4
    with pytest.raises(AuthorizationError):
        tickets.get_feedback(db, user_u2, ticket.ticket_id)


def test_delete_is_superadmin_only(db, user_u, admin_a, superadmin, it_department):
    ticket = file_ticket(db, user_u, it_department)
    tickets.add_remark(db, admin_a, ticket.ticket_id, "Noted")

    with pytest.raises(AuthorizationError):
        tickets.delete_ticket(db, admin_a, ticket.ticket_id)

    tickets.delete_ticket(db, superadmin, ticket.ticket_id)
    assert db.query(Ticket).count() == 0
    with pytest.raises(NotFoundError):
        tickets.delete_ticket(db, superadmin, ticket.ticket_id)


def test_department_scope_when_enforced(db, user_u, admin_a, superadmin, it_department, hr_department, monkeypatch):
    monkeypatch.setenv("ENFORCE_DEPARTMENT_SCOPE", "true")
    tickets.get_settings.cache_clear()

    it_ticket = file_ticket(db, user_u, it_department)
    hr_ticket = file_ticket(db, user_u, hr_department, title="Payslip missing")

    assert [t.ticket_id for t in tickets.list_tickets(db, admin_a)] == [it_ticket.ticket_id]
    with pytest.raises(AuthorizationError):
        tickets.update_status(db, admin_a, hr_ticket.ticket_id, "assigned")
    with pytest.raises(AuthorizationError):
        tickets.get_ticket(db, admin_a, hr_ticket.ticket_id)

    assert len(tickets.list_tickets(db, superadmin)) == 2
    tickets.update_status(db, superadmin, hr_ticket.ticket_id, "assigned")
