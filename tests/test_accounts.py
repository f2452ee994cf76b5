import pytest

from helpdesk import accounts, companies, departments, tickets
from helpdesk.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ReferentialConflict,
    ValidationError,
)
from helpdesk.models import Company, Department, User
from tests.conftest import make_user


def test_register_normalizes_and_registers_company(db):
    user = accounts.register(
        db, name="  Nia New ", email=" Nia@Initech.com ", password="secret123", company_name=" Initech "
    )

    assert user.name == "Nia New"
    assert user.email == "nia@initech.com"
    assert user.role == "user"
    assert user.company_name == "Initech"
    assert db.query(Company).filter(Company.name == "Initech").one().status == "pending"


@pytest.mark.parametrize(
    "fields, field",
    [
        ({"name": "N", "email": "n@x.com", "password": "secret123"}, "name"),
        ({"name": "Nia", "email": "not-an-email", "password": "secret123"}, "email"),
        ({"name": "Nia", "email": "n@x.com", "password": "123"}, "password"),
    ],
)
def test_register_validation(db, fields, field):
    with pytest.raises(ValidationError) as excinfo:
        accounts.register(db, **fields)
    assert excinfo.value.field == field


def test_register_rejects_taken_email_and_code(db, user_u):
    with pytest.raises(ConflictError):
        accounts.register(db, name="Uma Two", email="UMA@acme.com", password="secret123")

    accounts.register(db, name="Coded", email="coded@acme.com", password="secret123", employee_code="E-1")
    with pytest.raises(ConflictError):
        accounts.register(db, name="Clone", email="clone@acme.com", password="secret123", employee_code="E-1")


def test_authenticate_stamps_last_login(db, user_u):
    assert user_u.last_login is None

    user = accounts.authenticate(db, "uma@acme.com", "secret123")

    assert user.last_login is not None
    with pytest.raises(AuthenticationError):
        accounts.authenticate(db, "uma@acme.com", "wrong-one")
    with pytest.raises(AuthenticationError):
        accounts.authenticate(db, "nobody@acme.com", "secret123")
    with pytest.raises(AuthorizationError):
        accounts.authenticate(db, "uma@acme.com", "secret123", expected_role="superadmin")


def test_frozen_account_cannot_login(db):
    make_user(db, "Fred Frozen", "fred@acme.com", status="frozen")

    with pytest.raises(AuthorizationError):
        accounts.authenticate(db, "fred@acme.com", "secret123")


def test_change_password(db, user_u):
    with pytest.raises(AuthenticationError):
        accounts.change_password(db, user_u, "wrong-one", "newsecret")
    with pytest.raises(ValidationError):
        accounts.change_password(db, user_u, "secret123", "123")

    accounts.change_password(db, user_u, "secret123", "newsecret")
    assert accounts.authenticate(db, "uma@acme.com", "newsecret").user_id == user_u.user_id


def test_update_profile_is_all_or_nothing(db, user_u):
    accounts.register(db, name="Coded", email="coded@acme.com", password="secret123", employee_code="E-1")

    with pytest.raises(ConflictError):
        accounts.update_profile(db, user_u, {"name": "Uma Renamed", "employee_code": "E-1"})
    db.expire_all()
    assert db.get(User, user_u.user_id).name == "Uma User"

    updated = accounts.update_profile(db, user_u, {"name": "Uma Renamed", "phone_number": " 555-0101 "})
    assert updated.name == "Uma Renamed"
    assert updated.phone_number == "555-0101"


def test_password_reset_token_is_single_use(db, user_u):
    _, token = accounts.request_password_reset(db, "UMA@acme.com")

    accounts.reset_password(db, token, "fresh-pass")

    with pytest.raises(AuthenticationError):
        accounts.reset_password(db, token, "other-pass")
    with pytest.raises(NotFoundError):
        accounts.request_password_reset(db, "ghost@acme.com")
    assert accounts.authenticate(db, "uma@acme.com", "fresh-pass")


def test_create_user_department_only_for_staff(db, it_department):
    with pytest.raises(ValidationError):
        accounts.create_user(
            db, name="Ursula", email="ursula@acme.com", password="secret123", department_id=it_department.department_id
        )
    with pytest.raises(NotFoundError):
        accounts.create_user(
            db, name="Ari Admin", email="ari@helpdesk.com", password="secret123", role="admin", department_id=999
        )

    admin = accounts.create_user(
        db,
        name="Ari Admin",
        email="ari@helpdesk.com",
        password="secret123",
        role="admin",
        department_id=it_department.department_id,
    )
    assert admin.department.name == "IT"


def test_demoting_admin_clears_department(db, admin_a):
    demoted = accounts.update_user(db, admin_a.user_id, {"role": "user"})

    assert demoted.role == "user"
    assert demoted.department_id is None


def test_list_users_filters(db, user_u, user_u2, admin_a):
    assert [u.email for u in accounts.list_users(db, role="admin")] == ["ada@helpdesk.com"]
    assert [u.email for u in accounts.list_users(db, company="globex")] == ["victor@globex.com"]
    assert [u.email for u in accounts.list_users(db, search="UMA")] == ["uma@acme.com"]


def test_status_changes(db, user_u, superadmin):
    suspended = accounts.set_user_status(db, superadmin, user_u.user_id, "suspended", " Left the company ")
    assert suspended.status_reason == "Left the company"
    assert suspended.status_changed_at is not None

    with pytest.raises(ValidationError):
        accounts.set_user_status(db, superadmin, superadmin.user_id, "frozen")
    with pytest.raises(ValidationError):
        accounts.set_user_status(db, superadmin, user_u.user_id, "deleted")


def test_delete_user_rules(db, user_u, admin_a, superadmin, it_department):
    with pytest.raises(ValidationError):
        accounts.delete_user(db, superadmin, superadmin.user_id)

    ticket = tickets.create_ticket(
        db, user_u, title="VPN down", description="No tunnel", department_id=it_department.department_id
    )
    tickets.add_remark(db, admin_a, ticket.ticket_id, "Checking")

    with pytest.raises(ReferentialConflict):
        accounts.delete_user(db, superadmin, user_u.user_id)
    with pytest.raises(ReferentialConflict):
        accounts.delete_user(db, superadmin, admin_a.user_id)
    assert db.query(User).count() == 3


def test_delete_user_refused_after_moving_a_ticket(db, user_u, admin_a, superadmin, it_department):
    bo = make_user(db, "Bo Admin", "bo@helpdesk.com", role="admin", department=it_department)
    ticket = tickets.create_ticket(
        db, user_u, title="VPN down", description="No tunnel", department_id=it_department.department_id
    )
    tickets.update_status(db, admin_a, ticket.ticket_id, "assigned")
    tickets.update_status(db, bo, ticket.ticket_id, "in-progress")
    assert ticket.assigned_to_id == admin_a.user_id

    with pytest.raises(ReferentialConflict) as excinfo:
        accounts.delete_user(db, superadmin, bo.user_id)
    assert "status changes" in excinfo.value.message
    db.expire_all()
    assert db.get(User, bo.user_id) is not None


def test_delete_user_refused_for_attachment_uploader(db, user_u, superadmin, it_department):
    bo = make_user(db, "Bo Admin", "bo@helpdesk.com", role="admin", department=it_department)
    ticket = tickets.create_ticket(
        db, user_u, title="VPN down", description="No tunnel", department_id=it_department.department_id
    )
    note = tickets.NewAttachment("fix.txt", "text/plain", b"steps")
    tickets.attach_documents(db, bo, ticket.ticket_id, [note], kind="admin")

    with pytest.raises(ReferentialConflict) as excinfo:
        accounts.delete_user(db, superadmin, bo.user_id)
    assert "attachments" in excinfo.value.message


def test_delete_user_refused_for_company_status_changer(db, user_u, superadmin):
    other = make_user(db, "Sid Super", "sid@helpdesk.com", role="superadmin")
    acme = companies.ensure_company(db, "Acme")
    db.commit()
    companies.update_company(db, other, acme.company_id, {"status": "frozen", "status_reason": "Audit"})

    with pytest.raises(ReferentialConflict) as excinfo:
        accounts.delete_user(db, superadmin, other.user_id)
    assert "company status" in excinfo.value.message


def test_delete_unreferenced_user(db, superadmin, it_department):
    idle = make_user(db, "Ida Idle", "ida@helpdesk.com", role="admin", department=it_department)

    accounts.delete_user(db, superadmin, idle.user_id)

    db.expire_all()
    assert db.get(User, idle.user_id) is None


def test_department_categories_keep_order_and_duplicates(db):
    department = departments.create_department(db, " Facilities ", None, ["Desk", " Lighting ", "Desk", ""])

    assert department.name == "Facilities"
    assert department.categories == ["Desk", "Lighting", "Desk"]
    with pytest.raises(ConflictError):
        departments.create_department(db, "facilities")
    with pytest.raises(ValidationError):
        departments.create_department(db, "  ")


def test_delete_department_detaches_members(db, admin_a, it_department):
    departments.delete_department(db, it_department.department_id)

    db.expire_all()
    assert db.query(Department).count() == 0
    assert db.get(User, admin_a.user_id).department_id is None


def test_delete_department_with_tickets_is_refused(db, user_u, it_department):
    tickets.create_ticket(db, user_u, title="VPN down", description="No tunnel", department_id=it_department.department_id)

    with pytest.raises(ReferentialConflict):
        departments.delete_department(db, it_department.department_id)
    assert db.query(Department).count() == 1
