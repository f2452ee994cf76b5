from __future__ import annotations

import logging
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Header, Query, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from helpdesk import accounts, admin_profiles, companies, departments, reporting, tickets
from helpdesk.config import configure_logging, get_settings
from helpdesk.database import Base, SessionLocal, engine, get_db
from helpdesk.errors import AuthenticationError, install_error_handlers
from helpdesk.models import TicketAttachment, User
from helpdesk.recommender import recommender
from helpdesk.schemas import (
    AdminPasswordResetRequest,
    AdminProfileCreateRequest,
    AdminProfileLimitedUpdateRequest,
    AdminProfileOut,
    AdminProfileUpdateRequest,
    AttachmentOut,
    ChangePasswordRequest,
    CompanyDetailOut,
    CompanyOut,
    CompanyUpdateRequest,
    DepartmentCreateRequest,
    DepartmentOut,
    DepartmentUpdateRequest,
    FeedbackOut,
    FeedbackRequest,
    ForgotPasswordRequest,
    LoginRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    RemarkCreateRequest,
    RemarkOut,
    ResetPasswordRequest,
    StatusLogOut,
    SuggestRequest,
    TicketCreateRequest,
    TicketOnBehalfRequest,
    TicketOut,
    TicketStatusUpdateRequest,
    TokenOut,
    UserAssignmentRequest,
    UserCreateRequest,
    UserOut,
    UserStatusRequest,
    UserUpdateRequest,
)
from helpdesk.security import (
    bearer_token,
    create_access_token,
    decode_token,
    get_current_user,
    get_token_claims,
    hash_password,
    require,
    resolve_navigation,
    revoke_token,
)


logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="Helpdesk API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)

INLINE_TYPES = {"image/jpeg", "image/png", "image/gif", "application/pdf", "text/plain"}


def ensure_superadmin(db: Session) -> User | None:
    email = (settings.superadmin_email or "").strip().lower()
    if not email or not settings.superadmin_password:
        return None
    admin = db.query(User).filter(User.email == email).first()
    if not admin:
        admin = User(
            name=settings.superadmin_name,
            email=email,
            password_hash=hash_password(settings.superadmin_password),
            role="superadmin",
            status="active",
        )
        db.add(admin)
        logger.info("Bootstrap superadmin %s created", email)
    else:
        admin.role = "superadmin"
        admin.status = "active"
    db.commit()
    return admin


@app.on_event("startup")
def startup_event() -> None:
    configure_logging(settings)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        ensure_superadmin(db)
        recommender.rebuild_cache(db)


@app.get("/")
def root() -> dict:
    return {"message": "Server running"}


def _upload_to_attachment(upload: UploadFile) -> tickets.NewAttachment:
    return tickets.NewAttachment(
        original_name=upload.filename or "upload",
        mime_type=upload.content_type or "application/octet-stream",
        data=upload.file.read(),
    )


def _file_response(attachment: TicketAttachment, inline: bool = False) -> Response:
    filename = quote(attachment.original_name or attachment.filename)
    disposition = "inline" if inline and attachment.mime_type in INLINE_TYPES else "attachment"
    return Response(
        content=attachment.data,
        media_type=attachment.mime_type or "application/octet-stream",
        headers={
            "Content-Disposition": f'{disposition}; filename="{filename}"',
            "Cache-Control": "private, max-age=3600",
        },
    )


# ======================================================================= auth

@app.post("/api/auth/register", response_model=TokenOut, status_code=201)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    user = accounts.register(db, **payload.model_dump())
    return {"token": create_access_token(user), "user": user}


@app.post("/api/auth/login", response_model=TokenOut)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = accounts.authenticate(db, payload.email, payload.password, payload.expected_role)
    return {"token": create_access_token(user), "user": user}


@app.post("/api/auth/logout")
def logout(claims: dict = Depends(get_token_claims)):
    revoke_token(claims)
    return {"message": "Logged out successfully"}


@app.get("/api/auth/me", response_model=UserOut)
def auth_me(user: User = Depends(get_current_user)):
    return user


@app.post("/api/auth/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, db: Session = Depends(get_db)):
    _, token = accounts.request_password_reset(db, payload.email)
    body = {"message": "Password reset link sent to your email"}
    if not settings.is_production:
        body["token"] = token
    return body


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordRequest, db: Session = Depends(get_db)):
    accounts.reset_password(db, payload.token, payload.new_password)
    return {"message": "Password reset successfully"}


@app.post("/api/auth/change-password")
def change_password(
    payload: ChangePasswordRequest,
    user: User = Depends(require("profile.self")),
    db: Session = Depends(get_db),
):
    accounts.change_password(db, user, payload.current_password, payload.new_password)
    return {"message": "Password changed successfully"}


@app.patch("/api/auth/update-profile", response_model=UserOut)
def update_profile(
    payload: ProfileUpdateRequest,
    user: User = Depends(require("profile.self")),
    db: Session = Depends(get_db),
):
    return accounts.update_profile(db, user, payload.model_dump(exclude_unset=True))


@app.get("/api/auth/navigation")
def navigation(
    path: str = Query(...),
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    role = None
    if authorization:
        try:
            claims = decode_token(bearer_token(authorization))
            user = db.get(User, int(claims["sub"]))
            role = user.role if user and user.status == "active" else None
        except (AuthenticationError, ValueError):
            role = None
    return {"path": path, "redirect": resolve_navigation(role, path)}


# ======================================================================= tickets

@app.get("/api/tickets", response_model=list[TicketOut])
def list_tickets(
    status: str | None = None,
    priority: str | None = None,
    department_id: int | None = None,
    company: str | None = None,
    search: str | None = None,
    mine: bool = False,
    user: User = Depends(require("tickets.list_own")),
    db: Session = Depends(get_db),
):
    filters = tickets.TicketFilters(
        status=status,
        priority=priority,
        department_id=department_id,
        company=company,
        search=search,
    )
    return tickets.list_tickets(db, user, filters, own_only=mine)


@app.get("/api/tickets/dashboard/stats")
def ticket_stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return reporting.dashboard_stats(db, user)


@app.post("/api/tickets", response_model=TicketOut, status_code=201)
def create_ticket(
    payload: TicketCreateRequest,
    user: User = Depends(require("tickets.create")),
    db: Session = Depends(get_db),
):
    files = [tickets.decode_upload(a.filename, a.mime_type, a.data) for a in payload.attachments]
    return tickets.create_ticket(
        db,
        user,
        title=payload.title,
        description=payload.description,
        department_id=payload.department_id,
        priority=payload.priority,
        category=payload.category,
        reason=payload.reason,
        attachments=files,
    )


@app.post("/api/tickets/on-behalf", response_model=TicketOut, status_code=201)
def create_ticket_on_behalf(
    payload: TicketOnBehalfRequest,
    user: User = Depends(require("tickets.create_on_behalf")),
    db: Session = Depends(get_db),
):
    files = [tickets.decode_upload(a.filename, a.mime_type, a.data) for a in payload.attachments]
    return tickets.create_ticket_on_behalf(
        db,
        user,
        payload.user_details.model_dump(),
        title=payload.title,
        description=payload.description,
        department_id=payload.department_id,
        priority=payload.priority,
        category=payload.category,
        reason=payload.reason,
        attachments=files,
    )


@app.get("/api/tickets/{ticket_id}", response_model=TicketOut)
def get_ticket(ticket_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return tickets.get_ticket(db, user, ticket_id)


@app.patch("/api/tickets/{ticket_id}/status", response_model=TicketOut)
def update_ticket_status(
    ticket_id: int,
    payload: TicketStatusUpdateRequest,
    user: User = Depends(require("tickets.update_status")),
    db: Session = Depends(get_db),
):
    return tickets.update_status(
        db,
        user,
        ticket_id,
        payload.status,
        solution=payload.solution,
        remark=payload.remarks,
        assignee_id=payload.assigned_to_id,
        expected_version=payload.version,
    )


@app.post("/api/tickets/{ticket_id}/remarks", response_model=RemarkOut, status_code=201)
def add_remark(
    ticket_id: int,
    payload: RemarkCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return tickets.add_remark(db, user, ticket_id, payload.text)


@app.get("/api/tickets/{ticket_id}/history", response_model=list[StatusLogOut])
def ticket_history(ticket_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return tickets.status_history(db, user, ticket_id)


@app.delete("/api/tickets/{ticket_id}")
def delete_ticket(
    ticket_id: int,
    user: User = Depends(require("tickets.delete")),
    db: Session = Depends(get_db),
):
    tickets.delete_ticket(db, user, ticket_id)
    return {"message": "Ticket deleted successfully"}


@app.post("/api/tickets/{ticket_id}/feedback", response_model=TicketOut)
def submit_feedback(
    ticket_id: int,
    payload: FeedbackRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return tickets.submit_feedback(db, user, ticket_id, payload.rating, payload.comment)


@app.get("/api/tickets/{ticket_id}/feedback", response_model=FeedbackOut)
def get_feedback(ticket_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return tickets.get_feedback(db, user, ticket_id)


# ---- attachments ----

@app.get("/api/tickets/{ticket_id}/attachments", response_model=list[AttachmentOut])
def list_attachments(ticket_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return tickets.list_attachments(db, user, ticket_id, kind="user")


@app.post("/api/tickets/{ticket_id}/attachments", response_model=list[AttachmentOut])
def add_attachments(
    ticket_id: int,
    attachments: list[UploadFile] = File(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    files = [_upload_to_attachment(upload) for upload in attachments]
    return tickets.attach_documents(db, user, ticket_id, files, kind="user")


@app.get("/api/tickets/{ticket_id}/attachments/{attachment_id}")
def download_attachment(
    ticket_id: int,
    attachment_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _file_response(tickets.get_attachment(db, user, ticket_id, attachment_id, kind="user"))


@app.get("/api/tickets/{ticket_id}/attachments/{attachment_id}/view")
def view_attachment(
    ticket_id: int,
    attachment_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    attachment = tickets.get_attachment(db, user, ticket_id, attachment_id, kind="user")
    return _file_response(attachment, inline=True)


@app.delete("/api/tickets/{ticket_id}/attachments/{attachment_id}")
def delete_attachment(
    ticket_id: int,
    attachment_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    tickets.remove_document(db, user, ticket_id, attachment_id, kind="user")
    return {"message": "Attachment deleted successfully", "ticket_id": ticket_id, "attachment_id": attachment_id}


@app.get("/api/tickets/{ticket_id}/admin-attachments", response_model=list[AttachmentOut])
def list_admin_attachments(
    ticket_id: int,
    user: User = Depends(require("tickets.admin_attachments")),
    db: Session = Depends(get_db),
):
    return tickets.list_attachments(db, user, ticket_id, kind="admin")


@app.post("/api/tickets/{ticket_id}/admin-attachments", response_model=list[AttachmentOut])
def add_admin_attachments(
    ticket_id: int,
    attachments: list[UploadFile] = File(...),
    user: User = Depends(require("tickets.admin_attachments")),
    db: Session = Depends(get_db),
):
    files = [_upload_to_attachment(upload) for upload in attachments]
    return tickets.attach_documents(db, user, ticket_id, files, kind="admin")


@app.get("/api/tickets/{ticket_id}/admin-attachments/{attachment_id}")
def download_admin_attachment(
    ticket_id: int,
    attachment_id: int,
    user: User = Depends(require("tickets.admin_attachments")),
    db: Session = Depends(get_db),
):
    return _file_response(tickets.get_attachment(db, user, ticket_id, attachment_id, kind="admin"))


@app.delete("/api/tickets/{ticket_id}/admin-attachments/{attachment_id}")
def delete_admin_attachment(
    ticket_id: int,
    attachment_id: int,
    user: User = Depends(require("tickets.admin_attachments")),
    db: Session = Depends(get_db),
):
    tickets.remove_document(db, user, ticket_id, attachment_id, kind="admin")
    return {"message": "Admin attachment deleted successfully", "ticket_id": ticket_id, "attachment_id": attachment_id}


# ======================================================================= knowledge base

@app.get("/api/knowledge-base", response_model=list[TicketOut])
def knowledge_base(
    search: str | None = None,
    category: list[str] = Query(default=[]),
    department_id: list[int] = Query(default=[]),
    priority: list[str] = Query(default=[]),
    sort: str = "newest",
    user: User = Depends(require("reports.knowledge_base")),
    db: Session = Depends(get_db),
):
    query = reporting.SolutionQuery(
        search=search,
        categories=category,
        department_ids=department_id,
        priorities=priority,
        sort=sort,
    )
    return reporting.search_solutions(db, user, query)


@app.get("/api/knowledge-base/analytics")
def knowledge_base_analytics(
    user: User = Depends(require("reports.knowledge_base")),
    db: Session = Depends(get_db),
):
    return reporting.solution_analytics(db, user)


@app.post("/api/knowledge-base/suggest")
def knowledge_base_suggest(
    payload: SuggestRequest,
    user: User = Depends(require("knowledge_base.suggest")),
    db: Session = Depends(get_db),
):
    results = reporting.suggest_solutions(db, user, payload.text, top_k=payload.top_k, min_score=payload.min_score)
    return {"count": len(results), "suggestions": results}


# ======================================================================= departments

@app.get("/api/departments", response_model=list[DepartmentOut])
def list_departments(_: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return departments.list_departments(db)


@app.get("/api/departments/{department_id}", response_model=DepartmentOut)
def get_department(department_id: int, _: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return departments.get_department(db, department_id)


@app.post("/api/departments", response_model=DepartmentOut, status_code=201)
def create_department(
    payload: DepartmentCreateRequest,
    _: User = Depends(require("departments.manage")),
    db: Session = Depends(get_db),
):
    return departments.create_department(db, payload.name, payload.description, payload.categories)


@app.put("/api/departments/{department_id}", response_model=DepartmentOut)
def update_department(
    department_id: int,
    payload: DepartmentUpdateRequest,
    _: User = Depends(require("departments.manage")),
    db: Session = Depends(get_db),
):
    return departments.update_department(db, department_id, payload.model_dump(exclude_unset=True))


@app.delete("/api/departments/{department_id}")
def delete_department(
    department_id: int,
    _: User = Depends(require("departments.manage")),
    db: Session = Depends(get_db),
):
    departments.delete_department(db, department_id)
    return {"message": "Department deleted successfully"}


# ======================================================================= companies

@app.get("/api/companies", response_model=list[CompanyOut])
def list_companies(_: User = Depends(require("companies.manage")), db: Session = Depends(get_db)):
    return companies.list_companies(db)


@app.post("/api/companies/refresh", response_model=list[CompanyOut])
def refresh_companies(user: User = Depends(require("companies.manage")), db: Session = Depends(get_db)):
    return reporting.refresh_companies(db, user)


@app.get("/api/companies/{company_id}", response_model=CompanyDetailOut)
def get_company(company_id: int, _: User = Depends(require("companies.manage")), db: Session = Depends(get_db)):
    company, employees, company_tickets = companies.get_company_detail(db, company_id)
    return {"company": company, "employees": employees, "tickets": company_tickets}


@app.patch("/api/companies/{company_id}", response_model=CompanyOut)
def update_company(
    company_id: int,
    payload: CompanyUpdateRequest,
    user: User = Depends(require("companies.manage")),
    db: Session = Depends(get_db),
):
    return companies.update_company(db, user, company_id, payload.model_dump(exclude_unset=True))


# ======================================================================= users

@app.get("/api/users", response_model=list[UserOut])
def list_users(
    role: str | None = None,
    status: str | None = None,
    company: str | None = None,
    department_id: int | None = None,
    search: str | None = None,
    _: User = Depends(require("users.manage")),
    db: Session = Depends(get_db),
):
    return accounts.list_users(
        db, role=role, status=status, company=company, department_id=department_id, search=search
    )


@app.post("/api/users", response_model=UserOut, status_code=201)
def create_user(
    payload: UserCreateRequest,
    _: User = Depends(require("users.manage")),
    db: Session = Depends(get_db),
):
    return accounts.create_user(db, **payload.model_dump())


@app.get("/api/users/{user_id}", response_model=UserOut)
def get_user(user_id: int, _: User = Depends(require("users.manage")), db: Session = Depends(get_db)):
    return accounts.get_user(db, user_id)


@app.put("/api/users/{user_id}", response_model=UserOut)
def update_user(
    user_id: int,
    payload: UserUpdateRequest,
    _: User = Depends(require("users.manage")),
    db: Session = Depends(get_db),
):
    return accounts.update_user(db, user_id, payload.model_dump(exclude_unset=True))


@app.patch("/api/users/{user_id}", response_model=UserOut)
def assign_user(
    user_id: int,
    payload: UserAssignmentRequest,
    _: User = Depends(require("users.manage")),
    db: Session = Depends(get_db),
):
    return accounts.update_user(db, user_id, payload.model_dump(exclude_unset=True))


@app.patch("/api/users/{user_id}/status", response_model=UserOut)
def set_user_status(
    user_id: int,
    payload: UserStatusRequest,
    user: User = Depends(require("users.manage")),
    db: Session = Depends(get_db),
):
    return accounts.set_user_status(db, user, user_id, payload.status, payload.status_reason)


@app.post("/api/users/{user_id}/reset-password")
def admin_reset_password(
    user_id: int,
    payload: AdminPasswordResetRequest,
    _: User = Depends(require("users.manage")),
    db: Session = Depends(get_db),
):
    accounts.admin_reset_password(db, user_id, payload.new_password)
    return {"message": "Password reset successfully"}


@app.delete("/api/users/{user_id}")
def delete_user(
    user_id: int,
    user: User = Depends(require("users.manage")),
    db: Session = Depends(get_db),
):
    accounts.delete_user(db, user, user_id)
    return {"message": "User deleted successfully"}


# ======================================================================= admin profiles

@app.get("/api/admin-profiles", response_model=list[AdminProfileOut])
def list_admin_profiles(user: User = Depends(require("admin_profiles.view")), db: Session = Depends(get_db)):
    return admin_profiles.list_profiles(db, user)


@app.get("/api/admin-profiles/search")
def search_admin_profiles(
    query: str | None = None,
    user: User = Depends(require("admin_profiles.view")),
    db: Session = Depends(get_db),
):
    found = admin_profiles.search_profiles(db, user, query)
    return {"count": len(found), "data": [AdminProfileOut.model_validate(p) for p in found]}


@app.get("/api/admin-profiles/my-profile", response_model=AdminProfileOut)
def my_admin_profile(user: User = Depends(require("admin_profiles.self")), db: Session = Depends(get_db)):
    return admin_profiles.my_profile(db, user)


@app.patch("/api/admin-profiles/my-profile", response_model=AdminProfileOut)
def update_my_admin_profile(
    payload: AdminProfileLimitedUpdateRequest,
    user: User = Depends(require("admin_profiles.self")),
    db: Session = Depends(get_db),
):
    return admin_profiles.update_own_profile(db, user, payload.model_dump(exclude_unset=True))


@app.get("/api/admin-profiles/by-department/{department_id}", response_model=list[AdminProfileOut])
def admin_profiles_by_department(
    department_id: int,
    user: User = Depends(require("admin_profiles.view")),
    db: Session = Depends(get_db),
):
    return admin_profiles.profiles_for_department(db, user, department_id)


@app.post("/api/admin-profiles", response_model=AdminProfileOut, status_code=201)
def create_admin_profile(
    payload: AdminProfileCreateRequest,
    user: User = Depends(require("admin_profiles.manage")),
    db: Session = Depends(get_db),
):
    return admin_profiles.create_profile(db, user, **payload.model_dump())


@app.get("/api/admin-profiles/{profile_id}", response_model=AdminProfileOut)
def get_admin_profile(profile_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return admin_profiles.get_profile(db, user, profile_id)


@app.patch("/api/admin-profiles/{profile_id}", response_model=AdminProfileOut)
def update_admin_profile(
    profile_id: int,
    payload: AdminProfileUpdateRequest,
    user: User = Depends(require("admin_profiles.manage")),
    db: Session = Depends(get_db),
):
    return admin_profiles.update_profile(db, user, profile_id, payload.model_dump(exclude_unset=True))


@app.patch("/api/admin-profiles/{profile_id}/limited", response_model=AdminProfileOut)
def update_admin_profile_limited(
    profile_id: int,
    payload: AdminProfileLimitedUpdateRequest,
    user: User = Depends(require("admin_profiles.view")),
    db: Session = Depends(get_db),
):
    return admin_profiles.update_profile_limited(db, user, profile_id, payload.model_dump(exclude_unset=True))


@app.delete("/api/admin-profiles/{profile_id}")
def delete_admin_profile(
    profile_id: int,
    user: User = Depends(require("admin_profiles.manage")),
    db: Session = Depends(get_db),
):
    admin_profiles.delete_profile(db, user, profile_id)
    return {"message": "Admin profile deleted successfully"}
