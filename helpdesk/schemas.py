"""Canonical request and response shapes for every resource."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "admin", "superadmin"]
AccountStatus = Literal["active", "suspended", "frozen"]
CompanyStatus = Literal["active", "suspended", "frozen", "pending"]
Priority = Literal["low", "medium", "high"]
TicketStatus = Literal["pending", "assigned", "in-progress", "resolved"]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---- auth ----

class LoginRequest(BaseModel):
    email: str
    password: str
    expected_role: Role | None = None


class RegisterRequest(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    email: str = Field(min_length=5, max_length=150)
    password: str = Field(min_length=6, max_length=255)
    employee_code: str | None = Field(default=None, max_length=50)
    company_name: str | None = Field(default=None, max_length=150)
    phone_number: str | None = Field(default=None, max_length=30)


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str = Field(min_length=6, max_length=255)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6, max_length=255)


class ProfileUpdateRequest(BaseModel):
    name: str | None = None
    employee_code: str | None = None
    company_name: str | None = None
    phone_number: str | None = None


# ---- users ----

class UserRef(ORMModel):
    user_id: int
    name: str
    email: str


class DepartmentRef(ORMModel):
    department_id: int
    name: str


class UserOut(ORMModel):
    user_id: int
    name: str
    email: str
    role: Role
    employee_code: str | None = None
    company_name: str | None = None
    department: DepartmentRef | None = None
    phone_number: str | None = None
    status: AccountStatus
    status_reason: str | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None


class TokenOut(BaseModel):
    token: str
    user: UserOut


class UserCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    email: str = Field(min_length=5, max_length=150)
    password: str = Field(min_length=6, max_length=255)
    role: Role = "user"
    employee_code: str | None = None
    company_name: str | None = None
    department_id: int | None = None
    phone_number: str | None = None


class UserUpdateRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    role: Role | None = None
    employee_code: str | None = None
    company_name: str | None = None
    department_id: int | None = None
    phone_number: str | None = None


class UserAssignmentRequest(BaseModel):
    department_id: int | None = None
    role: Role | None = None


class UserStatusRequest(BaseModel):
    status: AccountStatus
    status_reason: str | None = None


class AdminPasswordResetRequest(BaseModel):
    new_password: str = Field(min_length=6, max_length=255)


# ---- departments ----

class DepartmentCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    categories: list[str] = Field(default_factory=list)


class DepartmentUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    categories: list[str] | None = None


class DepartmentOut(ORMModel):
    department_id: int
    name: str
    description: str | None = None
    categories: list[str] = Field(default_factory=list)
    created_at: datetime | None = None


# ---- admin profiles ----

class AdminProfileCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    email: str = Field(min_length=5, max_length=150)
    password: str = Field(min_length=6, max_length=255)
    department_id: int | None = None
    employee_code: str | None = Field(default=None, max_length=50)
    phone_number: str | None = Field(default=None, max_length=30)
    expertise: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)


class AdminProfileUpdateRequest(BaseModel):
    name: str | None = None
    department_id: int | None = None
    employee_code: str | None = None
    phone_number: str | None = None
    expertise: list[str] | None = None
    categories: list[str] | None = None
    is_active: bool | None = None


class AdminProfileLimitedUpdateRequest(BaseModel):
    expertise: list[str] | None = None
    phone_number: str | None = None


class AdminProfileOut(ORMModel):
    profile_id: int
    user: UserOut
    expertise: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    joining_date: datetime | None = None
    is_active: bool = True
    updated_at: datetime | None = None


# ---- companies ----

class CompanyOut(ORMModel):
    company_id: int
    name: str
    domain: str | None = None
    employee_count: int = 0
    total_tickets: int = 0
    resolved_tickets: int = 0
    pending_tickets: int = 0
    total_support_time: float = 0.0
    average_support_time: float = 0.0
    average_rating: float = 0.0
    total_feedbacks: int = 0
    status: CompanyStatus
    status_reason: str | None = None
    last_refreshed_at: datetime | None = None
    updated_at: datetime | None = None


class CompanyUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=150)
    domain: str | None = None
    status: CompanyStatus | None = None
    status_reason: str | None = None


# ---- tickets ----

class AttachmentUpload(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    mime_type: str = "application/octet-stream"
    data: str  # base64


class TicketCreateRequest(BaseModel):
    title: str
    description: str
    priority: Priority = "medium"
    department_id: int | None = None
    category: str | None = None
    reason: str | None = None
    attachments: list[AttachmentUpload] = Field(default_factory=list)


class RequesterDetails(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=150)
    employee_code: str | None = None
    company_name: str | None = None


class TicketOnBehalfRequest(TicketCreateRequest):
    user_details: RequesterDetails


class TicketStatusUpdateRequest(BaseModel):
    status: TicketStatus
    solution: str | None = None
    remarks: str | None = None
    assigned_to_id: int | None = None
    version: int | None = None


class RemarkCreateRequest(BaseModel):
    text: str


class FeedbackRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = None


class RemarkOut(ORMModel):
    remark_id: int
    text: str
    added_by: UserRef | None = None
    added_at: datetime | None = None


class AttachmentOut(ORMModel):
    attachment_id: int
    kind: Literal["user", "admin"]
    filename: str
    original_name: str
    mime_type: str
    size: int
    uploaded_by: UserRef | None = None
    uploaded_at: datetime | None = None


class StatusLogOut(ORMModel):
    log_id: int
    old_status: str | None = None
    new_status: str | None = None
    actor: UserRef | None = None
    changed_at: datetime | None = None
    note: str | None = None


class FeedbackOut(BaseModel):
    rating: int | None = None
    comment: str | None = None
    submitted_at: datetime | None = None


class TicketOut(ORMModel):
    ticket_id: int
    ticket_number: str
    title: str
    description: str
    category: str | None = None
    reason: str | None = None
    priority: Priority
    status: TicketStatus
    department: DepartmentRef | None = None
    created_by: UserRef | None = None
    filed_by: UserRef | None = None
    assigned_to: UserRef | None = None
    solved_by: UserRef | None = None
    requester_name: str | None = None
    requester_email: str | None = None
    requester_employee_code: str | None = None
    requester_company: str | None = None
    solution: str | None = None
    solved_at: datetime | None = None
    time_to_solve: float | None = None
    feedback_rating: int | None = None
    remarks: list[RemarkOut] = Field(default_factory=list)
    attachments: list[AttachmentOut] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int


class CompanyDetailOut(BaseModel):
    company: CompanyOut
    employees: list[UserOut]
    tickets: list[TicketOut]


# ---- knowledge base ----

class SuggestRequest(BaseModel):
    text: str = Field(min_length=1)
    top_k: int = Field(default=3, ge=1, le=20)
    min_score: float = Field(default=0.15, ge=0.0, le=1.0)
