"""Admin profiles: expertise and handled categories for department staff.

Superadmins manage every profile. A department admin sees and edits the
profiles of their own department, plus their own, and only ever the
expertise and phone fields.
"""
from __future__ import annotations

import logging

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from helpdesk import accounts
from helpdesk.errors import AuthorizationError, NotFoundError, ValidationError
from helpdesk.models import AdminProfile, Department, User, utcnow
from helpdesk.security import ensure_capability


logger = logging.getLogger(__name__)

# fields an admin may touch on a profile
LIMITED_FIELDS = ("expertise", "phone_number")


def _clean_labels(values: list[str] | None) -> list[str]:
    cleaned = []
    for value in values or []:
        value = (value or "").strip()
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


def _check_categories(db: Session, department_id: int | None, categories: list[str]) -> list[str]:
    if not categories:
        return []
    department = db.get(Department, department_id) if department_id is not None else None
    if department is None:
        raise ValidationError("Categories need a department", field="categories")
    unknown = [c for c in categories if c not in department.categories]
    if unknown:
        raise ValidationError(
            f"Not a category of {department.name}: {', '.join(unknown)}", field="categories"
        )
    return categories


def _scoped(query, actor: User):
    if actor.role == "admin":
        return query.filter(User.department_id == actor.department_id)
    return query


def _base_query(db: Session):
    return (
        db.query(AdminProfile)
        .join(User, AdminProfile.user_id == User.user_id)
        .filter(User.role == "admin")
        .order_by(User.name.asc(), AdminProfile.profile_id.asc())
    )


def _ensure_same_department(actor: User, profile: AdminProfile, action: str) -> None:
    if actor.role != "admin" or profile.user_id == actor.user_id:
        return
    if profile.user.department_id != actor.department_id:
        raise AuthorizationError(f"You can only {action} profiles from your own department")


def _apply_limited(profile: AdminProfile, changes: dict) -> None:
    if "expertise" in changes:
        profile.expertise = _clean_labels(changes["expertise"])
    if "phone_number" in changes:
        profile.user.phone_number = (changes["phone_number"] or "").strip() or None
    profile.updated_at = utcnow()


# ---- reads ----

def list_profiles(db: Session, actor: User) -> list[AdminProfile]:
    ensure_capability(actor, "admin_profiles.view")
    return _scoped(_base_query(db), actor).all()


def profiles_for_department(db: Session, actor: User, department_id: int) -> list[AdminProfile]:
    ensure_capability(actor, "admin_profiles.view")
    if actor.role == "admin" and actor.department_id != department_id:
        raise AuthorizationError("You can only view profiles from your own department")
    if not db.get(Department, department_id):
        raise NotFoundError("Department not found")
    return _base_query(db).filter(User.department_id == department_id).all()


def get_profile(db: Session, actor: User, profile_id: int) -> AdminProfile:
    profile = db.get(AdminProfile, profile_id)
    if not profile:
        raise NotFoundError("Admin profile not found")
    if profile.user_id != actor.user_id:
        ensure_capability(actor, "admin_profiles.view")
        _ensure_same_department(actor, profile, "view")
    return profile


def my_profile(db: Session, actor: User) -> AdminProfile:
    ensure_capability(actor, "admin_profiles.self")
    profile = db.query(AdminProfile).filter(AdminProfile.user_id == actor.user_id).first()
    if not profile:
        raise NotFoundError("Admin profile not found")
    return profile


def search_profiles(db: Session, actor: User, query: str | None) -> list[AdminProfile]:
    ensure_capability(actor, "admin_profiles.view")
    term = (query or "").strip()
    if not term:
        raise ValidationError("Search query is required", field="query")
    pattern = f"%{term.lower()}%"
    matches = _base_query(db).filter(
        or_(
            func.lower(User.name).like(pattern),
            func.lower(User.email).like(pattern),
            func.lower(User.employee_code).like(pattern),
        )
    )
    return _scoped(matches, actor).all()


# ---- writes ----

def create_profile(
    db: Session,
    actor: User,
    *,
    name: str,
    email: str,
    password: str,
    department_id: int | None = None,
    employee_code: str | None = None,
    phone_number: str | None = None,
    expertise: list[str] | None = None,
    categories: list[str] | None = None,
) -> AdminProfile:
    """Create an admin account together with its profile."""
    ensure_capability(actor, "admin_profiles.manage")
    categories = _check_categories(db, department_id, _clean_labels(categories))

    user = accounts.create_user(
        db,
        name=name,
        email=email,
        password=password,
        role="admin",
        employee_code=employee_code,
        department_id=department_id,
        phone_number=phone_number,
    )
    profile = AdminProfile(user=user, expertise=_clean_labels(expertise), categories=categories)
    db.add(profile)
    db.commit()
    db.refresh(profile)
    logger.info("Admin profile %s created for %s by %s", profile.profile_id, user.email, actor.user_id)
    return profile


def update_profile(db: Session, actor: User, profile_id: int, changes: dict) -> AdminProfile:
    ensure_capability(actor, "admin_profiles.manage")
    profile = get_profile(db, actor, profile_id)

    department_id = changes.get("department_id", profile.user.department_id)
    if "categories" in changes:
        categories = _check_categories(db, department_id, _clean_labels(changes["categories"]))
    else:
        # keep what still exists in the (possibly new) department
        department = db.get(Department, department_id) if department_id is not None else None
        categories = [c for c in profile.categories if department and c in department.categories]

    account_changes = {k: changes[k] for k in ("name", "employee_code", "department_id") if k in changes}
    if account_changes:
        accounts.update_user(db, profile.user_id, account_changes)

    profile.categories = categories
    _apply_limited(profile, changes)
    if changes.get("is_active") is not None:
        profile.is_active = bool(changes["is_active"])
    db.commit()
    db.refresh(profile)
    logger.info("Admin profile %s updated by %s", profile.profile_id, actor.user_id)
    return profile


def update_own_profile(db: Session, actor: User, changes: dict) -> AdminProfile:
    profile = my_profile(db, actor)
    _apply_limited(profile, {k: v for k, v in changes.items() if k in LIMITED_FIELDS})
    db.commit()
    db.refresh(profile)
    return profile


def update_profile_limited(db: Session, actor: User, profile_id: int, changes: dict) -> AdminProfile:
    ensure_capability(actor, "admin_profiles.view")
    profile = get_profile(db, actor, profile_id)
    _ensure_same_department(actor, profile, "update")
    _apply_limited(profile, {k: v for k, v in changes.items() if k in LIMITED_FIELDS})
    db.commit()
    db.refresh(profile)
    logger.info("Admin profile %s edited by %s", profile.profile_id, actor.user_id)
    return profile


def delete_profile(db: Session, actor: User, profile_id: int) -> None:
    """Remove the admin account; the profile goes with it."""
    ensure_capability(actor, "admin_profiles.manage")
    profile = get_profile(db, actor, profile_id)
    accounts.delete_user(db, actor, profile.user_id)
