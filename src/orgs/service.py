"""Org and membership application services."""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.storage.models import Org, OrgMember, User
from src.storage.security import hash_password, verify_password


ORG_ROLES = ("owner", "operator", "viewer")


def create_org_with_owner(
    session: Session,
    *,
    name: str,
    slug: str,
    owner_email: str,
    owner_password: str,
) -> tuple[Org, User]:
    existing_org = session.scalar(select(Org).where((Org.name == name) | (Org.slug == slug)))
    if existing_org is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Org name or slug already exists",
        )

    user = session.scalar(select(User).where(User.email == owner_email))
    if user is None:
        user = User(email=owner_email, password_hash=hash_password(owner_password))
        session.add(user)
        session.flush()
    elif not verify_password(owner_password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Owner email already exists with different credentials",
        )

    org = Org(name=name, slug=slug)
    session.add(org)
    session.flush()
    session.add(OrgMember(org_id=org.id, user_id=user.id, role="owner"))

    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Org name or slug already exists",
        ) from exc

    return org, user


def add_org_member(session: Session, *, org_id: str, user_id: str, role: str) -> OrgMember:
    if role not in ORG_ROLES:
        raise ValueError(f"Unknown org role: {role}")
    membership = OrgMember(org_id=org_id, user_id=user_id, role=role)
    session.add(membership)
    session.commit()
    return membership


def get_member_role(session: Session, *, org_id: str, user_id: str) -> Optional[str]:
    return session.scalar(
        select(OrgMember.role).where(OrgMember.org_id == org_id, OrgMember.user_id == user_id)
    )


def has_org_access(
    session: Session,
    *,
    org_id: str,
    user_id: str,
    required_role: Optional[str] = None,
) -> bool:
    """Membership check; a required role is satisfied by that role or by owner."""

    role = get_member_role(session, org_id=org_id, user_id=user_id)
    if role is None:
        return False
    if required_role is None:
        return True
    return role == required_role or role == "owner"


def authenticate_org_member(
    session: Session,
    *,
    email: str,
    password: str,
    org_id: str,
) -> tuple[User, str]:
    user = session.scalar(select(User).where(User.email == email, User.is_active.is_(True)))
    if user is None or not verify_password(password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    role = get_member_role(session, org_id=org_id, user_id=user.id)
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not a member of this org",
        )
    return user, role


def get_org_for_member(session: Session, *, org_id: str, user_id: str) -> tuple[Org, str]:
    org = session.get(Org, org_id)
    if org is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Org not found")

    role = get_member_role(session, org_id=org_id, user_id=user_id)
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to access this org",
        )
    return org, role
