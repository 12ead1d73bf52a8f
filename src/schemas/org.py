"""Pydantic schemas for org management API."""

from __future__ import annotations

from pydantic import BaseModel, EmailStr, Field


class OrgCreateRequest(BaseModel):
    name: str = Field(min_length=3, max_length=120)
    slug: str = Field(min_length=2, max_length=80, pattern=r"^[a-z0-9][a-z0-9-]*$")
    owner_email: EmailStr
    owner_password: str = Field(min_length=8, max_length=255)


class OrgCreateResponse(BaseModel):
    org_id: str
    name: str
    slug: str
    owner_user_id: str
    owner_role: str = "owner"


class OrgResponse(BaseModel):
    id: str
    name: str
    slug: str
    created_at: str
    my_role: str
