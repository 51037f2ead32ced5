import datetime as dt
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from models import AccountType, TransactionType


class UserRegisterIn(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    birth_date: Optional[date] = None


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdateIn(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    birth_date: Optional[date] = None


class PasswordChangeIn(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)
    confirm_new_password: str

    @field_validator("new_password")
    @classmethod
    def _strong_password(cls, value: str) -> str:
        checks = [
            any(c.islower() for c in value),
            any(c.isupper() for c in value),
            any(c.isdigit() for c in value),
            any(not c.isalnum() for c in value),
        ]
        if not all(checks):
            raise ValueError(
                "Password must contain upper and lower case letters, a digit "
                "and a special character"
            )
        return value


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Category name is required")
        return value


class CategoryRenameIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class AttachmentIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str = Field(..., min_length=1, max_length=500)
    content_type: Literal["image/jpeg", "image/png", "image/jpg"]


class TransactionIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category_id: int
    account_type: AccountType
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    attachments: list[AttachmentIn] = Field(default_factory=list)


class TransactionUpdateIn(BaseModel):
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    category_id: Optional[int] = None
    account_type: Optional[AccountType] = None
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    attachments: Optional[list[AttachmentIn]] = None


class ContributionIn(BaseModel):
    amount_cents: int = Field(..., ge=0)
    date: Optional[dt.date] = None
    note: Optional[str] = Field(default=None, max_length=500)


class GoalIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    target_amount_cents: int = Field(..., gt=0)
    deadline: date
    contributions: list[ContributionIn] = Field(default_factory=list)


class GoalUpdateIn(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    target_amount_cents: Optional[int] = Field(default=None, gt=0)
    deadline: Optional[date] = None
    # None keeps the stored contributions, a list replaces them wholesale.
    contributions: Optional[list[ContributionIn]] = None
