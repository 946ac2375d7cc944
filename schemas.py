from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import CurrencyCode, NoteContentType, ProjectRole, TransactionType

Id = Union[int, str]


def _currency_alias(value):
    if isinstance(value, str) and value.strip().upper() == "XOF":
        return CurrencyCode.cfa
    if isinstance(value, str):
        return value.strip().upper()
    return value


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    pin: str = Field(..., pattern=r"^\d{4}$")

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name cannot be empty")
        return value


class PinChangeIn(BaseModel):
    current_pin: str = Field(..., pattern=r"^\d{4}$")
    new_pin: str = Field(..., pattern=r"^\d{4}$")


class ProjectIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=1000)
    icon: str = Field(default="📁", max_length=16)
    color: str = Field(default="#3b82f6", max_length=9)
    currency: CurrencyCode = CurrencyCode.eur

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value):
        return _currency_alias(value)


class MemberIn(BaseModel):
    user_id: Id
    role: ProjectRole = ProjectRole.member


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    parent_id: Optional[Id] = None


class TransactionIn(BaseModel):
    project_id: Id
    category_id: Optional[Id] = None
    type: TransactionType
    amount: Decimal = Field(..., gt=0)
    currency: Optional[CurrencyCode] = None
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    created_at: Optional[datetime] = None

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value):
        return _currency_alias(value)


class NoteIn(BaseModel):
    content_type: NoteContentType
    content: str = Field(..., min_length=1)
    file_path: Optional[str] = Field(default=None, max_length=500)


class PreferencesIn(BaseModel):
    currency: Optional[CurrencyCode] = None
    eur_to_cfa: Optional[Decimal] = Field(default=None, gt=0)
    eur_to_usd: Optional[Decimal] = Field(default=None, gt=0)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value):
        return _currency_alias(value)


class RatesIn(BaseModel):
    eur_to_cfa: Optional[Decimal] = Field(default=None, gt=0)
    eur_to_usd: Optional[Decimal] = Field(default=None, gt=0)


class CurrentUser(BaseModel):
    id: Id
    name: str
    login_time: datetime


class MonthAmount(BaseModel):
    month: str
    amount: Decimal


class CategoryAmount(BaseModel):
    name: str
    amount: Decimal
    percent: float = 0.0


class CategoryNode(BaseModel):
    id: Id
    name: str
    level: int
    parent_id: Optional[Id] = None
    value: Decimal
    expense_value: Decimal
    budget_value: Decimal
    children: list[CategoryNode] = Field(default_factory=list)


class GlobalStats(BaseModel):
    currency: CurrencyCode = CurrencyCode.eur
    total_expenses: Decimal = Decimal("0")
    total_budgets: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    transaction_count: int = 0
    last_transaction_date: Optional[datetime] = None
    project_count: int = 0
    expenses_by_month: list[MonthAmount] = Field(default_factory=list)
    budgets_by_month: list[MonthAmount] = Field(default_factory=list)


class TransactionView(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Id
    project_id: Id
    user_id: Id
    category_id: Optional[Id] = None
    type: TransactionType
    amount_cents: int
    amount: Decimal
    title: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    project_name: Optional[str] = None
    project_icon: Optional[str] = None
    project_color: Optional[str] = None
    project_currency: Optional[CurrencyCode] = None
    user_name: Optional[str] = None
    category_name: Optional[str] = None
    parent_category_name: Optional[str] = None
    has_text: bool = False
    has_document: bool = False
    has_image: bool = False
    has_audio: bool = False


class ProjectStats(BaseModel):
    project_id: Id
    currency: CurrencyCode = CurrencyCode.eur
    total_expenses: Decimal = Decimal("0")
    total_budgets: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    expenses_by_category: list[CategoryAmount] = Field(default_factory=list)
    budgets_by_category: list[CategoryAmount] = Field(default_factory=list)
    transactions: list[TransactionView] = Field(default_factory=list)


class Unauthorized(BaseModel):
    """Returned instead of data when the caller may not read a project."""

    project_id: Id
    reason: str = "Not a member of this project"


class DeletionSummary(BaseModel):
    user_id: Id
    admin_id: Id
    projects_reassigned: int
    transactions_reassigned: int
    memberships_removed: int
