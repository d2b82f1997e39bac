from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import UserRole
from periods import is_valid_year_month


def _check_year_month(value: Optional[str]) -> Optional[str]:
    if value is not None and not is_valid_year_month(value):
        raise ValueError("Invalid yearMonth; use YYYY-MM")
    return value


class CategoryAmountIn(BaseModel):
    category_id: str = Field(..., alias="categoryId", min_length=1)
    name: str
    amount: Decimal = Field(..., ge=0)

    model_config = ConfigDict(populate_by_name=True)


class ReferenceDataIn(BaseModel):
    income_total: Decimal = Field(Decimal("0"), alias="incomeTotal", ge=0)
    cos_total: Optional[Decimal] = Field(None, alias="cosTotal", ge=0)
    cos_by_category: list[CategoryAmountIn] = Field(
        default_factory=list, alias="cosByCategory"
    )

    model_config = ConfigDict(populate_by_name=True)


class BudgetPatchIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    year_month: Optional[str] = Field(None, alias="yearMonth")
    budget_rate: Optional[Decimal] = Field(None, alias="budgetRate", ge=0, le=1)
    reference_period_months: Optional[int] = Field(
        None, alias="referencePeriodMonths", ge=1, le=24
    )
    reference_data: Optional[ReferenceDataIn] = Field(None, alias="referenceData")

    @field_validator("year_month")
    @classmethod
    def check_year_month(cls, value: Optional[str]) -> Optional[str]:
        return _check_year_month(value)


class BudgetBulkPatchIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    from_year_month: str = Field(..., alias="fromYearMonth")
    to_year_month: str = Field(..., alias="toYearMonth")
    budget_rate: Optional[Decimal] = Field(None, alias="budgetRate", ge=0, le=1)
    reference_period_months: Optional[int] = Field(
        None, alias="referencePeriodMonths", ge=1, le=24
    )

    @field_validator("from_year_month", "to_year_month")
    @classmethod
    def check_year_months(cls, value: str) -> str:
        return _check_year_month(value)


class BudgetSettingsIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    budget_rate: Optional[Decimal] = Field(None, alias="budgetRate", ge=0, le=1)
    reference_period_months: Optional[int] = Field(
        None, alias="referencePeriodMonths", ge=1, le=24
    )


class TokenRefreshIn(BaseModel):
    realm_id: Optional[int] = Field(None, alias="realmId")
    location_id: Optional[int] = Field(None, alias="locationId")

    model_config = ConfigDict(populate_by_name=True)


class LocationIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=120)
    class_id: Optional[str] = Field(None, max_length=64)


class UserIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=72)
    name: Optional[str] = Field(None, max_length=120)
    role: UserRole = UserRole.manager
    location_id: Optional[int] = None


class RegisterIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=72)
    name: Optional[str] = Field(None, max_length=120)


class OnboardingIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    role: UserRole
    location_id: Optional[int] = Field(None, alias="locationId")

    model_config = ConfigDict(populate_by_name=True)


class OnboardingApproveIn(BaseModel):
    user_id: int = Field(..., alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class PnlQuery(BaseModel):
    location_id: int
    start_date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    end_date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    accounting_method: Literal["Accrual", "Cash"] = "Accrual"
