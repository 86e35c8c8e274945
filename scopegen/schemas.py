from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

Package = Literal["GOOD", "BETTER", "BEST"]


class ApiModel(BaseModel):
    """Request/response bodies use camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- mobile jobs ---


class MobileJobIn(ApiModel):
    job_type: Union[int, str]
    customer: Optional[str] = None
    address: Optional[str] = None


class MobileJobPatch(ApiModel):
    client_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    address: Optional[str] = Field(default=None, min_length=5, max_length=500)
    job_notes: Optional[str] = None
    job_size: Optional[int] = Field(default=None, ge=1, le=3)


class MobileJobOut(ApiModel):
    id: int
    client_name: str
    address: str
    trade_id: str
    trade_name: Optional[str] = None
    job_type_id: str
    job_type_name: str
    job_size: int
    job_notes: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: datetime


class PresignIn(ApiModel):
    content_type: str
    filename: Optional[str] = None


class PhotoIn(ApiModel):
    url: str = Field(min_length=1)
    kind: Optional[str] = None


class PhotoOut(ApiModel):
    id: int
    kind: str
    public_url: str
    findings_status: str
    findings_error: Optional[str] = None
    findings_attempts: int
    analyzed_at: Optional[datetime] = None
    created_at: datetime
    findings: Optional[Dict[str, Any]] = None


class SelectedIssue(ApiModel):
    id: str
    label: str
    category: Optional[str] = None


class DraftIn(ApiModel):
    selected_issues: Optional[List[SelectedIssue]] = None
    problem_statement: Optional[str] = None


class SubmitIn(ApiModel):
    package: Optional[Package] = None


class ScopeEditIn(ApiModel):
    action: Literal["add", "remove", "edit"]
    item_code: Optional[str] = Field(default=None, min_length=1, max_length=200)
    before: Optional[Any] = None
    after: Optional[Any] = None


# --- proposals ---


class ProposalIn(ApiModel):
    client_name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    template_id: Optional[int] = None
    trade_id: Optional[str] = None
    job_type_id: Optional[str] = None
    job_type_name: Optional[str] = None
    job_size: int = Field(default=2, ge=1, le=3)
    scope: Optional[List[str]] = None
    price_low: Optional[int] = Field(default=None, ge=0)
    price_high: Optional[int] = Field(default=None, ge=0)
    estimated_days_low: Optional[int] = None
    estimated_days_high: Optional[int] = None
    line_items: Optional[List[Dict[str, Any]]] = None
    options: Optional[Dict[str, Any]] = None


class ProposalPatch(ApiModel):
    client_name: Optional[str] = Field(default=None, min_length=1)
    address: Optional[str] = Field(default=None, min_length=1)
    job_size: Optional[int] = Field(default=None, ge=1, le=3)
    scope: Optional[List[str]] = None
    price_low: Optional[int] = Field(default=None, ge=0)
    price_high: Optional[int] = Field(default=None, ge=0)
    estimated_days_low: Optional[int] = None
    estimated_days_high: Optional[int] = None
    line_items: Optional[List[Dict[str, Any]]] = None
    options: Optional[Dict[str, Any]] = None
    status: Optional[Literal["draft", "sent", "accepted", "won", "lost"]] = None


class ProposalOut(ApiModel):
    id: int
    client_name: str
    address: str
    trade_id: str
    job_type_id: str
    job_type_name: str
    job_size: int
    scope: List[str]
    options: Dict[str, Any]
    line_items: Optional[List[Dict[str, Any]]] = None
    price_low: int
    price_high: int
    estimated_days_low: Optional[int] = None
    estimated_days_high: Optional[int] = None
    status: str
    is_unlocked: bool
    public_token: Optional[str] = None
    accepted_at: Optional[datetime] = None
    accepted_by_name: Optional[str] = None
    contractor_signed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PublicProposalOut(ApiModel):
    id: int
    client_name: str
    address: str
    job_type_name: str
    scope: List[str]
    line_items: Optional[List[Dict[str, Any]]] = None
    price_low: int
    price_high: int
    estimated_days_low: Optional[int] = None
    estimated_days_high: Optional[int] = None
    status: str
    accepted_at: Optional[datetime] = None
    accepted_by_name: Optional[str] = None
    company_name: Optional[str] = None
    company_phone: Optional[str] = None
    license_number: Optional[str] = None


class AcceptIn(ApiModel):
    name: str = Field(min_length=1)
    email: EmailStr
    signature: str = Field(min_length=1)


class CountersignIn(ApiModel):
    signature: str = Field(min_length=2)


class TemplateOut(ApiModel):
    id: int
    trade_id: str
    trade_name: str
    job_type_id: str
    job_type_name: str
    base_scope: List[str]
    base_price_low: int
    base_price_high: int
    estimated_days_low: Optional[int] = None
    estimated_days_high: Optional[int] = None
    warranty: Optional[str] = None
    exclusions: Optional[List[str]] = None


# --- billing / profile ---


class CheckoutIn(ApiModel):
    product_type: Literal["single", "pack", "pro", "crew"]


class AdminCreditsIn(ApiModel):
    user_id: str
    amount: int = Field(gt=0, le=1000)
    reason: Optional[str] = None


class LedgerEntryOut(ApiModel):
    id: int
    change_amount: int
    balance_after: int
    source: str
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


class CompanyPatch(ApiModel):
    company_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    company_address: Optional[str] = Field(default=None, min_length=1, max_length=500)
    company_phone: Optional[str] = Field(default=None, max_length=50)
    license_number: Optional[str] = Field(default=None, max_length=100)
    price_multiplier: Optional[int] = Field(default=None, ge=50, le=200)
    trade_multipliers: Optional[Dict[str, int]] = None


class UserOut(ApiModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: Optional[str] = None
    company_address: Optional[str] = None
    company_phone: Optional[str] = None
    license_number: Optional[str] = None
    price_multiplier: int
    trade_multipliers: Dict[str, int]
    proposal_credits: int
    credits_expire_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    subscription_plan: Optional[str] = None
