from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class AuthRequest(BaseModel):
    email: Optional[str] = None


class AuthResponse(BaseModel):
    account_id: str
    logged_in: bool
    pool: str
    balance: int
    welcome_granted: bool


class BalanceResponse(BaseModel):
    pool: str
    balance: int


class LedgerPreview(BaseModel):
    required_credits: int
    balance: int
    affordable: bool


class ChargeRequest(BaseModel):
    amount: int = Field(gt=0)
    description: str = "Credit top-up"


class HistoryEntryResponse(BaseModel):
    date: datetime
    type: str
    description: str
    amount: int
    balance_after: int
    job_id: Optional[str] = None
    reserved_id: Optional[str] = None


class EligibilityResponse(BaseModel):
    eligible: bool
    reason: Optional[str] = None


class JobCreateResponse(BaseModel):
    id: str
    status: str
    message: str


class JobDetailResponse(BaseModel):
    id: str
    status: str
    progress: float
    message: str
    original_lang: str
    target_languages: List[str]
    required_credits: int
    is_free_trial: bool
    error: Optional[str] = None
    reason: Optional[str] = None
    refunded_amount: int = 0
    failed_languages: List[str] = Field(default_factory=list)
    artifact_ids: List[str] = Field(default_factory=list)


class ArtifactResponse(BaseModel):
    id: str
    job_id: str
    title: str
    language_code: str
    is_original: bool
    expires_at: Optional[datetime] = None
    downloadable: bool
    is_free_trial: bool
    download_url: Optional[str] = None


class StorageQuotaResponse(BaseModel):
    capacity_gb: int
    period_days: int
    used_gb: float
    extension: Optional[str] = None


class ExtensionRequest(BaseModel):
    type: Literal["plus", "pro"]


class ExtensionResponse(BaseModel):
    type: str
    expires_at: datetime


class SweepResponse(BaseModel):
    evicted: int
