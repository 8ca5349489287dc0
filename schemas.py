"""
Database Schemas for Devlink

Each document model corresponds to a MongoDB collection whose name is the
lowercase class name (e.g. EscrowTransaction -> "escrowtransaction").
The Literal value sets below are the single definition of every enum; request
payloads and documents both use them.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional, Literal

from bson import ObjectId
from pydantic import AnyHttpUrl, BaseModel, EmailStr, Field, StringConstraints, field_validator, model_validator

Role = Literal["developer", "employer", "admin"]
SignupRole = Literal["developer", "employer"]
UserStatus = Literal["active", "suspended", "pending"]
Availability = Literal["full-time", "part-time", "contract"]
RateType = Literal["hourly", "monthly", "project"]
ExperienceLevel = Literal["junior", "mid", "senior"]
JobType = Literal["remote", "onsite", "contract"]
JobStatus = Literal["open", "closed", "paused"]
ApplicationStatus = Literal["submitted", "shortlisted", "rejected", "accepted"]
ContractStatus = Literal["draft", "active", "completed", "cancelled", "disputed"]
MilestoneStatus = Literal["pending", "submitted", "released", "delivered"]
PaymentMethod = Literal["bank_transfer", "mobile_money", "other"]
EscrowType = Literal["fund", "release", "refund", "commission"]
EscrowStatus = Literal["pending", "completed", "failed"]
ShowcaseCategory = Literal[
    "fintech", "agritech", "medtech", "biotech", "ecommerce", "climatetech", "engineering",
    "edtech", "proptech", "logistics", "ai", "web", "mobile", "other",
]
LookingFor = Literal["employers", "investors", "both"]
ShowcaseStatus = Literal["active", "draft"]

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    out = []
    for v in values:
        v = v.strip()
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return out


# ----------------------- Documents -----------------------

class User(BaseModel):
    email: EmailStr = Field(..., description="Lowercased email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role
    full_name: Optional[str] = None
    status: UserStatus = "active"

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class Developer(BaseModel):
    user_id: str
    bio: Optional[str] = None
    skills: List[str] = Field(default_factory=list)
    years_experience: int = Field(0, ge=0)
    portfolio_links: List[str] = Field(default_factory=list)
    github_url: Optional[str] = None
    resume_url: Optional[str] = None
    avatar_url: Optional[str] = None
    availability: Availability = "contract"
    rate_type: RateType = "hourly"
    rate_amount: float = Field(0, ge=0)
    rating_avg: float = Field(0, ge=0)
    location: Optional[str] = None


class Employer(BaseModel):
    user_id: str
    company_name: str
    website: Optional[str] = None
    about: Optional[str] = None
    location: Optional[str] = None
    avatar_url: Optional[str] = None


class Job(BaseModel):
    employer_id: str
    title: str
    description: str
    required_skills: List[str] = Field(default_factory=list)
    experience_level: ExperienceLevel = "mid"
    budget_min: Optional[float] = None
    budget_max: Optional[float] = None
    rate_type: RateType = "project"
    job_type: JobType = "remote"
    location: Optional[str] = None
    status: JobStatus = "open"


class Application(BaseModel):
    job_id: str
    developer_id: str
    cover_letter: Optional[str] = None
    status: ApplicationStatus = "submitted"


class Conversation(BaseModel):
    participant_a: str
    participant_b: str
    pair_key: str


class Message(BaseModel):
    conversation_id: str
    sender_id: str
    recipient_id: str
    body: NonEmptyStr


class Milestone(BaseModel):
    id: str = Field(default_factory=lambda: str(ObjectId()))
    title: str
    amount: float = Field(..., gt=0)
    due_date: Optional[datetime] = None
    status: MilestoneStatus = "pending"
    submission_link: Optional[str] = None
    submission_note: Optional[str] = None
    final_link: Optional[str] = None
    final_file_url: Optional[str] = None


class PaymentDetails(BaseModel):
    method: PaymentMethod
    account_name: str = ""
    details: str
    updated_at: Optional[datetime] = None


class Contract(BaseModel):
    job_id: Optional[str] = None
    employer_id: str
    developer_id: str
    status: ContractStatus = "active"
    total_amount: float = 0
    developer_payment_details: Optional[PaymentDetails] = None
    milestones: List[Milestone] = Field(default_factory=list)


class EscrowTransaction(BaseModel):
    contract_id: str
    milestone_id: Optional[str] = None
    type: EscrowType
    amount: float
    status: EscrowStatus = "pending"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Review(BaseModel):
    contract_id: str
    reviewer_id: str
    reviewee_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class Showcase(BaseModel):
    developer_id: str
    title: str
    tagline: str
    description: str
    tech_stack: List[str] = Field(default_factory=list)
    project_url: Optional[str] = None
    repo_url: Optional[str] = None
    image_url: Optional[str] = None
    category: ShowcaseCategory = "web"
    looking_for: LookingFor = "both"
    status: ShowcaseStatus = "active"
    liked_by: List[str] = Field(default_factory=list, description="User ids, one like each")


class AuditLog(BaseModel):
    actor_id: Optional[str] = None
    action: str
    entity: str
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EmailVerification(BaseModel):
    email: EmailStr
    otp: str
    expires_at: datetime
    verified: bool = False


class RefreshToken(BaseModel):
    user_id: str
    token: str
    expires_at: datetime


class AdminConfig(BaseModel):
    key: str
    value: str


# ----------------------- Requests -----------------------

class SendOtpPayload(BaseModel):
    email: EmailStr


class VerifyOtpPayload(BaseModel):
    email: EmailStr
    otp: NonEmptyStr


class RegisterPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    role: SignupRole
    full_name: Optional[str] = Field(None, min_length=2)


class LoginPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshPayload(BaseModel):
    refresh_token: NonEmptyStr


class LogoutPayload(BaseModel):
    refresh_token: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user_id: str
    role: Role


class DeveloperUpdate(BaseModel):
    # Fields typed without Optional default to None when omitted but reject an explicit null.
    bio: Optional[str] = None
    skills: List[str] = None
    years_experience: int = Field(None, ge=0)
    portfolio_links: List[AnyHttpUrl] = None
    github_url: Optional[AnyHttpUrl] = None
    availability: Availability = None
    rate_type: RateType = None
    rate_amount: float = Field(None, ge=0)
    location: Optional[str] = None

    @field_validator("skills")
    @classmethod
    def _unique_skills(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _dedupe(v) if v is not None else v


class EmployerUpdate(BaseModel):
    company_name: str = Field(None, min_length=1)
    website: Optional[AnyHttpUrl] = None
    about: Optional[str] = None
    location: Optional[str] = None


class JobUpdate(BaseModel):
    title: str = Field(None, min_length=3)
    description: str = Field(None, min_length=10)
    required_skills: List[str] = None
    experience_level: ExperienceLevel = None
    budget_min: Optional[float] = Field(None, ge=0)
    budget_max: Optional[float] = Field(None, ge=0)
    rate_type: RateType = None
    job_type: JobType = None
    location: Optional[str] = None

    @field_validator("required_skills")
    @classmethod
    def _unique_skills(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _dedupe(v) if v is not None else v

    @model_validator(mode="after")
    def _budget_order(self):
        if self.budget_min is not None and self.budget_max is not None and self.budget_min > self.budget_max:
            raise ValueError("budget_min must not exceed budget_max")
        return self


class JobCreate(JobUpdate):
    title: str = Field(..., min_length=3)
    description: str = Field(..., min_length=10)


class JobStatusPayload(BaseModel):
    status: JobStatus


class ApplicationCreate(BaseModel):
    cover_letter: Optional[str] = None


class ApplicationStatusPayload(BaseModel):
    status: Literal["shortlisted", "rejected", "accepted"]


class MilestoneInput(BaseModel):
    title: NonEmptyStr
    amount: float = Field(..., gt=0)
    due_date: Optional[datetime] = None


class MilestoneEdit(BaseModel):
    title: NonEmptyStr = None
    amount: float = Field(None, gt=0)
    due_date: Optional[datetime] = None


class MilestoneSubmit(BaseModel):
    submission_link: NonEmptyStr
    submission_note: Optional[str] = None


class ContractCreate(BaseModel):
    developer_id: NonEmptyStr
    job_id: Optional[NonEmptyStr] = None
    milestones: List[MilestoneInput] = Field(default_factory=list)


class PaymentDetailsPayload(BaseModel):
    method: PaymentMethod
    account_name: Optional[str] = None
    details: NonEmptyStr


class TerminatePayload(BaseModel):
    reason: Optional[str] = None


class EscrowAmountPayload(BaseModel):
    amount: float = Field(..., gt=0)


class MessageCreate(BaseModel):
    recipient_id: NonEmptyStr
    body: NonEmptyStr


class ReplyCreate(BaseModel):
    body: NonEmptyStr


class ReviewCreate(BaseModel):
    contract_id: NonEmptyStr
    reviewee_id: NonEmptyStr
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class UserStatusPayload(BaseModel):
    status: UserStatus


class ConfigEntry(BaseModel):
    key: NonEmptyStr
    value: Any


class DisputeResolution(BaseModel):
    resolution: Literal["release", "refund"]


class CreateAdminPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    full_name: Optional[str] = Field(None, min_length=2)


class ShowcaseUpdate(BaseModel):
    title: str = Field(None, min_length=3, max_length=100)
    tagline: str = Field(None, min_length=10, max_length=200)
    description: str = Field(None, min_length=20, max_length=2000)
    tech_stack: List[NonEmptyStr] = Field(None, min_length=1, max_length=20)
    project_url: Optional[AnyHttpUrl] = None
    repo_url: Optional[AnyHttpUrl] = None
    category: ShowcaseCategory = None
    looking_for: LookingFor = None
    status: ShowcaseStatus = None

    @field_validator("project_url", "repo_url", mode="before")
    @classmethod
    def _blank_url(cls, v: Any) -> Any:
        return None if v == "" else v

    @field_validator("tech_stack")
    @classmethod
    def _unique_tech(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _dedupe(v) if v is not None else v


class ShowcaseCreate(ShowcaseUpdate):
    title: str = Field(..., min_length=3, max_length=100)
    tagline: str = Field(..., min_length=10, max_length=200)
    description: str = Field(..., min_length=20, max_length=2000)
    tech_stack: List[NonEmptyStr] = Field(..., min_length=1, max_length=20)
    category: ShowcaseCategory = "web"
    looking_for: LookingFor = "both"
    status: ShowcaseStatus = "active"
