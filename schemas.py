from datetime import datetime
from typing import Optional, List, Any, Mapping

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from errors import ValidationError


class CamelModel(BaseModel):
    """Models exchanged with clients use camelCase keys on the wire"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==========================================================
# Submission
# ==========================================================
class ComplaintMetadata(CamelModel):
    """Personal data and category of a submission.

    Every field is optional. A missing, empty or whitespace-only value is
    normalized to None and stored as NULL; anything else is stored stripped.
    """

    full_name: Optional[str] = Field(None, max_length=255)
    age: Optional[int] = Field(None, ge=0, le=150)
    voter_number: Optional[str] = Field(None, max_length=100)
    gender: Optional[str] = Field(None, max_length=50)
    category: Optional[str] = Field(None, max_length=255)

    @field_validator('*', mode='before')
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "ComplaintMetadata":
        """Build metadata from multipart form values, ignoring file parts"""

        def text(name: str) -> Optional[str]:
            value = form.get(name)
            return value if isinstance(value, str) else None

        category = text("categories")
        if category is None or not category.strip():
            category = text("category")

        try:
            return cls(
                full_name=text("fullName"),
                age=text("age"),
                voter_number=text("voterNumber"),
                gender=text("gender"),
                category=category,
            )
        except PydanticValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ValidationError(f"Invalid complaint data - {details}")


# ==========================================================
# Complaint records
# ==========================================================
class MediaResponse(CamelModel):
    id: int
    file_path: str
    file_type: Optional[str]


class ComplaintResponse(CamelModel):
    id: int
    user_id: int
    category: Optional[str]
    created_at: datetime
    full_name: Optional[str]
    age: Optional[int]
    voter_number: Optional[str]
    gender: Optional[str]
    media: List[MediaResponse] = []


class PaginationResponse(CamelModel):
    total: int
    total_pages: int
    current_page: int
    limit: int
    has_next_page: bool
    has_prev_page: bool


class ComplaintPage(BaseModel):
    items: List[ComplaintResponse]
    pagination: PaginationResponse


# ==========================================================
# API envelopes
# ==========================================================
class MessageResponse(CamelModel):
    success: bool = True
    message: str


class ComplaintCreatedResponse(MessageResponse):
    complaint_id: int


class ComplaintDetailResponse(CamelModel):
    success: bool = True
    data: ComplaintResponse


class ComplaintListResponse(CamelModel):
    success: bool = True
    data: List[ComplaintResponse]
    pagination: PaginationResponse


# ==========================================================
# Accounts
# ==========================================================
class RegisterRequest(CamelModel):
    full_name: str = Field(..., min_length=1, max_length=255, description="Full name of the user")
    age: int = Field(..., ge=0, le=150)
    gender: str = Field(..., min_length=1, max_length=50)
    email: EmailStr = Field(..., description="Valid email address")
    # bcrypt only looks at the first 72 bytes
    password: str = Field(..., min_length=1, max_length=72)


class LoginRequest(CamelModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class AccountResponse(CamelModel):
    id: int
    full_name: str
    email: str
    gender: str
    age: int


class LoginResponse(MessageResponse):
    user: AccountResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int
