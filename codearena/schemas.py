from datetime import datetime
from typing import Any, List, Optional

from fastapi import Request
from pydantic import BaseModel, EmailStr, Field, field_validator


def _not_blank(value: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError("must not be blank")
    return value


def envelope(request: Request, data: Any = None, message: Optional[str] = None,
             *, success: bool = True, error: Optional[str] = None) -> dict:
    return {
        "success": success,
        "message": message,
        "data": data,
        "error": error,
        "timestamp": datetime.utcnow().isoformat(),
        "path": request.url.path,
    }


# ---- auth / users -----------------------------------------------------------

class VerifyRequest(BaseModel):
    id_token: str = Field(min_length=1)


class RegisterRequest(BaseModel):
    email: Optional[EmailStr] = None
    display_name: Optional[str] = Field(default=None, max_length=100)
    password: Optional[str] = Field(default=None, min_length=8, max_length=72)


class SignInRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserRead(BaseModel):
    uid: str
    email: str
    display_name: str
    is_active: bool
    roles: List[str]
    created_at: datetime


class TokenRead(BaseModel):
    token: str
    token_type: str = "bearer"
    uid: str
    email: str
    roles: List[str]


# ---- problems ---------------------------------------------------------------

class ProblemBase(BaseModel):
    title: str = Field(max_length=200)
    description: str
    difficulty: str = Field(max_length=32)
    time_limit_ms: int = Field(ge=500, le=10000)
    memory_limit_mb: int = Field(ge=16, le=2048)
    tags: List[str] = Field(default_factory=list)

    @field_validator("title", "description", "difficulty")
    @classmethod
    def strip_required(cls, v: str) -> str:
        return _not_blank(v)

    @field_validator("tags")
    @classmethod
    def unique_tags(cls, v: List[str]) -> List[str]:
        seen = []
        for tag in v:
            tag = _not_blank(tag)
            if tag not in seen:
                seen.append(tag)
        return seen


class ProblemCreate(ProblemBase):
    is_public: bool = False


class ProblemUpdate(ProblemBase):
    is_public: Optional[bool] = None  # unchanged when omitted


class ProblemRead(BaseModel):
    id: int
    title: str
    description: str
    difficulty: str
    time_limit_ms: int
    memory_limit_mb: int
    tags: List[str]
    is_public: bool
    owner_uid: Optional[str]
    created_by: Optional[str]
    created_at: datetime
    updated_at: datetime
    test_case_count: int


# ---- test cases -------------------------------------------------------------

class TestCaseCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    input_content: str
    output_content: str
    is_hidden: bool = False
    is_sample: bool = False

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return _not_blank(v)


class TestCaseBulkCreate(BaseModel):
    test_cases: List[TestCaseCreate] = Field(min_length=1, max_length=50)


class TestCaseUpdate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    input_content: Optional[str] = None  # None leaves stored content untouched
    output_content: Optional[str] = None
    is_hidden: bool
    is_sample: bool

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return _not_blank(v)


class TestCaseRead(BaseModel):
    id: int
    problem_id: int
    name: str
    description: Optional[str]
    input_file_name: str
    output_file_name: str
    file_size: int
    is_hidden: bool
    is_sample: bool
    created_by: Optional[str]
    created_at: datetime
    updated_at: datetime
    input_content: Optional[str] = None
    output_content: Optional[str] = None
