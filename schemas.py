"""Pydantic request schemas validated at the HTTP boundary."""
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, ValidationError as PydanticValidationError

from errors import ValidationError
from models import PROJECT_ACTIVE, PROJECT_ARCHIVED
from utils.email_utils import is_valid_email


class Credentials(BaseModel):
    username: str = Field(..., min_length=3, max_length=64)
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator('username')
    @classmethod
    def strip_username(cls, v: str) -> str:
        return v.strip()


class TeacherIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: str = Field(..., max_length=100)
    department_id: Optional[int] = None
    phone: Optional[str] = Field(None, max_length=20)

    @field_validator('name')
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('name must not be blank')
        return v

    @field_validator('email')
    @classmethod
    def check_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not is_valid_email(v):
            raise ValueError('invalid email address')
        return v


class ProjectIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    code: str = Field(..., min_length=1, max_length=50, pattern=r'^[A-Za-z0-9_-]+$')
    email_subject_template: str = Field(..., min_length=1, max_length=255)
    email_body_template: str = Field(..., min_length=1)
    teacher_ids: List[int] = []


class ProjectStatusIn(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def check_status(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in (PROJECT_ACTIVE, PROJECT_ARCHIVED):
            raise ValueError(f'status must be one of {(PROJECT_ACTIVE, PROJECT_ARCHIVED)}')
        return v


class MembersIn(BaseModel):
    teacher_ids: List[int] = Field(..., min_length=1)


class RemindIn(BaseModel):
    target_ids: Optional[List[int]] = None


class EmailConfigIn(BaseModel):
    email_address: str = ''
    smtp_host: str = ''
    smtp_port: Optional[int] = Field(None, ge=1, le=65535)
    smtp_username: str = ''
    smtp_password: Optional[str] = None
    imap_host: str = ''
    imap_port: Optional[int] = Field(None, ge=1, le=65535)
    imap_username: str = ''
    imap_password: Optional[str] = None

    @field_validator('email_address')
    @classmethod
    def check_address(cls, v: str) -> str:
        v = v.strip()
        if v and not is_valid_email(v):
            raise ValueError('invalid email address')
        return v


def parse(schema, data):
    """Validate `data` against `schema`, raising the service ValidationError"""
    try:
        return schema.model_validate(data or {})
    except PydanticValidationError as e:
        problems = '; '.join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(problems) from e
