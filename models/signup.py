"""
Request schemas for the signup endpoints and the row model written to Sheets
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

EMAIL_MAX_LENGTH = 254
BULK_MAX_SIGNUPS = 100

EMAIL_REGEX = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

SHEET_HEADERS = ["Email", "Timestamp", "Source", "Name", "Tags", "Metadata", "Sheet Tab"]

M = TypeVar("M", bound=BaseModel)


class SignupPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str
    sheet_tab: Optional[str] = Field(default=None, alias="sheetTab")
    metadata: Optional[Dict[str, Any]] = None
    turnstile_token: Optional[str] = Field(default=None, alias="turnstileToken")

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("Email is required")
        if len(v) > EMAIL_MAX_LENGTH:
            raise ValueError(f"Email address is too long (max {EMAIL_MAX_LENGTH} characters)")
        if not EMAIL_REGEX.match(v):
            raise ValueError("Invalid email format")
        return v

    @field_validator("sheet_tab")
    @classmethod
    def require_tab_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v:
            raise ValueError("Sheet tab name is required")
        return v


class ExtendedSignupPayload(SignupPayload):
    name: Optional[str] = None
    source: str = "api"
    tags: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def require_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v:
            raise ValueError("Name is required")
        return v


class BulkSignupPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    signups: List[SignupPayload]

    @field_validator("signups")
    @classmethod
    def check_batch_size(cls, v: List[SignupPayload]) -> List[SignupPayload]:
        if len(v) < 1:
            raise ValueError("At least one signup is required")
        if len(v) > BULK_MAX_SIGNUPS:
            raise ValueError(f"Cannot submit more than {BULK_MAX_SIGNUPS} signups at once")
        return v


@dataclass
class SignupRecord:
    """One accepted signup, in the shape it is stored as a spreadsheet row."""
    email: str
    timestamp: str
    sheet_tab: str
    name: Optional[str] = None
    source: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Optional[str] = None

    def to_row(self) -> List[str]:
        return [
            self.email.lower(),
            self.timestamp,
            self.source or "api",
            self.name or "",
            ", ".join(self.tags) if self.tags else "",
            self.metadata or "",
            self.sheet_tab,
        ]


def format_validation_errors(errors: List[Dict[str, Any]]) -> List[str]:
    """
    Turn pydantic error dicts into "field.path: message" strings.

    The leading "body" location that FastAPI adds is dropped so framework and
    pipeline errors read the same.
    """
    details: List[str] = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ())]
        if loc and loc[0] == "body":
            loc = loc[1:]
        path = ".".join(loc) or "body"
        msg = err.get("msg", "Invalid value")
        if err.get("type") == "value_error":
            ctx_error = (err.get("ctx") or {}).get("error")
            if ctx_error is not None:
                msg = str(ctx_error)
        details.append(f"{path}: {msg}")
    return details


def validate_payload(model: Type[M], data: Any) -> Tuple[Optional[M], List[str]]:
    """
    Validate arbitrary input against a payload model.
    Returns (value, []) on success or (None, details) on failure; never raises.
    """
    if isinstance(data, model):
        return data, []
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, exclude_unset=True)
    try:
        return model.model_validate(data), []
    except ValidationError as ex:
        return None, format_validation_errors(ex.errors())
