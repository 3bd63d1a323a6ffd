"""
Pydantic schemas for request/response validation.

This module contains:
- BusinessInfo: the onboarding payload submitted for provisioning
- Request models for the provisioning, resubmit and send endpoints
- Response models for API responses
"""

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from tollfree_sms.errors import ValidationError
from tollfree_sms.utils import E164_PATTERN

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# =============================================================================
# Onboarding payload
# =============================================================================

class Address(BaseModel):
    """Business mailing address submitted with the verification campaign."""
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    line1: str = Field(..., min_length=1, alias="street", description="Street line 1")
    line2: Optional[str] = Field(None, description="Street line 2")
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class BusinessInfo(BaseModel):
    """
    Onboarding payload for toll-free provisioning.

    Validates:
    - legal_name, contact_email, opt_in_evidence_url: required
    - estimated_monthly_volume: positive integer
    - address: line1, city, state, postal_code, country required
    - exactly one of ein / sole_prop; EIN has 9 digits once non-digits are stripped
    - contact_phone: optional, E.164
    - every URL field that is provided must be a valid http(s) URL
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    legal_name: str = Field(..., min_length=1, description="Registered legal name")
    brand_name: Optional[str] = Field(None, description="Name shown to recipients")
    website: Optional[HttpUrl] = None
    contact_name: Optional[str] = None
    contact_email: str = Field(..., description="Compliance contact email")
    contact_phone: Optional[str] = Field(None, description="Contact phone in E.164 format")
    address: Address
    ein: Optional[str] = Field(None, description="Employer Identification Number")
    sole_prop: bool = Field(False, description="Sole proprietor without an EIN")
    estimated_monthly_volume: int = Field(..., gt=0, description="Expected messages per month")
    opt_in_method: Optional[str] = Field(None, description="How recipients opt in")
    opt_in_evidence_url: HttpUrl = Field(..., description="Public proof of the opt-in flow")
    terms_url: Optional[HttpUrl] = None
    privacy_url: Optional[HttpUrl] = None

    @field_validator(
        "brand_name", "website", "contact_name", "contact_phone", "ein",
        "opt_in_method", "terms_url", "privacy_url",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("contact_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if not EMAIL_PATTERN.match(v):
            raise ValueError("contact_email must be a valid email address")
        return v

    @field_validator("contact_phone")
    @classmethod
    def validate_contact_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not E164_PATTERN.match(v):
            raise ValueError("contact_phone must be in E.164 format (e.g. +14155550123)")
        return v

    @field_validator("ein")
    @classmethod
    def normalize_ein(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        digits = re.sub(r"\D", "", v)
        if len(digits) != 9:
            raise ValueError("ein must contain exactly 9 digits")
        return digits

    @model_validator(mode="after")
    def exactly_one_tax_identity(self) -> "BusinessInfo":
        if self.ein and self.sole_prop:
            raise ValueError("Provide either ein or sole_prop, not both")
        if not self.ein and not self.sole_prop:
            raise ValueError("One of ein or sole_prop is required")
        return self

    @property
    def display_name(self) -> str:
        return self.brand_name or self.legal_name

    def snapshot(self) -> dict:
        """Business columns persisted after a successful submission."""
        return {
            "legal_name": self.legal_name,
            "brand_name": self.brand_name,
            "website": str(self.website) if self.website else None,
            "contact_name": self.contact_name,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "address_line1": self.address.line1,
            "address_line2": self.address.line2,
            "address_city": self.address.city,
            "address_state": self.address.state,
            "address_postal_code": self.address.postal_code,
            "address_country": self.address.country,
            "ein": self.ein,
            "sole_prop": self.sole_prop,
            "estimated_monthly_volume": self.estimated_monthly_volume,
            "opt_in_method": self.opt_in_method,
            "opt_in_evidence_url": str(self.opt_in_evidence_url),
            "terms_url": str(self.terms_url) if self.terms_url else None,
            "privacy_url": str(self.privacy_url) if self.privacy_url else None,
        }


def _field_name(loc: tuple) -> str:
    name = ".".join(str(part) for part in loc)
    return name or "ein"


def parse_business_info(data: Any) -> BusinessInfo:
    """
    Validate a raw businessInfo payload.

    Raises:
        ValidationError: with one {"field", "message"} entry per problem
    """
    if not isinstance(data, dict):
        raise ValidationError(
            "businessInfo must be an object",
            details=[{"field": "businessInfo", "message": "must be an object"}],
        )
    try:
        return BusinessInfo.model_validate(data)
    except PydanticValidationError as e:
        details = [
            {"field": _field_name(err["loc"]), "message": err["msg"].removeprefix("Value error, ")}
            for err in e.errors()
        ]
        raise ValidationError("Invalid business info", details=details) from e


# =============================================================================
# Request Models
# =============================================================================

class ProvisionRequest(BaseModel):
    """Body of POST /api/surge/provision-number and /verification/resubmit."""
    businessId: str = Field(..., min_length=1)
    # Validated by parse_business_info so errors come back per field
    businessInfo: Any = Field(...)


class SendSmsRequest(BaseModel):
    businessId: str = Field(..., min_length=1)
    to: str = Field(..., min_length=1, description="Recipient phone number")
    body: str = Field(..., min_length=1, max_length=1600, description="Message text")


# =============================================================================
# Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Acknowledgment returned to the carrier, always with a 200."""
    success: bool = True
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error description")
    code: str = Field(..., description="Machine-readable error code")
    details: Optional[Any] = None


class CapacityResponse(BaseModel):
    success: bool = True
    in_use: int = Field(..., ge=0)
    max: int = Field(..., ge=0)
    queued: int = Field(..., ge=0)
    unlimited: bool


class ProvisionResponse(BaseModel):
    """Either a provisioned number or the queued indicator."""
    success: bool = True
    queued: Optional[bool] = None
    from_number: Optional[str] = None
    status: Optional[str] = None
    message: str


class DrainResponse(BaseModel):
    success: bool = True
    drained: int = Field(..., ge=0)
    message: Optional[str] = None


class StatusResponse(BaseModel):
    success: bool = True
    status: str
    details: Optional[str] = None
    from_number: Optional[str] = None
    last_error: Optional[str] = None


class PollResponse(BaseModel):
    success: bool = True
    checked: int = Field(..., ge=0)
    updated: int = Field(..., ge=0)


class ResubmitResponse(BaseModel):
    success: bool = True
    status: str
    verification_id: str


class SendSmsResponse(BaseModel):
    success: bool = True
    message_id: str
    status: str
    to: str


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
