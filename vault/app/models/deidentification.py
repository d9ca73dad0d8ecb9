"""
De-identification result models.
"""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class ComplianceLevel(str, Enum):
    """De-identification strictness, from least to most aggressive."""

    MINIMAL = "minimal"
    FEDERAL = "federal"
    REGIONAL = "regional"
    FULL_ANONYMOUS = "full_anonymous"


class IdentifierType(str, Enum):
    """Categories of identifier the engine detects."""

    HEALTH_INSURANCE_NUMBER = "health_insurance_number"
    NATIONAL_ID = "national_id"
    PAYMENT_CARD = "payment_card"
    NAME = "name"
    EMAIL = "email"
    PHONE = "phone"
    DRIVERS_LICENSE = "drivers_license"
    POSTAL_CODE = "postal_code"
    STREET_ADDRESS = "street_address"
    BANK_ACCOUNT = "bank_account"
    DATE = "date"
    LOCATION = "location"


class RemovedEntity(BaseModel):
    """One redaction. Offsets refer to the original input text."""

    entity_type: IdentifierType
    original_text: str = Field(..., description="Matched text (never logged)")
    start: int
    end: int
    replacement: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class DeidentificationResult(BaseModel):
    original_hash: str = Field(..., description="SHA-256 of the input text")
    cleaned_text: str
    removed_entities: List[RemovedEntity] = Field(default_factory=list)
    compliance_level: ComplianceLevel
