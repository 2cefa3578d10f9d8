"""
Vendor models - Candidates returned by the discovery provider and the
staged records created from them for admin review.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import BaseModel, BeforeValidator, Field

# Custom type for handling MongoDB ObjectId
# Converts ObjectId to string for JSON serialization
PyObjectId = Annotated[str, BeforeValidator(str)]


class StagedVendorStatus(str, Enum):
    """Review status of a staged vendor"""
    STAGED = "staged"
    DUPLICATE = "duplicate"


class WebsiteVerification(str, Enum):
    """Outcome of the website reachability check"""
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    ERROR = "error"
    NO_URL = "no_url"


class DiscoveredVendor(BaseModel):
    """A vendor candidate proposed by the discovery provider."""
    name: str = Field(..., min_length=1)
    location: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    specialty: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    cultural_specialties: List[str] = Field(default_factory=list)
    preferred_wedding_traditions: List[str] = Field(default_factory=list)
    price_range: Optional[str] = None
    notes: Optional[str] = None


class StagedVendor(BaseModel):
    """
    A discovered vendor persisted for admin review.

    status=duplicate means the name matched an already-onboarded vendor;
    duplicate_of_vendor_id then points at that vendor.
    """
    id: Optional[PyObjectId] = Field(default=None, alias="_id")
    discovery_job_id: str
    name: str
    location: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    specialty: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    cultural_specialties: List[str] = Field(default_factory=list)
    preferred_wedding_traditions: List[str] = Field(default_factory=list)
    price_range: Optional[str] = None
    notes: Optional[str] = None
    status: StagedVendorStatus = StagedVendorStatus.STAGED
    duplicate_of_vendor_id: Optional[str] = None
    website_verified: WebsiteVerification = WebsiteVerification.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {
        "populate_by_name": True,
        "use_enum_values": True,
    }

    @classmethod
    def from_candidate(
        cls,
        job_id: str,
        candidate: DiscoveredVendor,
        duplicate_of_vendor_id: Optional[str] = None,
    ) -> "StagedVendor":
        status = StagedVendorStatus.DUPLICATE if duplicate_of_vendor_id else StagedVendorStatus.STAGED
        return cls(
            discovery_job_id=job_id,
            status=status,
            duplicate_of_vendor_id=duplicate_of_vendor_id,
            **candidate.model_dump(),
        )
