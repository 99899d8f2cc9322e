from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower()


class IssueCertificateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    student_id: int = Field(..., ge=1)
    certificate_type_id: Optional[int] = Field(None, ge=1)
    course_name: str = Field(..., min_length=1, max_length=255)
    grade: str = Field(..., min_length=1, max_length=20)
    description: Optional[str] = None


class AnchorDataRequest(BaseModel):
    """Step 3 payload. All four fields travel together or not at all."""

    model_config = ConfigDict(str_strip_whitespace=True)

    blockchain_id: int = Field(..., ge=1, description="Chain-assigned certificate id")
    transaction_hash: str = Field(..., pattern=r"^0x[0-9a-fA-F]+$", max_length=66)
    ipfs_hash: str = Field(..., min_length=1, max_length=128)
    ipfs_metadata_url: str = Field(..., min_length=1, max_length=512)


class RevokeRequest(BaseModel):
    reason: str = Field(..., min_length=1)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("reason must not be blank")
        return v


class CertificateListQuery(BaseModel):
    student_id: Optional[int] = None
    certificate_type_id: Optional[int] = None
    is_revoked: Optional[bool] = None
