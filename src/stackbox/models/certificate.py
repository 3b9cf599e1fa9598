from typing import List, Optional

from pydantic import BaseModel, Field


class ValidationRecord(BaseModel):
    """One DNS challenge item returned by the certificate authority."""

    domain: str
    record_name: Optional[str] = None
    record_type: Optional[str] = None
    record_value: Optional[str] = None
    validation_status: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.record_name and self.record_type and self.record_value)


class CertificateResult(BaseModel):
    certificate_arn: str
    domain: str
    status: str
    reused: bool = False
    validation_records: List[ValidationRecord] = Field(default_factory=list)
