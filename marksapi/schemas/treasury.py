from enum import Enum
from typing import Optional

from pydantic import BaseModel


class GatewayTransferStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"
    NOT_FOUND = "not_found"


class GatewayTransactionStatus(BaseModel):
    """트레저리 송금 상태 조회 결과"""

    reference: str
    status: GatewayTransferStatus
    transaction_hash: Optional[str] = None
    error: Optional[str] = None


class IdentityVerificationResult(BaseModel):
    success: bool
    nullifier_hash: Optional[str] = None
    code: Optional[str] = None
    detail: Optional[str] = None
