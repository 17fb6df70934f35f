"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from app.schemas.common import BaseResponse, ErrorDetail, ErrorResponse
from app.schemas.premium import (
    PremiumRecordSchema,
    PremiumRestoreRequest,
    PremiumSyncData,
    PremiumSyncRequest,
    PremiumTransferRestoreRequest,
)

__all__ = [
    "BaseResponse",
    "ErrorDetail",
    "ErrorResponse",
    "PremiumRecordSchema",
    "PremiumRestoreRequest",
    "PremiumSyncData",
    "PremiumSyncRequest",
    "PremiumTransferRestoreRequest",
]
