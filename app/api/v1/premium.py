"""
Premium API Endpoints
=====================

Client-facing premium sync, restore and status.

"No subscription" and "subscriber not found" are normal outcomes returned
with 200; only malformed requests and provider outages are errors.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from app.dependencies import CurrentUserId, get_premium_service
from app.schemas.common import BaseResponse
from app.schemas.premium import (
    PremiumRecordSchema,
    PremiumRestoreRequest,
    PremiumSyncData,
    PremiumSyncRequest,
    PremiumTransferRestoreRequest,
)
from app.services.premium_service import PremiumService, PremiumSyncResult

logger = logging.getLogger(__name__)

router = APIRouter()

PremiumServiceDep = Annotated[PremiumService, Depends(get_premium_service)]


def _sync_response(result: PremiumSyncResult) -> BaseResponse[PremiumSyncData]:
    record = (
        PremiumRecordSchema.model_validate(result.record)
        if result.record is not None
        else None
    )
    return BaseResponse[PremiumSyncData](
        success=True,
        data=PremiumSyncData(outcome=result.outcome, premium=record),
    )


@router.post(
    "/sync",
    response_model=BaseResponse[PremiumSyncData],
)
async def sync_premium(
    sync_data: PremiumSyncRequest,
    user_id: CurrentUserId,
    premium_service: PremiumServiceDep,
):
    """
    Sync after a purchase using the SDK's ``CustomerInfo``.

    The payload is stored for diagnosis and used only as a hint: premium is
    granted from RevenueCat's own view of the subscriber.
    """
    result = await premium_service.sync_from_customer_info(
        user_id,
        sync_data.customer_info,
        platform=sync_data.platform,
        source=sync_data.source,
        request_id=sync_data.request_id,
    )
    return _sync_response(result)


@router.post(
    "/restore",
    response_model=BaseResponse[PremiumSyncData],
)
async def restore_premium(
    restore_data: PremiumRestoreRequest,
    user_id: CurrentUserId,
    premium_service: PremiumServiceDep,
):
    """
    Restore purchases from RevenueCat.

    The client should call ``Purchases.restorePurchases()`` first.
    """
    result = await premium_service.restore_from_revenuecat(
        user_id,
        app_user_id=restore_data.app_user_id,
        request_id=restore_data.request_id,
        source=restore_data.source,
        platform=restore_data.platform,
    )
    return _sync_response(result)


@router.post(
    "/restore/transfer",
    response_model=BaseResponse[PremiumSyncData],
)
async def restore_transferred_premium(
    transfer_data: PremiumTransferRestoreRequest,
    user_id: CurrentUserId,
    premium_service: PremiumServiceDep,
):
    """Restore a subscription purchased on a since-deleted account."""
    result = await premium_service.restore_transferred_subscription(
        user_id,
        email=transfer_data.email,
        old_app_user_id=transfer_data.old_app_user_id,
        request_id=transfer_data.request_id,
        platform=transfer_data.platform,
    )
    return _sync_response(result)


@router.get(
    "/status",
    response_model=BaseResponse[PremiumRecordSchema],
)
async def get_premium_status(
    user_id: CurrentUserId,
    premium_service: PremiumServiceDep,
):
    """Current premium record; ``data`` is null before the first purchase."""
    status = await premium_service.get_status(user_id)
    if status is None:
        return BaseResponse[PremiumRecordSchema](
            success=True,
            data=None,
            message="No premium record",
        )
    return BaseResponse[PremiumRecordSchema](success=True, data=status)
