"""
Two-Factor API Routes

Where a person relays the verification code a supplier sent them. The
session token in the path is the capability: it is only ever handed to
the credential owner in the two_fa_required push.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query

from KitchenCart.models.two_factor_models import SubmitTwoFactorCodeRequest
from KitchenCart.schemas.response import ResponseSchema
from KitchenCart.services.system.two_factor_service import get_two_factor_service

router = APIRouter()


@router.post("/two-factor/{session_token}/code", response_model=ResponseSchema[Dict[str, Any]])
async def submit_two_factor_code(
    session_token: str,
    request: SubmitTwoFactorCodeRequest,
    user_id: Optional[str] = Query(None),
):
    """Submit the verification code for a pending request"""
    result = await get_two_factor_service().submit_two_factor_code(session_token, request.code, user_id=user_id)
    return ResponseSchema(
        status="success" if result["success"] else "error",
        message="Code submitted" if result["success"] else result.get("error", "Code rejected"),
        data=result,
    )


@router.post("/two-factor/{session_token}/cancel", response_model=ResponseSchema[Dict[str, Any]])
async def cancel_two_factor_request(session_token: str, user_id: Optional[str] = Query(None)):
    """Cancel a pending request; the waiting login gives up on its next poll"""
    result = await get_two_factor_service().cancel(session_token, user_id=user_id)
    return ResponseSchema(
        status="success" if result["success"] else "error",
        message="Verification cancelled" if result["success"] else result["error"],
        data=result["request"],
    )


@router.get("/two-factor/credentials/{credential_id}/active", response_model=ResponseSchema[Optional[Dict[str, Any]]])
async def get_active_two_factor_request(credential_id: str):
    """The pending, unexpired request for a credential, if any"""
    request = get_two_factor_service().get_active_request(credential_id)
    return ResponseSchema(
        status="success",
        message="Active request found" if request else "No active request",
        data=request,
    )
