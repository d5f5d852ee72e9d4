"""
api/routes/v1/internal.py -- Service-to-service endpoints.

Authenticated with the S-Token header only (require_internal_token); user
JWTs are neither required nor accepted as a substitute. Intended for the
scheduler that runs the nightly subscription sweep.

Routes:
  POST /internal/subscriptions/sweep -- ACTIVE subscriptions without a valid plan window -> INACTIVE
"""

import logging

from fastapi import APIRouter, Depends, Request

from api.models import SweepResponse
from auth.dependencies import require_internal_token
from tenancy.store import TenancyStore

logger = logging.getLogger("campusgate.api.internal")

router = APIRouter(prefix="/internal", dependencies=[Depends(require_internal_token)])


@router.post("/subscriptions/sweep", response_model=SweepResponse)
def sweep_subscriptions(request: Request) -> SweepResponse:
    tenancy: TenancyStore = request.app.state.tenancy
    deactivated = tenancy.deactivate_lapsed_subscriptions()
    logger.info("Subscription sweep finished (%d deactivated)", deactivated)
    return SweepResponse(deactivated=deactivated)
