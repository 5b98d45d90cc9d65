from fastapi import APIRouter
from app.modules.billing import api as billing
from app.modules.entitlements import api as entitlements
from app.modules.premium import api as premium

router = APIRouter()
router.include_router(billing.router, prefix="/billing", tags=["billing"])
router.include_router(premium.router, prefix="/premium", tags=["premium"])
router.include_router(entitlements.router, prefix="/entitlements", tags=["entitlements"])
