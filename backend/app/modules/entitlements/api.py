from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.db.session import get_db
from app.schemas.entitlements import EntitlementOut
from app.services.entitlements import get_entitlement

router = APIRouter()


@router.get("/me", response_model=EntitlementOut)
def my_entitlements(current=Depends(get_current_user), db: Session = Depends(get_db)):
    return EntitlementOut(**get_entitlement(db, current.id))
