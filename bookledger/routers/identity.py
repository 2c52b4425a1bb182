from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from bookledger.database import get_db
from bookledger.schemas.responses import AggregateResponse, CustomerRefResponse, IdentityResolveResponse
from bookledger.services import identity

router = APIRouter()


@router.get("/resolve", response_model=IdentityResolveResponse)
def resolve_identity(phone: str, db: Session = Depends(get_db)):
    """
    Expand a phone number into every tenant-scoped Customer it matches.
    An empty list means no known identity, not an error.
    """
    normalized = identity.normalize_phone(phone)
    refs = identity.resolve(db, normalized)
    return IdentityResolveResponse(
        phone=phone,
        normalized=normalized,
        customers=[CustomerRefResponse.model_validate(ref) for ref in refs],
    )


@router.get("/appointments", response_model=AggregateResponse)
async def cross_tenant_appointments(phone: str, db: Session = Depends(get_db)):
    normalized = identity.normalize_phone(phone)
    result = await identity.aggregate(db, normalized, identity.appointment_fetcher(db))
    return AggregateResponse(
        phone=phone,
        normalized=normalized,
        total=len(result.items),
        items=result.items,
        failed_tenants=result.failed_tenants,
    )


@router.get("/packages", response_model=AggregateResponse)
async def cross_tenant_packages(phone: str, db: Session = Depends(get_db)):
    """Active packages with sessions left, across every tenant the phone is known to."""
    normalized = identity.normalize_phone(phone)
    result = await identity.aggregate(db, normalized, identity.package_fetcher(db))
    return AggregateResponse(
        phone=phone,
        normalized=normalized,
        total=len(result.items),
        items=result.items,
        failed_tenants=result.failed_tenants,
    )
