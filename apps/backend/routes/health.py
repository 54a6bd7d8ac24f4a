from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from apps.backend.services.loyalty.loyalty_service import LoyaltyService
from apps.backend.services.loyalty.service_factory import get_loyalty_service
from apps.backend.services.settings import get_settings

from .health_checks.loyalty_healthcheck import loyalty_healthcheck, supabase_rest_ping


router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health_root():
    return {"ok": True}


@router.get("/loyalty")
async def health_loyalty(svc: LoyaltyService = Depends(get_loyalty_service)):
    res = await loyalty_healthcheck(svc)
    return JSONResponse(content=res, status_code=200 if res["ok"] else 503)


@router.get("/store")
async def health_store():
    settings = get_settings()
    if settings.store != "supabase":
        return {"ok": True, "store": settings.store}
    res = await supabase_rest_ping(settings.supabase_url, settings.supabase_key)
    return JSONResponse(content={"store": settings.store, **res}, status_code=200 if res["ok"] else 503)
