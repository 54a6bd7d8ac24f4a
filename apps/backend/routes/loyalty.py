from datetime import date, datetime
from typing import Any, Awaitable, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from apps.backend.services.loyalty.errors import CoreError
from apps.backend.services.loyalty.loyalty_service import LoyaltyService
from apps.backend.services.loyalty.service_factory import get_loyalty_service
from apps.backend.utils.envelope import error, ok

router = APIRouter(prefix="/loyalty", tags=["Loyalty"])


async def _respond(call: Awaitable[Any], status: int = 200):
    try:
        return ok(await call, status=status)
    except CoreError as e:
        return error(e)


# -----------------------------
# Bodies
# -----------------------------
# Amount range checks live in the service (invalid_amount, 400).

class CustomerIn(BaseModel):
    customer_id: str
    name: str
    phone: Optional[str] = None
    birthday: Optional[date] = None


class PointsIn(BaseModel):
    points: int
    description: str = "Manual bonus"
    transaction_type: str = "EARNED_BONUS"
    order_reference: Optional[str] = None
    created_by: Optional[str] = None


class RedeemIn(BaseModel):
    points_to_redeem: int
    description: str = "Points redemption"
    order_reference: Optional[str] = None
    transaction_type: str = "REDEEMED_DISCOUNT"
    created_by: Optional[str] = None


class AdjustIn(BaseModel):
    delta: int
    description: str
    created_by: Optional[str] = None


class VisitIn(BaseModel):
    amount: int
    visit_date: Optional[datetime] = None
    order_reference: Optional[str] = None


class FeedbackIn(BaseModel):
    rating: int
    comment: Optional[str] = None


class CommunicationIn(BaseModel):
    responded: bool = False
    channel: str = "SMS"


class ActorIn(BaseModel):
    created_by: Optional[str] = None


class ExpireIn(BaseModel):
    days_to_expire: Optional[int] = None


class CustomSegmentIn(BaseModel):
    name: str
    rules: Any
    logic: str = "AND"
    description: str = ""
    color_hex: Optional[str] = None
    created_by: Optional[str] = None


class BatchHealthIn(BaseModel):
    customer_ids: List[str] = Field(default_factory=list)


# -----------------------------
# Customers
# -----------------------------
@router.post("/customers")
async def register_customer(inb: CustomerIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.register_customer(inb.customer_id, inb.name, inb.phone, inb.birthday))


@router.get("/customers/{customer_id}")
async def customer_details(customer_id: str, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.get_customer_loyalty_details(customer_id))


@router.post("/customers/{customer_id}/deactivate")
async def deactivate_customer(customer_id: str, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.deactivate_customer(customer_id))


@router.post("/customers/{customer_id}/feedback")
async def record_feedback(customer_id: str, inb: FeedbackIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.record_feedback(customer_id, inb.rating, inb.comment))


@router.post("/customers/{customer_id}/communications")
async def record_communication(
    customer_id: str, inb: CommunicationIn, svc: LoyaltyService = Depends(get_loyalty_service)
):
    return await _respond(svc.record_communication(customer_id, inb.responded, inb.channel))


# -----------------------------
# Points
# -----------------------------
@router.post("/customers/{customer_id}/points/add")
async def add_points(customer_id: str, inb: PointsIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(
        svc.add_points(
            customer_id,
            inb.points,
            inb.description,
            transaction_type=inb.transaction_type,
            order_reference=inb.order_reference,
            created_by=inb.created_by,
        )
    )


@router.post("/customers/{customer_id}/points/redeem")
async def redeem_points(customer_id: str, inb: RedeemIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(
        svc.redeem_points(
            customer_id,
            inb.points_to_redeem,
            inb.description,
            order_reference=inb.order_reference,
            transaction_type=inb.transaction_type,
            created_by=inb.created_by,
        )
    )


@router.post("/customers/{customer_id}/points/adjust")
async def adjust_points(customer_id: str, inb: AdjustIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.adjust_points(customer_id, inb.delta, inb.description, inb.created_by))


@router.post("/customers/{customer_id}/visits")
async def record_visit(customer_id: str, inb: VisitIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.record_visit(customer_id, inb.amount, inb.visit_date, inb.order_reference))


@router.get("/customers/{customer_id}/preview")
async def preview_purchase(customer_id: str, amount: int, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.preview_purchase(customer_id, amount))


@router.post("/customers/{customer_id}/birthday-bonus")
async def birthday_bonus(customer_id: str, inb: ActorIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.award_birthday_bonus(customer_id, inb.created_by))


@router.post("/points/expire")
async def expire_points(inb: ExpireIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.expire_old_points(inb.days_to_expire))


@router.get("/transactions")
async def list_transactions(
    customer_id: Optional[str] = None,
    transaction_type: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = 1,
    limit: int = 50,
    svc: LoyaltyService = Depends(get_loyalty_service),
):
    return await _respond(svc.get_loyalty_transactions(customer_id, transaction_type, since, until, page, limit))


@router.get("/statistics")
async def statistics(
    tier: Optional[str] = None,
    segment: Optional[str] = None,
    since: Optional[datetime] = None,
    svc: LoyaltyService = Depends(get_loyalty_service),
):
    return await _respond(svc.get_loyalty_statistics(tier, segment, since))


# -----------------------------
# Ledger audit
# -----------------------------
@router.get("/customers/{customer_id}/replay")
async def replay(customer_id: str, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.replay(customer_id))


@router.post("/customers/{customer_id}/quarantine/release")
async def release_quarantine(customer_id: str, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.release_quarantine(customer_id))


# -----------------------------
# Tiers
# -----------------------------
@router.post("/customers/{customer_id}/tier/propose")
async def propose_tier_change(customer_id: str, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.propose_tier_change(customer_id))


@router.post("/customers/{customer_id}/tier/confirm")
async def confirm_tier_change(customer_id: str, inb: ActorIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.confirm_tier_change(customer_id, inb.created_by))


@router.post("/customers/{customer_id}/tier/dismiss")
async def dismiss_tier_change(customer_id: str, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.dismiss_tier_change(customer_id))


# -----------------------------
# Segments
# -----------------------------
@router.post("/segments/update")
async def update_segments(svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.update_all_customer_segments())


@router.get("/segments/analysis")
async def segment_analysis(svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.get_segment_analysis())


@router.get("/segments/{segment}/customers")
async def customers_by_segment(
    segment: str, page: int = 1, limit: int = 50, svc: LoyaltyService = Depends(get_loyalty_service)
):
    return await _respond(svc.get_customers_by_segment(segment.upper(), page, limit))


@router.get("/segments/{segment}/upgradeable")
async def upgradeable(
    segment: str, min_score: Optional[float] = None, svc: LoyaltyService = Depends(get_loyalty_service)
):
    return await _respond(svc.get_upgradeable_customers(segment.upper(), min_score))


@router.post("/custom-segments")
async def create_custom_segment(inb: CustomSegmentIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(
        svc.create_custom_segment(inb.name, inb.rules, inb.logic, inb.description, inb.color_hex, inb.created_by),
        status=201,
    )


@router.get("/custom-segments")
async def list_custom_segments(svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.list_custom_segments())


@router.post("/custom-segments/refresh")
async def refresh_custom_segments(svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.refresh_custom_segment_counts())


@router.get("/customers/{customer_id}/custom-segments")
async def customer_custom_segments(customer_id: str, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.evaluate_custom_segments(customer_id))


# -----------------------------
# Health scoring
# -----------------------------
@router.get("/customers/{customer_id}/health")
async def customer_health(customer_id: str, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.get_customer_health_score(customer_id))


@router.post("/health-scores/batch")
async def batch_health(inb: BatchHealthIn, svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.get_batch_health_scores(inb.customer_ids))


@router.post("/health-scores/refresh")
async def refresh_health(svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.refresh_all_health_scores())


@router.get("/health-scores/metrics")
async def health_metrics(svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.get_health_scoring_metrics())


@router.get("/health-scores/alerts")
async def health_alerts(svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.get_health_score_alerts())


@router.get("/health-scores/stale")
async def health_stale(svc: LoyaltyService = Depends(get_loyalty_service)):
    return await _respond(svc.get_customers_needing_health_updates())
