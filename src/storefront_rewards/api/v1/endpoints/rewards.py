"""API endpoints for purchase rewards, spins, badges, referrals, leaderboards and the rewards store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_rewards.api.dependencies.catalog import get_reward_catalog
from storefront_rewards.api.dependencies.security import require_checkout_api_key
from storefront_rewards.api.dependencies.session import optional_session_user_id, require_member_session
from storefront_rewards.core.exceptions import (
    ConcurrencyConflict,
    InsufficientPoints,
    InvalidAmount,
    InvalidReferral,
    NoSpinsAvailable,
    OutOfStock,
    RewardUnavailable,
)
from storefront_rewards.core.settings import settings
from storefront_rewards.db.session import get_session
from storefront_rewards.models.rewards import (
    RewardCredit,
    RewardRedemption,
    RewardTransactionKind,
    RewardTransactionLogEntry,
)
from storefront_rewards.models.user import User
from storefront_rewards.services.rewards import (
    AccountSnapshot,
    BadgeRuleEvaluator,
    LeaderboardCategory,
    LeaderboardPeriod,
    LeaderboardRankingAggregator,
    LedgerStore,
    MilestoneAward,
    NewlyAwardedBadge,
    PurchaseRewardPipeline,
    RankedEntry,
    ReferralConversionTracker,
    RewardCatalog,
    RewardStore,
    SpinAllowanceSnapshot,
    SpinWheelPrizeSelector,
    StoreItemCategory,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)
from storefront_rewards.services.rewards.ledger import as_utc


router = APIRouter(prefix="/rewards", tags=["rewards"])


class PurchaseEventRequest(BaseModel):
    userId: UUID
    amount: Any = Field(..., description="Purchase amount in minor currency units")
    orderId: Optional[str] = Field(None, description="Order reference used to detect replays")
    purchasedAt: Optional[datetime] = None


class CycleProgressResponse(BaseModel):
    receipts: int
    spend: int
    cycleSize: int


class BracketOutcomeResponse(BaseModel):
    cycleCompleted: bool
    rewardAwarded: int
    cycleProgress: CycleProgressResponse
    completedCycleSpend: Optional[int]
    customTier: bool
    creditFailed: bool
    duplicate: bool


class AwardedBadgeResponse(BaseModel):
    slug: str
    name: str
    tier: str
    bonusPoints: int
    earnedAt: datetime


class MilestoneAwardResponse(BaseModel):
    slug: str
    name: str
    rewardType: str
    rewardValue: int


class ReferralOutcomeResponse(BaseModel):
    linkId: UUID
    referrerId: UUID
    converted: bool
    rewardIssued: bool
    capReached: bool
    freeDeliveriesCredited: int
    reason: Optional[str]


class PurchaseRewardsResponse(BaseModel):
    userId: UUID
    bracket: Optional[BracketOutcomeResponse]
    badges: List[AwardedBadgeResponse]
    milestones: List[MilestoneAwardResponse]
    referral: Optional[ReferralOutcomeResponse]
    referrerBadges: List[AwardedBadgeResponse]
    referrerMilestones: List[MilestoneAwardResponse]
    degraded: bool
    failures: List[str]


class SpinResultResponse(BaseModel):
    rewardSlug: str
    rewardName: str
    rewardType: str
    rewardValue: int
    spinsRemaining: int
    pointsCredited: int
    creditId: Optional[UUID]


class SpinHistoryResponse(BaseModel):
    rewardSlug: str
    rewardName: str
    rewardType: str
    rewardValue: int
    createdAt: datetime


class SpinAllowanceResponse(BaseModel):
    userId: UUID
    spinsAvailable: int
    totalSpinsGranted: int
    totalSpinsConsumed: int
    totalWinningsValue: int
    lastSpinAt: Optional[datetime]
    recentSpins: List[SpinHistoryResponse]


class SpinGrantRequest(BaseModel):
    userId: UUID
    spins: Any = Field(..., description="Number of spins to add")
    reason: str = Field("manual", description="Why the spins were granted")


class RewardCreditResponse(BaseModel):
    id: UUID
    creditType: str
    value: Optional[int]
    quantityRemaining: int
    source: str
    expiresAt: Optional[datetime]


class RewardAccountResponse(BaseModel):
    userId: UUID
    totalSpend: int
    purchaseCount: int
    pointsEarned: int
    pointsRedeemed: int
    availablePoints: int
    cycleProgress: CycleProgressResponse
    lastPurchaseAt: Optional[datetime]
    credits: List[RewardCreditResponse]


class TransactionResponse(BaseModel):
    id: UUID
    kind: str
    amount: int
    pointsDelta: int
    description: Optional[str]
    metadata: dict[str, Any]
    createdAt: datetime


class TransactionWindowResponse(BaseModel):
    entries: List[TransactionResponse]
    nextCursor: Optional[str]


class RedemptionRequest(BaseModel):
    points: Any = Field(..., description="Points to redeem")
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class EarnedBadgeResponse(BaseModel):
    slug: str
    name: str
    tier: str
    earnedAt: datetime


class BadgeProgressItemResponse(BaseModel):
    slug: str
    name: str
    category: str
    current: int
    required: int
    percentage: int


class BadgeProgressResponse(BaseModel):
    earned: List[EarnedBadgeResponse]
    upcoming: List[BadgeProgressItemResponse]
    orderStreak: int


class ReferralLinkRequest(BaseModel):
    referrerId: UUID
    refereeId: UUID


class ReferralLinkResponse(BaseModel):
    id: UUID
    referrerId: UUID
    refereeId: UUID
    status: str
    rewardIssued: bool
    createdAt: datetime
    completedAt: Optional[datetime]


class LeaderboardEntryResponse(BaseModel):
    userId: UUID
    displayName: Optional[str]
    score: int
    rank: int


class LeaderboardResponse(BaseModel):
    category: LeaderboardCategory
    period: LeaderboardPeriod
    periodStart: datetime
    periodEnd: datetime
    entries: List[LeaderboardEntryResponse]
    currentUser: Optional[LeaderboardEntryResponse]
    totalParticipants: int


class BracketTierResponse(BaseModel):
    minSpend: int
    maxSpend: Optional[int]
    rewardValue: int
    customizable: bool


def _serialize_account(snapshot: AccountSnapshot, credits: list[RewardCredit]) -> RewardAccountResponse:
    return RewardAccountResponse(
        userId=snapshot.user_id,
        totalSpend=snapshot.total_spend,
        purchaseCount=snapshot.purchase_count,
        pointsEarned=snapshot.points_earned,
        pointsRedeemed=snapshot.points_redeemed,
        availablePoints=snapshot.available_points,
        cycleProgress=CycleProgressResponse(
            receipts=snapshot.current_cycle_receipts,
            spend=snapshot.current_cycle_spend,
            cycleSize=settings.bracket_cycle_size,
        ),
        lastPurchaseAt=snapshot.last_purchase_at,
        credits=[
            RewardCreditResponse(
                id=credit.id,
                creditType=credit.credit_type.value,
                value=credit.value,
                quantityRemaining=credit.quantity_remaining,
                source=credit.source,
                expiresAt=as_utc(credit.expires_at) if credit.expires_at else None,
            )
            for credit in credits
        ],
    )


def _serialize_transaction(entry: RewardTransactionLogEntry) -> TransactionResponse:
    return TransactionResponse(
        id=entry.id,
        kind=entry.kind.value,
        amount=entry.amount,
        pointsDelta=entry.points_delta,
        description=entry.description,
        metadata=entry.metadata_json or {},
        createdAt=as_utc(entry.created_at),
    )


def _serialize_allowance(snapshot: SpinAllowanceSnapshot) -> SpinAllowanceResponse:
    return SpinAllowanceResponse(
        userId=snapshot.user_id,
        spinsAvailable=snapshot.spins_available,
        totalSpinsGranted=snapshot.total_spins_granted,
        totalSpinsConsumed=snapshot.total_spins_consumed,
        totalWinningsValue=snapshot.total_winnings_value,
        lastSpinAt=snapshot.last_spin_at,
        recentSpins=[
            SpinHistoryResponse(
                rewardSlug=entry.reward_slug,
                rewardName=entry.reward_name,
                rewardType=entry.reward_type.value,
                rewardValue=entry.reward_value,
                createdAt=as_utc(entry.created_at),
            )
            for entry in snapshot.recent_spins
        ],
    )


class StoreItemResponse(BaseModel):
    slug: str
    name: str
    description: str
    itemType: str
    category: str
    pointsCost: int
    value: int
    stockRemaining: Optional[int]
    isFeatured: bool


class StoreRedemptionRequest(BaseModel):
    itemSlug: str = Field(..., min_length=1)


class StoreRedemptionResponse(BaseModel):
    id: UUID
    itemSlug: str
    itemName: Optional[str]
    itemType: str
    pointsSpent: int
    status: str
    code: Optional[str]
    creditId: Optional[UUID]
    expiresAt: Optional[datetime]
    fulfilledAt: Optional[datetime]
    createdAt: datetime


def _serialize_redemption(redemption: RewardRedemption, catalog: RewardCatalog) -> StoreRedemptionResponse:
    item = catalog.store_item(redemption.item_slug)
    return StoreRedemptionResponse(
        id=redemption.id,
        itemSlug=redemption.item_slug,
        itemName=item.name if item else None,
        itemType=redemption.item_type.value,
        pointsSpent=redemption.points_spent,
        status=redemption.status.value,
        code=redemption.code,
        creditId=redemption.credit_id,
        expiresAt=as_utc(redemption.expires_at) if redemption.expires_at else None,
        fulfilledAt=as_utc(redemption.fulfilled_at) if redemption.fulfilled_at else None,
        createdAt=as_utc(redemption.created_at),
    )


def _serialize_awarded_badge(badge: NewlyAwardedBadge) -> AwardedBadgeResponse:
    return AwardedBadgeResponse(
        slug=badge.slug,
        name=badge.name,
        tier=badge.tier,
        bonusPoints=badge.bonus_points,
        earnedAt=badge.earned_at,
    )


def _serialize_milestone_award(award: MilestoneAward) -> MilestoneAwardResponse:
    return MilestoneAwardResponse(
        slug=award.slug,
        name=award.name,
        rewardType=award.reward_type.value,
        rewardValue=award.reward_value,
    )


def _serialize_ranked(entry: RankedEntry) -> LeaderboardEntryResponse:
    return LeaderboardEntryResponse(
        userId=entry.user_id,
        displayName=entry.display_name,
        score=entry.score,
        rank=entry.rank,
    )


@router.post(
    "/purchases",
    response_model=PurchaseRewardsResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def record_purchase_rewards(
    payload: PurchaseEventRequest,
    db: AsyncSession = Depends(get_session),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> PurchaseRewardsResponse:
    """Process a completed purchase through every reward component."""

    pipeline = PurchaseRewardPipeline(db, catalog)
    try:
        outcome = await pipeline.process_purchase(
            payload.userId,
            payload.amount,
            order_id=payload.orderId,
            purchased_at=payload.purchasedAt,
        )
    except InvalidAmount as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ConcurrencyConflict as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    bracket = outcome.bracket
    return PurchaseRewardsResponse(
        userId=outcome.user_id,
        bracket=(
            BracketOutcomeResponse(
                cycleCompleted=bracket.cycle_completed,
                rewardAwarded=bracket.reward_awarded,
                cycleProgress=CycleProgressResponse(
                    receipts=bracket.cycle_progress.receipts,
                    spend=bracket.cycle_progress.spend,
                    cycleSize=settings.bracket_cycle_size,
                ),
                completedCycleSpend=bracket.completed_cycle_spend,
                customTier=bracket.custom_tier,
                creditFailed=bracket.credit_failed,
                duplicate=bracket.duplicate,
            )
            if bracket
            else None
        ),
        badges=[_serialize_awarded_badge(badge) for badge in outcome.badges],
        milestones=[_serialize_milestone_award(award) for award in outcome.milestones],
        referral=(
            ReferralOutcomeResponse(
                linkId=outcome.referral.link_id,
                referrerId=outcome.referral.referrer_id,
                converted=outcome.referral.converted,
                rewardIssued=outcome.referral.reward_issued,
                capReached=outcome.referral.cap_reached,
                freeDeliveriesCredited=outcome.referral.free_deliveries_credited,
                reason=outcome.referral.reason,
            )
            if outcome.referral
            else None
        ),
        referrerBadges=[_serialize_awarded_badge(badge) for badge in outcome.referrer_badges],
        referrerMilestones=[_serialize_milestone_award(award) for award in outcome.referrer_milestones],
        degraded=outcome.degraded,
        failures=list(outcome.failures),
    )


@router.post("/spin", response_model=SpinResultResponse)
async def spin_wheel(
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> SpinResultResponse:
    """Consume one spin for the session member and return the prize."""

    selector = SpinWheelPrizeSelector(db, catalog)
    try:
        result = await selector.spin(current_user.id)
    except NoSpinsAvailable as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return SpinResultResponse(
        rewardSlug=result.reward_slug,
        rewardName=result.reward_name,
        rewardType=result.reward_type.value,
        rewardValue=result.reward_value,
        spinsRemaining=result.spins_remaining,
        pointsCredited=result.points_credited,
        creditId=result.credit_id,
    )


@router.post(
    "/spins/grant",
    response_model=SpinAllowanceResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def grant_spins(
    payload: SpinGrantRequest,
    db: AsyncSession = Depends(get_session),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> SpinAllowanceResponse:
    selector = SpinWheelPrizeSelector(db, catalog)
    try:
        await selector.grant_spins(payload.userId, payload.spins, reason=payload.reason)
    except InvalidAmount as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _serialize_allowance(await selector.allowance(payload.userId))


@router.get("/accounts/{user_id}", response_model=RewardAccountResponse)
async def get_reward_account(
    user_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> RewardAccountResponse:
    ledger = LedgerStore(db)
    snapshot = await ledger.account_snapshot(user_id)
    credits = await ledger.list_credits(user_id)
    return _serialize_account(snapshot, credits)


@router.get("/accounts/{user_id}/transactions", response_model=TransactionWindowResponse)
async def list_reward_transactions(
    user_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    kinds: list[str] | None = Query(None, description="Filter transaction kinds"),
    db: AsyncSession = Depends(get_session),
) -> TransactionWindowResponse:
    """Return audit log entries newest first with pagination."""

    kind_filter: list[RewardTransactionKind] | None = None
    if kinds:
        kind_filter = []
        for value in kinds:
            try:
                kind_filter.append(RewardTransactionKind(value))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Unsupported transaction kind: {value}") from exc

    decoded_cursor = None
    if cursor:
        try:
            decoded_cursor = decode_time_uuid_cursor(cursor)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid transaction cursor") from exc

    entries, next_cursor = await LedgerStore(db).list_transactions(
        user_id,
        limit=limit,
        cursor=decoded_cursor,
        kinds=kind_filter,
    )
    return TransactionWindowResponse(
        entries=[_serialize_transaction(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.get("/accounts/{user_id}/badges", response_model=BadgeProgressResponse)
async def get_badge_progress(
    user_id: UUID,
    limit: int = Query(3, ge=0, le=50),
    db: AsyncSession = Depends(get_session),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> BadgeProgressResponse:
    progress = await BadgeRuleEvaluator(db, catalog).progress(user_id, limit=limit)
    return BadgeProgressResponse(
        earned=[
            EarnedBadgeResponse(slug=badge.slug, name=badge.name, tier=badge.tier, earnedAt=badge.earned_at)
            for badge in progress.earned
        ],
        upcoming=[
            BadgeProgressItemResponse(
                slug=item.slug,
                name=item.name,
                category=item.category.value,
                current=item.current,
                required=item.required,
                percentage=item.percentage,
            )
            for item in progress.upcoming
        ],
        orderStreak=progress.statistics.order_streak,
    )


@router.post(
    "/accounts/{user_id}/badges/{badge_slug}",
    response_model=Optional[AwardedBadgeResponse],
    dependencies=[Depends(require_checkout_api_key)],
)
async def award_special_badge(
    user_id: UUID,
    badge_slug: str,
    db: AsyncSession = Depends(get_session),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> Optional[AwardedBadgeResponse]:
    """Grant a badge explicitly (e.g. after a product review). Returns null when already earned."""

    try:
        award = await BadgeRuleEvaluator(db, catalog).award_badge(user_id, badge_slug)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if award is None:
        return None
    return AwardedBadgeResponse(
        slug=award.slug,
        name=award.name,
        tier=award.tier,
        bonusPoints=award.bonus_points,
        earnedAt=award.earned_at,
    )


@router.get("/accounts/{user_id}/spins", response_model=SpinAllowanceResponse)
async def get_spin_allowance(
    user_id: UUID,
    history: int = Query(10, ge=0, le=50),
    db: AsyncSession = Depends(get_session),
) -> SpinAllowanceResponse:
    snapshot = await LedgerStore(db).spin_snapshot(user_id, history_limit=history)
    return _serialize_allowance(snapshot)


@router.post(
    "/accounts/{user_id}/redemptions",
    response_model=RewardAccountResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def redeem_points(
    user_id: UUID,
    payload: RedemptionRequest,
    db: AsyncSession = Depends(get_session),
) -> RewardAccountResponse:
    ledger = LedgerStore(db)
    try:
        await ledger.redeem_points(
            user_id,
            payload.points,
            description=payload.description,
            metadata=payload.metadata,
        )
        await db.commit()
    except InvalidAmount as exc:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except InsufficientPoints as exc:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return _serialize_account(await ledger.account_snapshot(user_id), await ledger.list_credits(user_id))


@router.post(
    "/referrals",
    response_model=ReferralLinkResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_checkout_api_key)],
)
async def create_referral_link(
    payload: ReferralLinkRequest,
    db: AsyncSession = Depends(get_session),
) -> ReferralLinkResponse:
    try:
        link = await ReferralConversionTracker(db).create_link(payload.referrerId, payload.refereeId)
    except InvalidReferral as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return ReferralLinkResponse(
        id=link.id,
        referrerId=link.referrer_id,
        refereeId=link.referee_id,
        status=link.status.value,
        rewardIssued=link.reward_issued,
        createdAt=as_utc(link.created_at),
        completedAt=as_utc(link.completed_at) if link.completed_at else None,
    )


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    category: LeaderboardCategory = Query(LeaderboardCategory.SPENDING),
    period: LeaderboardPeriod = Query(LeaderboardPeriod.MONTHLY),
    limit: int | None = Query(None, ge=1),
    requesting_user_id: UUID | None = Depends(optional_session_user_id),
    db: AsyncSession = Depends(get_session),
) -> LeaderboardResponse:
    bounded_limit = min(limit or settings.leaderboard_default_limit, settings.leaderboard_max_limit)
    ranked = await LeaderboardRankingAggregator(db).rank(
        category,
        period,
        bounded_limit,
        requesting_user_id=requesting_user_id,
    )
    return LeaderboardResponse(
        category=ranked.category,
        period=ranked.period,
        periodStart=ranked.period_start,
        periodEnd=ranked.period_end,
        entries=[_serialize_ranked(entry) for entry in ranked.entries],
        currentUser=_serialize_ranked(ranked.requesting_user_entry) if ranked.requesting_user_entry else None,
        totalParticipants=ranked.total_participants,
    )


@router.get("/tiers", response_model=List[BracketTierResponse])
async def list_bracket_tiers(
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> List[BracketTierResponse]:
    return [
        BracketTierResponse(
            minSpend=tier.min_spend,
            maxSpend=tier.max_spend,
            rewardValue=tier.reward_value,
            customizable=tier.customizable,
        )
        for tier in catalog.bracket_tiers
    ]


@router.get("/store", response_model=List[StoreItemResponse])
async def list_store_items(
    category: StoreItemCategory | None = Query(None),
    db: AsyncSession = Depends(get_session),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> List[StoreItemResponse]:
    """Active rewards store items, featured first."""

    listings = await RewardStore(db, catalog).list_items(category)
    return [
        StoreItemResponse(
            slug=listing.item.slug,
            name=listing.item.name,
            description=listing.item.description,
            itemType=listing.item.item_type.value,
            category=listing.item.category.value,
            pointsCost=listing.item.points_cost,
            value=listing.item.value,
            stockRemaining=listing.stock_remaining,
            isFeatured=listing.item.is_featured,
        )
        for listing in listings
    ]


@router.post(
    "/store/redemptions",
    response_model=StoreRedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_store_item(
    payload: StoreRedemptionRequest,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> StoreRedemptionResponse:
    try:
        redemption = await RewardStore(db, catalog).redeem_reward(current_user.id, payload.itemSlug)
    except RewardUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (OutOfStock, InsufficientPoints) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _serialize_redemption(redemption, catalog)


@router.get("/store/redemptions", response_model=List[StoreRedemptionResponse])
async def list_store_redemptions(
    limit: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> List[StoreRedemptionResponse]:
    """Redemption history for the session member, newest first."""

    redemptions = await RewardStore(db, catalog).list_redemptions(current_user.id, limit=limit)
    return [_serialize_redemption(redemption, catalog) for redemption in redemptions]
