"""Achievement engine.

Rules are an ordered list of pure predicates over a read-only context. Each
rule is paired with a grant-if-absent write, so attempting a grant twice is
always safe: the second attempt reports "already held" instead of failing.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tracker.config import Settings, get_settings
from tracker.logging_config import get_logger
from tracker.models.achievement import (
    ACHIEVEMENT_CATALOG,
    MINUTES_THRESHOLDS,
    STREAK_THRESHOLDS,
    AchievementDefinition,
    AchievementGrant,
)
from tracker.services.debt import debt_from_totals
from tracker.services.ledger import LedgerStore
from tracker.utils.clock import hour_in_window, local_hour

logger = get_logger(__name__)


@dataclass(frozen=True)
class AchievementContext:
    """State visible to the rules after one check-in."""

    streak_days: int
    total_normal_minutes: int
    debt_before: int
    debt_after: int
    is_loan_entry: bool
    local_hour: int


@dataclass(frozen=True)
class AchievementRule:
    achievement_id: str
    predicate: Callable[[AchievementContext], bool]


def build_rules(settings: Settings) -> list[AchievementRule]:
    """Rules in catalog order."""
    rules = [AchievementRule("first_checkin", lambda ctx: True)]

    for threshold in STREAK_THRESHOLDS:
        rules.append(
            AchievementRule(
                f"streak_{threshold}",
                lambda ctx, t=threshold: ctx.streak_days >= t,
            )
        )

    for threshold in MINUTES_THRESHOLDS:
        rules.append(
            AchievementRule(
                f"minutes_{threshold}",
                lambda ctx, t=threshold: ctx.total_normal_minutes >= t,
            )
        )

    # Transition only: a user who never borrowed does not get it
    rules.append(
        AchievementRule(
            "debt_free",
            lambda ctx: ctx.debt_before > 0 and ctx.debt_after == 0,
        )
    )
    rules.append(
        AchievementRule(
            "early_bird",
            lambda ctx: hour_in_window(
                ctx.local_hour,
                settings.early_bird_start_hour,
                settings.early_bird_end_hour,
            ),
        )
    )
    rules.append(
        AchievementRule(
            "night_owl",
            lambda ctx: hour_in_window(
                ctx.local_hour,
                settings.night_owl_start_hour,
                settings.night_owl_end_hour,
            ),
        )
    )
    return rules


def qualifying_ids(rules: list[AchievementRule], ctx: AchievementContext) -> list[str]:
    """Ids whose condition holds for ``ctx``. Loan entries qualify for nothing."""
    if ctx.is_loan_entry:
        return []
    return [rule.achievement_id for rule in rules if rule.predicate(ctx)]


class AchievementEngine:
    """Evaluates rules and writes one-time grants."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.rules = build_rules(self.settings)
        self.ledger = LedgerStore(db)

    async def held_ids(self, user_id: str) -> set[str]:
        result = await self.db.execute(
            select(AchievementGrant.achievement_id).where(
                AchievementGrant.user_id == user_id
            )
        )
        return set(result.scalars().all())

    async def held(self, user_id: str) -> list[AchievementGrant]:
        result = await self.db.execute(
            select(AchievementGrant)
            .where(AchievementGrant.user_id == user_id)
            .order_by(AchievementGrant.unlocked_at, AchievementGrant.id)
        )
        return list(result.scalars().all())

    @staticmethod
    def catalog() -> list[AchievementDefinition]:
        return list(ACHIEVEMENT_CATALOG.values())

    async def grant(self, user_id: str, achievement_id: str, at: datetime) -> bool:
        """Grant ``achievement_id`` unless already held.

        Returns False for a duplicate, including one that slips past the
        existence check and hits the unique constraint. The insert runs in
        a SAVEPOINT so the caller's transaction survives that case.
        """
        if achievement_id not in ACHIEVEMENT_CATALOG:
            raise ValueError(f"Unknown achievement: {achievement_id}")

        existing = await self.db.scalar(
            select(AchievementGrant.id)
            .where(AchievementGrant.user_id == user_id)
            .where(AchievementGrant.achievement_id == achievement_id)
        )
        if existing is not None:
            return False

        try:
            async with self.db.begin_nested():
                self.db.add(
                    AchievementGrant(
                        user_id=user_id,
                        achievement_id=achievement_id,
                        unlocked_at=at,
                    )
                )
        except IntegrityError:
            logger.info(
                "achievement_already_held",
                user_id=user_id,
                achievement_id=achievement_id,
            )
            return False

        logger.info(
            "achievement_granted",
            user_id=user_id,
            achievement_id=achievement_id,
        )
        return True

    async def evaluate(
        self,
        user_id: str,
        ctx: AchievementContext,
        at: datetime,
    ) -> list[str]:
        """Grant every rule that holds for ``ctx``; return the new ids."""
        candidates = qualifying_ids(self.rules, ctx)
        if not candidates:
            return []

        held = await self.held_ids(user_id)
        granted: list[str] = []
        for achievement_id in candidates:
            if achievement_id in held:
                continue
            if await self.grant(user_id, achievement_id, at):
                granted.append(achievement_id)
        return granted

    async def backfill(self, user_id: str, max_streak: int, now: datetime) -> list[str]:
        """Grant anything the user already qualifies for but never received.

        Replays the ledger in the order entries were recorded, as the live
        path saw them, so historical transitions (a debt paid off, an
        early-morning entry) count too. Back-dated timestamps do not reorder
        the replay. Streak badges use the
        user's historical maximum. Idempotent.
        """
        zone = self.settings.zone
        entries = await self.ledger.query(user_id, insertion_order=True)

        normal = loan = 0
        qualified: set[str] = set()
        for entry in entries:
            debt_before = debt_from_totals(loan, normal)
            if entry.is_loan:
                loan += entry.duration
                continue
            normal += entry.duration
            ctx = AchievementContext(
                streak_days=max_streak,
                total_normal_minutes=normal,
                debt_before=debt_before,
                debt_after=debt_from_totals(loan, normal),
                is_loan_entry=False,
                local_hour=local_hour(entry.created_at, zone),
            )
            qualified.update(qualifying_ids(self.rules, ctx))

        held = await self.held_ids(user_id)
        granted: list[str] = []
        for rule in self.rules:
            achievement_id = rule.achievement_id
            if achievement_id in qualified and achievement_id not in held:
                if await self.grant(user_id, achievement_id, now):
                    granted.append(achievement_id)

        if granted:
            logger.info("achievements_backfilled", user_id=user_id, granted=granted)
        return granted
