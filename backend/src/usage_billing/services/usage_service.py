"""Usage metering: converts resource consumption into ledger debits."""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.cache import InMemoryCache
from usage_billing.config import settings
from usage_billing.cost_tables import (
    INFRASTRUCTURE_COSTS,
    MILLION,
    OPS_UNIT,
    TOKENS_PER_CREDIT,
    ModelPrice,
    quantize_money,
)
from usage_billing.database import run_in_transaction
from usage_billing.exceptions import InsufficientContextError, NotFoundError, ValidationError
from usage_billing.metrics import (
    ai_credits_consumed_total,
    sandbox_sessions_open,
    usage_cost_usd_total,
    usage_events_total,
)
from usage_billing.models.balance_transaction import BalanceTransaction, TransactionType
from usage_billing.models.plan import Plan
from usage_billing.models.subscription import Subscription, SubscriptionStatus
from usage_billing.models.usage_record import AIUsage, DatabaseUsage, DeploymentUsage, SandboxUsage, StorageUsage
from usage_billing.models.user import User
from usage_billing.schemas.common import BatchResult, to_naive_utc
from usage_billing.schemas.usage import (
    AIUsageCharge,
    AIUsageCreate,
    DatabaseUsageCreate,
    DeploymentUsageCreate,
    SandboxSession,
    SandboxUsageCreate,
    StorageUsageCreate,
    UsageBreakdown,
    UsageBreakdownItem,
    UsageCharge,
)
from usage_billing.services.ledger_service import LedgerService
from usage_billing.services.model_registry import ModelRegistry

logger = structlog.get_logger(__name__)

DATABASE_RATE_KEYS = {
    "compute": "compute_per_hour",
    "storage": "storage_per_gb_month",
    "file_storage": "file_storage_per_gb_month",
    "egress": "egress_per_gb",
}

# Subscription states that still draw on the monthly allowance
ALLOWANCE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


def billable_minutes(duration: timedelta) -> int:
    """Whole minutes for a duration, rounded up."""
    micros = duration // timedelta(microseconds=1)
    return -(-micros // 60_000_000)


def sandbox_cost(duration: timedelta) -> tuple[int, Decimal]:
    """Return (billable minutes, cost) for a sandbox session."""
    minutes = billable_minutes(duration)
    return minutes, quantize_money(minutes * INFRASTRUCTURE_COSTS["sandbox"]["per_minute"])


def storage_cost(storage_type: str, size_gb: Decimal, operations: int = 0) -> Decimal:
    """
    Price a storage snapshot.

    Object storage: size * per GB-month + operations per million * per-million rate.
    Database storage: size * per GB-month, no operation surcharge.
    """
    if storage_type == "object":
        rates = INFRASTRUCTURE_COSTS["storage"]
        cost = size_gb * rates["per_gb_month"]
        if operations:
            cost += (Decimal(operations) / OPS_UNIT) * rates["per_million_ops"]
        return quantize_money(cost)
    if storage_type == "database":
        return quantize_money(size_gb * INFRASTRUCTURE_COSTS["database"]["storage_per_gb_month"])
    raise ValidationError(f"Unknown storage type: {storage_type}")


def deployment_cost() -> Decimal:
    return quantize_money(INFRASTRUCTURE_COSTS["deployment"]["per_deploy"])


def database_cost(usage_kind: str, quantity: Decimal) -> Decimal:
    if usage_kind not in DATABASE_RATE_KEYS:
        raise ValidationError(f"Unknown database usage kind: {usage_kind}")
    return quantize_money(quantity * INFRASTRUCTURE_COSTS["database"][DATABASE_RATE_KEYS[usage_kind]])


def ai_cost(price: ModelPrice, input_tokens: int, output_tokens: int) -> Decimal:
    return quantize_money(
        Decimal(input_tokens) / MILLION * price.input_per_million
        + Decimal(output_tokens) / MILLION * price.output_per_million
    )


def credits_for_tokens(total_tokens: int) -> int:
    return -(-total_tokens // TOKENS_PER_CREDIT)


class UsageMeteringService:
    """
    Service for metering sandbox, storage, deployment, database and AI usage.

    Each track_* call writes its usage record and the matching ledger debit
    through the same session; nothing is visible until the caller commits.
    """

    def __init__(self, db: AsyncSession, model_registry: ModelRegistry | None = None):
        """Initialize metering service with database session and pricing registry."""
        self.db = db
        self.ledger = LedgerService(db)
        self.model_registry = model_registry or ModelRegistry(db, InMemoryCache())

    async def start_sandbox_session(
        self,
        user_id: UUID,
        sandbox_id: str,
        project_id: str | None = None,
        start_time: datetime | None = None,
    ) -> SandboxSession:
        """
        Open a sandbox session with zero cost and no end time.

        Args:
            user_id: Owner of the sandbox
            sandbox_id: Provider sandbox identifier
            project_id: Optional project
            start_time: Session start (defaults to now)

        Returns:
            SandboxSession with the session id to pass to end_sandbox_session

        Raises:
            NotFoundError: If the user doesn't exist
        """
        await self._ensure_user(user_id)
        record = SandboxUsage(
            user_id=user_id,
            project_id=project_id,
            sandbox_id=sandbox_id,
            start_time=start_time or datetime.utcnow(),
            provider_cost_usd=Decimal("0"),
        )
        self.db.add(record)
        await self.db.flush()

        sandbox_sessions_open.inc()
        logger.info("sandbox_session_started", session_id=str(record.id), user_id=str(user_id), sandbox_id=sandbox_id)
        return SandboxSession(session_id=record.id, sandbox_id=sandbox_id, start_time=record.start_time)

    async def end_sandbox_session(self, session_id: UUID, end_time: datetime | None = None) -> UsageCharge:
        """
        Finalize a sandbox session and debit its cost.

        Elapsed time is rounded up to whole minutes. Ending a session twice
        returns the first charge without debiting again.

        Args:
            session_id: ID returned by start_sandbox_session
            end_time: Session end (defaults to now)

        Returns:
            UsageCharge for the session

        Raises:
            InsufficientContextError: If the session was never started
            ValidationError: If end_time is before the session start
        """
        result = await self.db.execute(
            select(SandboxUsage)
            .where(SandboxUsage.id == session_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise InsufficientContextError(f"Sandbox session {session_id} was never started")

        if record.end_time is not None:
            logger.info("sandbox_session_already_ended", session_id=str(session_id))
            return await self._existing_charge(record)

        end_time = to_naive_utc(end_time) if end_time else datetime.utcnow()
        if end_time < record.start_time:
            raise ValidationError("end_time must not be before the session start")

        minutes, cost = sandbox_cost(end_time - record.start_time)
        record.end_time = end_time
        record.duration_minutes = minutes

        charge = await self._charge(
            record,
            resource="sandbox",
            type=TransactionType.SANDBOX_USAGE,
            cost=cost,
            description=f"Sandbox session ended: {minutes} minutes",
            metadata={
                "usage_id": str(record.id),
                "sandbox_id": record.sandbox_id,
                "project_id": record.project_id,
                "duration_minutes": minutes,
            },
        )
        sandbox_sessions_open.dec()
        return charge

    async def track_sandbox_usage(self, params: SandboxUsageCreate) -> UsageCharge:
        """Meter a sandbox session that is already over, in one call."""
        minutes, cost = sandbox_cost(params.end_time - params.start_time)
        record = SandboxUsage(
            user_id=params.user_id,
            project_id=params.project_id,
            sandbox_id=params.sandbox_id,
            start_time=params.start_time,
            end_time=params.end_time,
            duration_minutes=minutes,
        )
        return await self._record_and_charge(
            record,
            resource="sandbox",
            type=TransactionType.SANDBOX_USAGE,
            cost=cost,
            description=f"Sandbox usage: {minutes} minutes",
            metadata={"sandbox_id": params.sandbox_id, "project_id": params.project_id, "duration_minutes": minutes},
        )

    async def track_storage_usage(self, params: StorageUsageCreate) -> UsageCharge:
        """Meter a storage snapshot for a period."""
        cost = storage_cost(params.storage_type, params.size_gb, params.operations)
        record = StorageUsage(
            user_id=params.user_id,
            project_id=params.project_id,
            storage_type=params.storage_type,
            size_gb=params.size_gb,
            operations=params.operations,
            period_start=params.period_start,
            period_end=params.period_end,
        )
        return await self._record_and_charge(
            record,
            resource="storage",
            type=TransactionType.STORAGE_USAGE,
            cost=cost,
            description=f"Storage usage ({params.storage_type}): {params.size_gb} GB",
            metadata={
                "project_id": params.project_id,
                "storage_type": params.storage_type,
                "size_gb": str(params.size_gb),
                "operations": params.operations,
            },
        )

    async def track_deployment_usage(self, params: DeploymentUsageCreate) -> UsageCharge:
        """Meter one deployment at the flat per-deploy rate."""
        record = DeploymentUsage(
            user_id=params.user_id,
            project_id=params.project_id,
            platform=params.platform,
            deployment_id=params.deployment_id,
            build_duration_minutes=params.build_duration_minutes,
        )
        return await self._record_and_charge(
            record,
            resource="deployment",
            type=TransactionType.DEPLOYMENT,
            cost=deployment_cost(),
            description=f"Deployment to {params.platform}",
            metadata={
                "project_id": params.project_id,
                "platform": params.platform,
                "deployment_id": params.deployment_id,
                "build_duration_minutes": params.build_duration_minutes,
            },
        )

    async def track_database_usage(self, params: DatabaseUsageCreate) -> UsageCharge:
        """Meter managed database compute hours, storage or egress."""
        cost = database_cost(params.usage_kind, params.quantity)
        record = DatabaseUsage(
            user_id=params.user_id,
            project_id=params.project_id,
            usage_kind=params.usage_kind,
            quantity=params.quantity,
            period_start=params.period_start,
            period_end=params.period_end,
        )
        unit = "hours" if params.usage_kind == "compute" else "GB"
        return await self._record_and_charge(
            record,
            resource="database",
            type=TransactionType.DATABASE_USAGE,
            cost=cost,
            description=f"Database {params.usage_kind}: {params.quantity} {unit}",
            metadata={
                "project_id": params.project_id,
                "usage_kind": params.usage_kind,
                "quantity": str(params.quantity),
            },
        )

    async def track_ai_usage(self, params: AIUsageCreate) -> AIUsageCharge:
        """
        Meter an AI call.

        Credits (one per TOKENS_PER_CREDIT tokens, rounded up) are drawn from
        the subscription allowance first, under a lock on the subscription row.
        The share of the cost not covered by credits is debited from balance.

        Args:
            params: Model and token counts

        Returns:
            AIUsageCharge with credits consumed and the balance share
        """
        await self._ensure_user(params.user_id)
        price = await self.model_registry.get_pricing(params.model_id)
        cost = ai_cost(price, params.input_tokens, params.output_tokens)
        credits_needed = credits_for_tokens(params.input_tokens + params.output_tokens)

        credits_consumed = await self._consume_credits(params.user_id, credits_needed)
        if credits_needed:
            balance_share = quantize_money(cost * (credits_needed - credits_consumed) / credits_needed)
        else:
            balance_share = cost

        record = AIUsage(
            user_id=params.user_id,
            project_id=params.project_id,
            model_id=params.model_id,
            input_tokens=params.input_tokens,
            output_tokens=params.output_tokens,
            credits_consumed=credits_consumed,
            endpoint=params.endpoint,
        )
        charge = await self._record_and_charge(
            record,
            resource="ai",
            type=TransactionType.AI_USAGE,
            cost=cost,
            debit_amount=balance_share,
            description=f"AI usage: {params.model_id}",
            metadata={
                "model_id": params.model_id,
                "input_tokens": params.input_tokens,
                "output_tokens": params.output_tokens,
                "credits_consumed": credits_consumed,
                "project_id": params.project_id,
            },
        )
        if credits_consumed:
            ai_credits_consumed_total.inc(credits_consumed)

        return AIUsageCharge(
            **charge.model_dump(),
            credits_consumed=credits_consumed,
            balance_charged_usd=balance_share,
        )

    async def close_stale_sessions(
        self,
        max_age_minutes: int | None = None,
        now: datetime | None = None,
    ) -> BatchResult:
        """
        Force-close sandbox sessions left open longer than max_age_minutes.

        Each session is charged up to its cutoff (start + max age) and committed
        on its own, so one failure does not stop the sweep.

        Returns:
            BatchResult with processed count and per-session errors
        """
        now = now or datetime.utcnow()
        if max_age_minutes is None:
            max_age_minutes = settings.stale_session_max_minutes
        max_age = timedelta(minutes=max_age_minutes)
        result = await self.db.execute(
            select(SandboxUsage.id, SandboxUsage.start_time).where(
                SandboxUsage.end_time.is_(None),
                SandboxUsage.start_time < now - max_age,
            )
        )
        stale = result.all()

        summary = BatchResult()
        for session_id, start_time in stale:
            try:
                await run_in_transaction(self.db, self.end_sandbox_session, session_id, start_time + max_age)
                summary.processed += 1
                logger.warning("stale_sandbox_session_closed", session_id=str(session_id))
            except Exception as e:
                logger.exception("stale_sandbox_session_close_failed", session_id=str(session_id))
                summary.record_error(session_id, e)

        return summary

    async def get_usage_breakdown(self, user_id: UUID, since: datetime) -> UsageBreakdown:
        """
        Sum provider cost and event count per resource class since a date.

        Args:
            user_id: User UUID
            since: Start of the period (inclusive)

        Returns:
            UsageBreakdown with one item per resource class
        """
        sources = (
            ("sandbox", SandboxUsage),
            ("storage", StorageUsage),
            ("deployment", DeploymentUsage),
            ("database", DatabaseUsage),
            ("ai", AIUsage),
        )
        items = []
        for resource, model in sources:
            result = await self.db.execute(
                select(func.coalesce(func.sum(model.provider_cost_usd), 0), func.count(model.id)).where(
                    model.user_id == user_id,
                    model.created_at >= since,
                )
            )
            total, count = result.one()
            items.append(UsageBreakdownItem(resource=resource, total_cost_usd=quantize_money(str(total)), count=count))

        return UsageBreakdown(
            user_id=user_id,
            since=since,
            items=items,
            total_cost_usd=quantize_money(sum((i.total_cost_usd for i in items), Decimal("0"))),
        )

    async def _ensure_user(self, user_id: UUID) -> None:
        result = await self.db.execute(select(User.id).where(User.id == user_id))
        if result.scalar_one_or_none() is None:
            raise NotFoundError(f"User {user_id} not found")

    async def _consume_credits(self, user_id: UUID, credits_needed: int) -> int:
        """Draw up to credits_needed from the subscription allowance; return how many were drawn."""
        if credits_needed <= 0:
            return 0

        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status.in_(ALLOWANCE_STATUSES))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            return 0

        plan = await self.db.get(Plan, subscription.plan_id)
        remaining = max(plan.monthly_credits - subscription.monthly_credits_used, 0)
        consumed = min(remaining, credits_needed)
        if consumed:
            subscription.monthly_credits_used += consumed
        return consumed

    async def _record_and_charge(
        self,
        record: Any,
        resource: str,
        type: TransactionType,
        cost: Decimal,
        description: str,
        metadata: dict[str, Any],
        debit_amount: Decimal | None = None,
    ) -> UsageCharge:
        self.db.add(record)
        await self.db.flush()
        metadata = {"usage_id": str(record.id), **metadata}
        return await self._charge(record, resource, type, cost, description, metadata, debit_amount)

    async def _charge(
        self,
        record: Any,
        resource: str,
        type: TransactionType,
        cost: Decimal,
        description: str,
        metadata: dict[str, Any],
        debit_amount: Decimal | None = None,
    ) -> UsageCharge:
        """Store the cost on the record and debit the ledger when there is something to debit."""
        record.provider_cost_usd = cost
        debit_amount = cost if debit_amount is None else debit_amount

        entry = None
        if debit_amount > 0:
            entry = await self.ledger.debit(record.user_id, debit_amount, type, description, metadata)
            record.balance_transaction_id = entry.transaction_id
        await self.db.flush()

        usage_events_total.labels(resource=resource).inc()
        usage_cost_usd_total.labels(resource=resource).inc(float(cost))
        logger.info(
            "usage_metered",
            resource=resource,
            usage_id=str(record.id),
            user_id=str(record.user_id),
            provider_cost_usd=str(cost),
            debited=str(debit_amount) if entry else "0",
        )

        return UsageCharge(
            id=record.id,
            provider_cost_usd=cost,
            balance_after=entry.balance_after if entry else None,
            transaction_id=entry.transaction_id if entry else None,
        )

    async def _existing_charge(self, record: SandboxUsage) -> UsageCharge:
        balance_after = None
        if record.balance_transaction_id is not None:
            transaction = await self.db.get(BalanceTransaction, record.balance_transaction_id)
            balance_after = transaction.balance_after if transaction else None
        return UsageCharge(
            id=record.id,
            provider_cost_usd=quantize_money(record.provider_cost_usd),
            balance_after=balance_after,
            transaction_id=record.balance_transaction_id,
        )
