"""arq worker configuration for the billing sweeps.

Usage:
    arq usage_billing.workers.scheduler.WorkerSettings
"""
from arq.connections import RedisSettings
from arq.cron import cron

from usage_billing.config import settings
from usage_billing.middleware.logging import setup_logging
from usage_billing.workers.grace_period import expire_grace_periods, send_grace_reminders
from usage_billing.workers.plan_changes import apply_pending_plan_changes
from usage_billing.workers.session_reaper import close_stale_sandbox_sessions
from usage_billing.workers.webhook_retry import retry_failed_webhooks


async def startup(ctx: dict) -> None:
    setup_logging()


class WorkerSettings:
    """
    Schedule:
    - Grace expiry: hourly at minute 5
    - Grace reminders: daily at 09:00 UTC
    - Pending plan changes: hourly at minute 0
    - Webhook retries: every 15 minutes
    - Stale session reaper: every 10 minutes
    """

    functions = [
        expire_grace_periods,
        send_grace_reminders,
        apply_pending_plan_changes,
        retry_failed_webhooks,
        close_stale_sandbox_sessions,
    ]

    cron_jobs = [
        cron(expire_grace_periods, minute={5}, timeout=600),
        cron(send_grace_reminders, hour={9}, minute={0}, timeout=600),
        cron(apply_pending_plan_changes, minute={0}, timeout=600),
        cron(retry_failed_webhooks, minute={0, 15, 30, 45}, timeout=300),
        cron(close_stale_sandbox_sessions, minute=set(range(0, 60, 10)), timeout=300),
    ]

    on_startup = startup
    redis_settings = RedisSettings.from_dsn(str(settings.arq_redis_url))
