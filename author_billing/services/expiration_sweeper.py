"""Background sweep of ended billing periods.

Each pass drives every subscription whose period has ended through the
engine's renew (auto-renewal on) or expire transition, then abandons
purchases stuck waiting for payment confirmation. A second schedule
reconciles the authors' subscriber counts against the subscription rows.
Several sweepers may run at once; the engine's transitions make the loser
of any race a no-op.
"""

import threading
from datetime import datetime, timedelta
from typing import List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from author_billing.config import Config, get_config
from author_billing.logging_config import get_logger
from author_billing.models import CounterDiscrepancy, SubscriptionStatus, SweepReport
from author_billing.services.subscription_engine import (
    SubscriptionConflictError,
    SubscriptionEngine,
    get_subscription_engine,
)

logger = get_logger(__name__)

SWEEP_JOB_ID = "subscription_sweep"
RECONCILE_JOB_ID = "subscriber_count_reconcile"


class ExpirationSweeper:
    """Runs sweep and reconciliation passes, on demand or on a schedule."""

    def __init__(self, engine: Optional[SubscriptionEngine] = None, config: Optional[Config] = None):
        self.engine = engine or get_subscription_engine()
        self.store = self.engine.store
        self._settings = (config or get_config()).sweeper_settings
        self._scheduler: Optional[BackgroundScheduler] = None
        self._lock = threading.Lock()

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Process every subscription due at `now` (defaults to the engine clock).

        A failing subscription is logged and recorded in the report's errors;
        the rest of the pass continues.
        """
        now = now or self.engine.now()
        report = SweepReport()
        due = self.store.get_due(now)

        logger.info("sweep_started", now=now.isoformat(), due=len(due))

        for subscription in due:
            subscription_id = subscription.subscription_id
            try:
                if subscription.auto_renewal:
                    result = self.engine.renew_subscription(subscription_id)
                    if result.payment is None:
                        report.skipped.append(subscription_id)
                    elif result.subscription.status == SubscriptionStatus.ACTIVE and result.payment.succeeded:
                        report.renewed.append(subscription_id)
                    else:
                        report.renewal_failed.append(subscription_id)
                else:
                    expired = self.engine.expire_subscription(subscription_id)
                    if expired.status == SubscriptionStatus.EXPIRED:
                        report.expired.append(subscription_id)
                    else:
                        report.skipped.append(subscription_id)
            except SubscriptionConflictError as e:
                # Another worker moved it first
                report.skipped.append(subscription_id)
                logger.info("sweep_transition_skipped", subscription_id=subscription_id, reason=str(e))
            except Exception as e:
                report.errors.append(subscription_id)
                logger.error(
                    "sweep_transition_failed",
                    subscription_id=subscription_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

        report.abandoned_pending = self._abandon_stale_pending(now)

        logger.info(
            "sweep_completed",
            renewed=len(report.renewed),
            renewal_failed=len(report.renewal_failed),
            expired=len(report.expired),
            skipped=len(report.skipped),
            errors=len(report.errors),
            abandoned_pending=len(report.abandoned_pending),
        )
        return report

    def _abandon_stale_pending(self, now: datetime) -> List[str]:
        cutoff = now - timedelta(minutes=self._settings.pending_timeout_minutes)
        abandoned = []
        for subscription in self.store.get_stale_pending(cutoff):
            try:
                if self.engine.abandon_pending(subscription.subscription_id) is not None:
                    abandoned.append(subscription.subscription_id)
            except Exception as e:
                logger.error(
                    "abandon_pending_failed",
                    subscription_id=subscription.subscription_id,
                    error=str(e),
                    exc_info=True,
                )
        return abandoned

    def reconcile(self) -> List[CounterDiscrepancy]:
        """Recompute subscriber counts from the subscription rows."""
        discrepancies = self.store.reconcile_subscriber_counts()
        logger.info("reconcile_completed", corrected=len(discrepancies))
        return discrepancies

    def _run_sweep_job(self) -> None:
        try:
            self.sweep()
        except Exception as e:
            logger.error("sweep_job_failed", error=str(e), exc_info=True)

    def _run_reconcile_job(self) -> None:
        try:
            self.reconcile()
        except Exception as e:
            logger.error("reconcile_job_failed", error=str(e), exc_info=True)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Schedule sweep and reconciliation on a background scheduler."""
        with self._lock:
            if self.running:
                return
            scheduler = BackgroundScheduler(timezone="UTC")
            scheduler.add_job(
                self._run_sweep_job,
                "interval",
                seconds=self._settings.interval_seconds,
                id=SWEEP_JOB_ID,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            scheduler.add_job(
                self._run_reconcile_job,
                "interval",
                seconds=self._settings.reconcile_interval_seconds,
                id=RECONCILE_JOB_ID,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            scheduler.start()
            self._scheduler = scheduler
            logger.info(
                "sweeper_started",
                interval_seconds=self._settings.interval_seconds,
                reconcile_interval_seconds=self._settings.reconcile_interval_seconds,
            )

    def shutdown(self) -> None:
        """Stop the background scheduler."""
        with self._lock:
            if self._scheduler is not None:
                if self._scheduler.running:
                    self._scheduler.shutdown(wait=False)
                self._scheduler = None
                logger.info("sweeper_stopped")


_sweeper_instance: Optional[ExpirationSweeper] = None
_sweeper_lock = threading.Lock()


def get_expiration_sweeper() -> ExpirationSweeper:
    """Get global sweeper instance (singleton)."""
    global _sweeper_instance
    if _sweeper_instance is None:
        with _sweeper_lock:
            if _sweeper_instance is None:
                _sweeper_instance = ExpirationSweeper()
    return _sweeper_instance


def reset_expiration_sweeper() -> None:
    """Stop and drop the global sweeper."""
    global _sweeper_instance
    with _sweeper_lock:
        if _sweeper_instance is not None:
            _sweeper_instance.shutdown()
        _sweeper_instance = None
