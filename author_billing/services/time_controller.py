"""Clock for the billing engine, with virtual time for testing.

Responsibilities:
- Supply the current UTC instant to the engine and sweeper
- Advance or set virtual time (never backwards)
- Run a sweep after time moves so due renewals and expirations are processed
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from author_billing.logging_config import get_logger

logger = get_logger(__name__)


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class TimeController:
    """Clock with an adjustable offset from real time.

    By default now() is real UTC time plus the offset. A frozen controller
    returns the same instant until time is advanced or set, which keeps
    tests deterministic.

    Args:
        frozen_at: freeze the clock at this instant
        sweeper: sweeper run after time moves; if missing, the global
            instance is used
    """

    def __init__(self, frozen_at: Optional[datetime] = None, sweeper=None) -> None:
        self._lock = threading.RLock()
        self._offset = timedelta(0)
        self._frozen_at = _as_utc(frozen_at) if frozen_at is not None else None
        self._sweeper = sweeper

        logger.info(
            "time_controller_initialized",
            frozen_at=self._frozen_at.isoformat() if self._frozen_at else None,
        )

    def now(self) -> datetime:
        """Current (virtual) UTC time."""
        with self._lock:
            if self._frozen_at is not None:
                return self._frozen_at
            return datetime.now(timezone.utc) + self._offset

    @property
    def offset(self) -> timedelta:
        with self._lock:
            if self._frozen_at is not None:
                return self._frozen_at - datetime.now(timezone.utc)
            return self._offset

    @property
    def is_frozen(self) -> bool:
        return self._frozen_at is not None

    def bind_sweeper(self, sweeper) -> None:
        """Use this sweeper after time moves instead of the global one."""
        self._sweeper = sweeper

    def _get_sweeper(self):
        if self._sweeper is not None:
            return self._sweeper
        from author_billing.services.expiration_sweeper import get_expiration_sweeper

        return get_expiration_sweeper()

    def _shift(self, delta: timedelta) -> None:
        if self._frozen_at is not None:
            self._frozen_at += delta
        else:
            self._offset += delta

    def advance_time(self, days: int = 0, hours: int = 0, minutes: int = 0, run_sweep: bool = True) -> dict:
        """Advance virtual time and process what became due.

        Args:
            days: number of days to advance
            hours: number of hours to advance
            minutes: number of minutes to advance
            run_sweep: run a sweep at the new time

        Returns:
            Dictionary with old_time, new_time, advanced_by and sweep
            (SweepReport or None)

        Raises:
            ValueError: if any value is negative
        """
        if days < 0 or hours < 0 or minutes < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed")

        delta = timedelta(days=days, hours=hours, minutes=minutes)
        with self._lock:
            old_time = self.now()
            self._shift(delta)
            new_time = self.now()

        logger.info(
            "time_advanced",
            old_time=old_time.isoformat(),
            new_time=new_time.isoformat(),
            days=days,
            hours=hours,
            minutes=minutes,
        )

        report = self._get_sweeper().sweep(new_time) if run_sweep and delta else None
        return {"old_time": old_time, "new_time": new_time, "advanced_by": delta, "sweep": report}

    def set_time(self, instant: datetime, run_sweep: bool = True) -> dict:
        """Move virtual time to a specific instant.

        Naive instants are taken as UTC.

        Raises:
            ValueError: If the instant is before the current virtual time
        """
        instant = _as_utc(instant)
        with self._lock:
            old_time = self.now()
            if instant < old_time:
                raise ValueError(
                    f"Cannot set time backwards, current: {old_time.isoformat()}, requested: {instant.isoformat()}"
                )
            self._shift(instant - old_time)
            new_time = self.now()

        logger.info("time_set", old_time=old_time.isoformat(), new_time=new_time.isoformat())

        report = self._get_sweeper().sweep(new_time) if run_sweep else None
        return {"old_time": old_time, "new_time": new_time, "sweep": report}

    def reset_time(self) -> dict:
        """Return to real time (clears the offset and unfreezes)."""
        with self._lock:
            old_time = self.now()
            self._offset = timedelta(0)
            self._frozen_at = None
            new_time = self.now()

        logger.info("time_reset", old_time=old_time.isoformat(), new_time=new_time.isoformat())
        return {"old_time": old_time, "new_time": new_time}


_time_controller_instance: Optional[TimeController] = None
_controller_lock = threading.Lock()


def get_time_controller() -> TimeController:
    global _time_controller_instance
    if _time_controller_instance is None:
        with _controller_lock:
            if _time_controller_instance is None:
                _time_controller_instance = TimeController()
    return _time_controller_instance


def reset_time_controller() -> None:
    global _time_controller_instance
    with _controller_lock:
        _time_controller_instance = TimeController()
