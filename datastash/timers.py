"""
Cron timers for recipe schedules.

Timers live in an APScheduler scheduler; the registry tracks which one is
armed for each recipe so a schedule change can replace it cleanly.
"""

import itertools
import logging
import threading
from typing import Callable, Dict, Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger

from datastash.errors import ScheduleInvalid

logger = logging.getLogger(__name__)


def parse_schedule(expr: str, timezone=None) -> CronTrigger:
    """
    Parse a five-field crontab expression.

    Args:
        expr: Cron expression (e.g., "0 2 * * *")
        timezone: Timezone for the trigger (scheduler default if None)

    Raises:
        ScheduleInvalid: If the expression can't be parsed
    """
    try:
        return CronTrigger.from_crontab(expr, timezone=timezone)
    except (ValueError, TypeError, AttributeError) as e:
        raise ScheduleInvalid(f"Invalid cron expression '{expr}': {e}") from e


class TimerRegistry:
    """
    Armed cron timers, one per recipe.

    Every arming gets a fresh generation token. A firing whose token is no
    longer current (the timer was disarmed or replaced while the job was
    already due) does nothing.
    """

    def __init__(self, scheduler: BaseScheduler, timezone=None):
        self.scheduler = scheduler
        self.timezone = timezone
        self._tokens: Dict[str, int] = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    @staticmethod
    def job_id(recipe_id: str) -> str:
        return f"recipe:{recipe_id}"

    def _fire(self, recipe_id: str, token: int, callback: Callable[[], None]):
        with self._lock:
            current = self._tokens.get(recipe_id)
        if current != token:
            logger.debug(f"Ignoring stale timer for '{recipe_id}'")
            return
        logger.info(f"Schedule fired for '{recipe_id}'")
        callback()

    def arm(self, recipe_id: str, expr: str, callback: Callable[[], None]) -> str:
        """
        Arm a cron timer that calls callback on every firing.

        Any timer already armed for recipe_id is replaced.

        Raises:
            ScheduleInvalid: If expr can't be parsed; existing timers are left alone
        """
        trigger = parse_schedule(expr, timezone=self.timezone)
        with self._lock:
            token = next(self._counter)
            self._tokens[recipe_id] = token
        self.scheduler.add_job(
            self._fire,
            trigger=trigger,
            args=[recipe_id, token, callback],
            id=self.job_id(recipe_id),
            name=f"schedule {recipe_id}",
            replace_existing=True
        )
        logger.info(f"Armed schedule '{expr}' for '{recipe_id}'")
        return self.job_id(recipe_id)

    def disarm(self, recipe_id: str) -> bool:
        """
        Cancel the timer armed for recipe_id.

        Returns:
            True if a timer was armed
        """
        with self._lock:
            was_armed = self._tokens.pop(recipe_id, None) is not None
        try:
            self.scheduler.remove_job(self.job_id(recipe_id))
        except JobLookupError:
            pass
        if was_armed:
            logger.info(f"Disarmed schedule for '{recipe_id}'")
        return was_armed

    def rearm(self, recipe_id: str, expr: Optional[str], callback: Callable[[], None]):
        """
        Replace the timer for recipe_id with one for expr.

        An empty expr just disarms. An invalid expr raises before anything
        is cancelled.
        """
        if expr:
            parse_schedule(expr, timezone=self.timezone)
            self.arm(recipe_id, expr, callback)
        else:
            self.disarm(recipe_id)

    def is_armed(self, recipe_id: str) -> bool:
        with self._lock:
            return recipe_id in self._tokens
