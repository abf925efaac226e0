"""
Milestone observer.

Runs after every settled donation and appends a ``milestone`` activity the
first time, in a calendar month, that a project's month-to-date receipts
reach one of the configured percentages of its monthly target.

Emission is best effort. Nothing here may make a donation look failed, so
every failure below the structural check is logged and dropped.
"""
import logging

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .exceptions import Cancelled, InvalidArgument
from .models import Activity

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = (100, 50)


def achievement_rate(total, target):
    """Floor percentage of target reached; 0 for no target or a negative total."""
    if target <= 0 or total <= 0:
        return 0
    return total * 100 // target


def _validated(thresholds):
    thresholds = tuple(int(t) for t in thresholds)
    if not thresholds:
        raise ImproperlyConfigured("milestone thresholds must not be empty")
    if any(t <= 0 for t in thresholds):
        raise ImproperlyConfigured(f"milestone thresholds must be positive: {thresholds}")
    if any(a < b for a, b in zip(thresholds, thresholds[1:])):
        raise ImproperlyConfigured(f"milestone thresholds must be ordered high to low: {thresholds}")
    return thresholds


class MilestoneObserver:
    def __init__(self, aggregates, activity_log, thresholds=None):
        if thresholds is None:
            thresholds = getattr(settings, "GIVERS_MILESTONE_THRESHOLDS", DEFAULT_THRESHOLDS)
        self.aggregates = aggregates
        self.activity_log = activity_log
        self.thresholds = _validated(thresholds)

    def notify_donation(self, project_id, cancel=None):
        if not project_id:
            raise InvalidArgument("project id is required")
        try:
            self._check(project_id, cancel)
        except Cancelled:
            logger.info("milestone: check cancelled project_id=%s", project_id)
        except Exception:
            logger.warning("milestone: check aborted project_id=%s", project_id, exc_info=True)

    def _check(self, project_id, cancel):
        try:
            target = self.aggregates.monthly_target(project_id, cancel=cancel)
        except Cancelled:
            raise
        except Exception as exc:
            logger.warning("milestone: get monthly target failed project_id=%s error=%s", project_id, exc)
            return
        if target <= 0:
            return

        try:
            total = self.aggregates.current_month_sum(project_id, cancel=cancel)
        except Cancelled:
            raise
        except Exception as exc:
            logger.warning("milestone: get month sum failed project_id=%s error=%s", project_id, exc)
            return

        rate = achievement_rate(total, target)
        for threshold in self.thresholds:
            if rate < threshold:
                continue
            self._emit_once(project_id, threshold, cancel)

    def _emit_once(self, project_id, threshold, cancel):
        try:
            if self.activity_log.exists_milestone_this_month(project_id, threshold, cancel=cancel):
                return
        except Cancelled:
            raise
        except Exception as exc:
            logger.warning(
                "milestone: exists check failed project_id=%s threshold=%s error=%s", project_id, threshold, exc
            )
            return

        try:
            self.activity_log.insert(
                Activity.KIND_MILESTONE, project_id, rate=threshold, cancel=cancel
            )
        except Cancelled:
            raise
        except Exception as exc:
            logger.warning(
                "milestone: insert failed project_id=%s threshold=%s error=%s", project_id, threshold, exc
            )
        else:
            logger.info("milestone: project_id=%s reached %s%%", project_id, threshold)
