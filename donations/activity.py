import logging

from django.db import transaction

from .clock import default_clock
from .exceptions import InvalidArgument, translate_errors
from .models import Activity

logger = logging.getLogger(__name__)

_KINDS = {kind for kind, _ in Activity.KIND_CHOICES}


def _check_limit(limit):
    if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
        raise InvalidArgument(f"limit must be a positive integer, got {limit!r}")


class ActivityLog:
    """
    Append-only feed of project events.

    Rows are never updated; readers get them newest first with the project
    and actor joined in.
    """

    def __init__(self, clock=None):
        self.clock = clock or default_clock

    def insert(self, kind, project_id, actor_id=None, amount=None, rate=None, message=None, cancel=None):
        if kind not in _KINDS:
            raise InvalidArgument(f"unknown activity kind {kind!r}")
        if not project_id:
            raise InvalidArgument("project id is required")
        if kind == Activity.KIND_MILESTONE and (rate is None or actor_id is not None):
            raise InvalidArgument("milestones carry a rate and no actor")
        if kind == Activity.KIND_DONATION and amount is None:
            raise InvalidArgument("donation activity needs an amount")

        activity = Activity(
            kind=kind,
            project_id=project_id,
            actor_id=actor_id,
            amount=amount,
            rate=rate,
            message=message or None,
            created_at=self.clock.now(),
        )
        with translate_errors("activity.insert", cancel):
            with transaction.atomic():
                activity.save(force_insert=True)
        logger.debug("activity %s recorded for project %s", kind, project_id)
        return activity

    def exists_milestone_this_month(self, project_id, rate, cancel=None):
        with translate_errors("activity.exists_milestone_this_month", cancel):
            return Activity.objects.filter(
                kind=Activity.KIND_MILESTONE,
                project_id=project_id,
                rate=rate,
                created_at__gte=self.clock.month_start(),
            ).exists()

    def list_global(self, limit, cancel=None):
        _check_limit(limit)
        with translate_errors("activity.list_global", cancel):
            return list(self._feed()[:limit])

    def list_by_project(self, project_id, limit, cancel=None):
        _check_limit(limit)
        with translate_errors("activity.list_by_project", cancel):
            return list(self._feed().filter(project_id=project_id)[:limit])

    def _feed(self):
        return Activity.objects.select_related("project", "actor").order_by("-created_at", "-id")
