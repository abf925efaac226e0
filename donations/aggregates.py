from django.core.exceptions import ValidationError
from django.db.models import Sum
from django.db.models.functions import TruncMonth
from django.utils import timezone

from .clock import default_clock
from .exceptions import NotFound, translate_errors
from .models import Donation, Project


class Aggregates:
    """Read-only counters the milestone observer works from."""

    def __init__(self, clock=None):
        self.clock = clock or default_clock

    def monthly_target(self, project_id, cancel=None):
        """Configured target in minor units; 0 means the project has no goal."""
        with translate_errors("aggregates.monthly_target", cancel):
            try:
                target = Project.objects.values_list("monthly_target", flat=True).get(pk=project_id)
            except (Project.DoesNotExist, ValidationError, ValueError):
                raise NotFound(f"project {project_id}")
        return target or 0

    def current_month_sum(self, project_id, cancel=None):
        with translate_errors("aggregates.current_month_sum", cancel):
            agg = Donation.objects.filter(
                project_id=project_id,
                created_at__gte=self.clock.month_start(),
            ).aggregate(s=Sum("amount"))
        return agg["s"] or 0

    def monthly_sums(self, project_id, months=12, cancel=None):
        """
        Totals per calendar month for the last `months` months, oldest first.

        Months without donations are omitted. Keys are "YYYY-MM" in the
        platform timezone.
        """
        start = self.clock.month_start()
        year, month = start.year, start.month - (months - 1)
        while month < 1:
            month += 12
            year -= 1
        start = start.replace(year=year, month=month)

        with translate_errors("aggregates.monthly_sums", cancel):
            rows = (
                Donation.objects.filter(project_id=project_id, created_at__gte=start)
                .annotate(month=TruncMonth("created_at", tzinfo=timezone.get_default_timezone()))
                .values("month")
                .annotate(total=Sum("amount"))
                .order_by("month")
            )
            return [{"month": row["month"].strftime("%Y-%m"), "amount": row["total"]} for row in rows]
