from .exceptions import NotFound, translate_errors
from .models import HealthSignal, PlatformHealth


def achievement_rate(current_monthly, monthly_cost):
    """Whole percent of the monthly cost covered; may exceed 100."""
    if monthly_cost == 0:
        return 0
    return current_monthly * 100 // monthly_cost


def health_signal(rate, warning_threshold, critical_threshold):
    # warning is the "doing fine" floor, not an alarm ceiling
    if rate >= warning_threshold:
        return HealthSignal.GREEN
    if rate >= critical_threshold:
        return HealthSignal.YELLOW
    return HealthSignal.RED


class PlatformHealthReader:
    def get(self, cancel=None):
        with translate_errors("platform_health.get", cancel):
            try:
                return PlatformHealth.objects.get(pk=PlatformHealth.SINGLETON_ID)
            except PlatformHealth.DoesNotExist:
                raise NotFound("platform health record")
