from django.utils import timezone


class Clock:
    """
    Source of "now" for every component.

    Month bucketing is always derived from now() in the platform timezone
    (settings.TIME_ZONE), so a double that only overrides now() keeps the
    same month boundaries as the real clock.
    """

    def now(self):
        return timezone.now()

    def month_start(self):
        local = timezone.localtime(self.now(), timezone.get_default_timezone())
        return local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


default_clock = Clock()
