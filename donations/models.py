import uuid

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone


class Project(models.Model):
    STATUS_DRAFT = "draft"
    STATUS_ACTIVE = "active"
    STATUS_FROZEN = "frozen"
    STATUS_DELETED = "deleted"
    STATUS_CHOICES = [
        (STATUS_DRAFT, "Draft"),
        (STATUS_ACTIVE, "Active"),
        (STATUS_FROZEN, "Frozen"),
        (STATUS_DELETED, "Deleted"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="projects"
    )
    name = models.CharField(max_length=200)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    # minor currency units per calendar month
    monthly_target = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    def __str__(self):
        return self.name


class Donation(models.Model):
    DONOR_TOKEN = "token"
    DONOR_USER = "user"
    DONOR_CHOICES = [
        (DONOR_TOKEN, "Anonymous token"),
        (DONOR_USER, "User"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name="donations")
    donor_type = models.CharField(max_length=10, choices=DONOR_CHOICES)
    # the token string, or str(user.pk)
    donor_id = models.CharField(max_length=255)
    amount = models.PositiveIntegerField()
    currency = models.CharField(max_length=3, default="jpy")
    message = models.TextField(null=True, blank=True)
    is_recurring = models.BooleanField(default=False)
    external_payment_id = models.CharField(max_length=255, null=True, blank=True, unique=True)
    external_subscription_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    paused = models.BooleanField(default=False)
    next_billing_message = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(fields=["donor_type", "donor_id"], name="donation_donor_idx"),
            models.Index(fields=["project", "created_at"], name="donation_project_month_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="donation_amount_positive"),
            models.CheckConstraint(
                condition=Q(donor_type="user") | Q(external_subscription_id__isnull=True),
                name="donation_token_not_recurring",
            ),
        ]

    def __str__(self):
        return f"{self.amount} {self.currency.upper()}"


class Activity(models.Model):
    KIND_DONATION = "donation"
    KIND_PROJECT_CREATED = "project_created"
    KIND_PROJECT_UPDATED = "project_updated"
    KIND_MILESTONE = "milestone"
    KIND_CHOICES = [
        (KIND_DONATION, "Donation"),
        (KIND_PROJECT_CREATED, "Project created"),
        (KIND_PROJECT_UPDATED, "Project updated"),
        (KIND_MILESTONE, "Milestone"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name="activities")
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    amount = models.PositiveIntegerField(null=True, blank=True)
    # integer percentage, milestones only
    rate = models.PositiveIntegerField(null=True, blank=True)
    message = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-created_at", "-id"]
        verbose_name_plural = "activities"
        indexes = [
            models.Index(fields=["created_at"], name="activity_created_idx"),
            models.Index(fields=["project", "kind", "rate", "created_at"], name="activity_milestone_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~Q(kind="milestone") | Q(rate__isnull=False, actor__isnull=True),
                name="activity_milestone_shape",
            ),
            models.CheckConstraint(
                condition=~Q(kind="donation") | Q(amount__isnull=False),
                name="activity_donation_amount",
            ),
        ]

    def __str__(self):
        return f"{self.kind} @ {self.project_id}"

    @property
    def project_name(self):
        return self.project.name

    @property
    def actor_name(self):
        """None for anonymous/system events, else the user's name or the placeholder."""
        if self.actor_id is None:
            return None
        return self.actor.get_full_name() or settings.GIVERS_ANONYMOUS_DISPLAY_NAME


class HealthSignal(models.TextChoices):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class PlatformHealth(models.Model):
    SINGLETON_ID = 1

    id = models.PositiveSmallIntegerField(primary_key=True, default=SINGLETON_ID, editable=False)
    monthly_cost = models.PositiveIntegerField(default=0)
    current_monthly = models.PositiveIntegerField(default=0)
    # percentages; at or above warning is green
    warning_threshold = models.PositiveIntegerField(default=60)
    critical_threshold = models.PositiveIntegerField(default=30)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        verbose_name_plural = "platform health"
        constraints = [
            models.CheckConstraint(
                condition=Q(critical_threshold__lte=models.F("warning_threshold")),
                name="platform_health_threshold_order",
            ),
        ]

    def __str__(self):
        return f"{self.rate()}% ({self.signal()})"

    def rate(self):
        from .health import achievement_rate

        return achievement_rate(self.current_monthly, self.monthly_cost)

    def signal(self):
        from .health import health_signal

        return health_signal(self.rate(), self.warning_threshold, self.critical_threshold)
