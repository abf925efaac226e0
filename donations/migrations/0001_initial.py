import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


def seed_platform_health(apps, schema_editor):
    PlatformHealth = apps.get_model("donations", "PlatformHealth")
    PlatformHealth.objects.get_or_create(pk=1)


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Project",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=200)),
                (
                    "status",
                    models.CharField(
                        choices=[("draft", "Draft"), ("active", "Active"), ("frozen", "Frozen"), ("deleted", "Deleted")],
                        default="active",
                        max_length=20,
                    ),
                ),
                ("monthly_target", models.PositiveIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "owner",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="projects",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="Donation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("donor_type", models.CharField(choices=[("token", "Anonymous token"), ("user", "User")], max_length=10)),
                ("donor_id", models.CharField(max_length=255)),
                ("amount", models.PositiveIntegerField()),
                ("currency", models.CharField(default="jpy", max_length=3)),
                ("message", models.TextField(blank=True, null=True)),
                ("is_recurring", models.BooleanField(default=False)),
                ("external_payment_id", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("external_subscription_id", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ("paused", models.BooleanField(default=False)),
                ("next_billing_message", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "project",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="donations",
                        to="donations.project",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["donor_type", "donor_id"], name="donation_donor_idx"),
                    models.Index(fields=["project", "created_at"], name="donation_project_month_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(amount__gt=0), name="donation_amount_positive"),
                    models.CheckConstraint(
                        condition=models.Q(donor_type="user") | models.Q(external_subscription_id__isnull=True),
                        name="donation_token_not_recurring",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Activity",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("donation", "Donation"),
                            ("project_created", "Project created"),
                            ("project_updated", "Project updated"),
                            ("milestone", "Milestone"),
                        ],
                        max_length=20,
                    ),
                ),
                ("amount", models.PositiveIntegerField(blank=True, null=True)),
                ("rate", models.PositiveIntegerField(blank=True, null=True)),
                ("message", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "project",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="activities",
                        to="donations.project",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "activities",
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["created_at"], name="activity_created_idx"),
                    models.Index(fields=["project", "kind", "rate", "created_at"], name="activity_milestone_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=~models.Q(kind="milestone") | models.Q(rate__isnull=False, actor__isnull=True),
                        name="activity_milestone_shape",
                    ),
                    models.CheckConstraint(
                        condition=~models.Q(kind="donation") | models.Q(amount__isnull=False),
                        name="activity_donation_amount",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PlatformHealth",
            fields=[
                ("id", models.PositiveSmallIntegerField(default=1, editable=False, primary_key=True, serialize=False)),
                ("monthly_cost", models.PositiveIntegerField(default=0)),
                ("current_monthly", models.PositiveIntegerField(default=0)),
                ("warning_threshold", models.PositiveIntegerField(default=60)),
                ("critical_threshold", models.PositiveIntegerField(default=30)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "verbose_name_plural": "platform health",
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(critical_threshold__lte=models.F("warning_threshold")),
                        name="platform_health_threshold_order",
                    ),
                ],
            },
        ),
        migrations.RunPython(seed_platform_health, migrations.RunPython.noop),
    ]
