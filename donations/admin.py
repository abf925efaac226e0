from django.contrib import admin
from .models import Activity, Donation, PlatformHealth, Project

@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ("name", "status", "monthly_target", "owner", "created_at")
    list_filter = ("status",)
    search_fields = ("name",)
    ordering = ("-created_at",)

@admin.register(Donation)
class DonationAdmin(admin.ModelAdmin):
    list_display = ("amount", "currency", "project", "donor_type", "donor_id", "is_recurring", "paused", "created_at")
    list_select_related = ("project",)
    list_filter = ("donor_type", "is_recurring", "paused")
    search_fields = ("donor_id", "external_payment_id", "external_subscription_id")
    date_hierarchy = "created_at"
    ordering = ("-created_at",)

@admin.register(Activity)
class ActivityAdmin(admin.ModelAdmin):
    list_display = ("kind", "project", "actor", "amount", "rate", "created_at")
    list_select_related = ("project", "actor")
    list_filter = ("kind",)
    date_hierarchy = "created_at"
    ordering = ("-created_at",)

    # the feed is append-only
    def has_change_permission(self, request, obj=None):
        return False

@admin.register(PlatformHealth)
class PlatformHealthAdmin(admin.ModelAdmin):
    list_display = ("monthly_cost", "current_monthly", "warning_threshold", "critical_threshold", "updated_at")
