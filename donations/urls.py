from django.urls import path
from .views import (
    GlobalActivityView,
    MigrateTokenView,
    MyDonationDetailView,
    MyDonationsView,
    PlatformHealthView,
    ProjectActivityView,
    ProjectChartView,
)

app_name = "donations"

urlpatterns = [
    path("api/activity/", GlobalActivityView.as_view(), name="activity"),
    path("api/projects/<uuid:project_id>/activity/", ProjectActivityView.as_view(), name="project-activity"),
    path("api/projects/<uuid:project_id>/chart/", ProjectChartView.as_view(), name="project-chart"),
    path("api/platform/health/", PlatformHealthView.as_view(), name="platform-health"),
    path("api/me/donations/", MyDonationsView.as_view(), name="my-donations"),
    path("api/me/donations/<uuid:donation_id>/", MyDonationDetailView.as_view(), name="my-donation-detail"),
    path("api/me/migrate-from-token/", MigrateTokenView.as_view(), name="migrate-from-token"),
]
