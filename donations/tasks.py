from celery import shared_task
from django.core.management import call_command

from .services import build_milestone_observer


@shared_task(name="donations.notify_milestones_task", ignore_result=True)
def notify_milestones_task(project_id):
    """Milestone check for one project, run on the worker after a settlement."""
    build_milestone_observer().notify_donation(project_id)


@shared_task(name="donations.sweep_milestones_task")
def sweep_milestones_task(dry_run=False):
    """
    Periodic catch-up over every active project.
    Kept thin so it's easy to test/patch.
    """
    return call_command("notify_milestones", all_active=True, dry_run=dry_run)
