from django.core.management.base import BaseCommand, CommandError
from django.utils.timezone import now

from donations.milestones import achievement_rate
from donations.models import Project
from donations.services import build_milestone_observer


class Command(BaseCommand):
    help = "Run the milestone check for the given projects (or every active one) for the current month."

    def add_arguments(self, parser):
        parser.add_argument("project_ids", nargs="*", help="Project UUIDs to check.")
        parser.add_argument("--all-active", action="store_true", help="Check every project with status=active.")
        parser.add_argument("--dry-run", action="store_true", help="Report rates without writing activities.")

    def handle(self, *args, **opts):
        project_ids = list(opts["project_ids"])
        if opts["all_active"]:
            project_ids += [
                str(pk)
                for pk in Project.objects.filter(status=Project.STATUS_ACTIVE, monthly_target__gt=0)
                .order_by("created_at")
                .values_list("pk", flat=True)
            ]
        if not project_ids:
            raise CommandError("Pass project ids or --all-active.")

        observer = build_milestone_observer()
        aggregates = observer.aggregates
        self.stdout.write(self.style.HTTP_INFO(f"[{now().isoformat()}] Checking {len(project_ids)} project(s)…"))

        checked = 0
        for project_id in dict.fromkeys(project_ids):
            if opts["dry_run"]:
                try:
                    target = aggregates.monthly_target(project_id)
                    total = aggregates.current_month_sum(project_id)
                except Exception as exc:
                    self.stdout.write(self.style.WARNING(f"{project_id}: skipped ({exc})"))
                    continue
                rate = achievement_rate(total, target)
                self.stdout.write(f"[DRY] {project_id}: {total}/{target} = {rate}%")
            else:
                observer.notify_donation(project_id)
            checked += 1

        self.stdout.write(self.style.SUCCESS(f"Done. checked={checked} dry_run={opts['dry_run']}"))
