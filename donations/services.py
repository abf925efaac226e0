import logging
from dataclasses import dataclass

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError

from .activity import ActivityLog
from .aggregates import Aggregates
from .exceptions import DuplicateExternalPaymentId, Forbidden, InvalidArgument, NotFound
from .milestones import MilestoneObserver
from .models import Activity, Donation
from .store import DonationPatch, DonationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationResult:
    migrated_count: int
    already_migrated: bool


def build_milestone_observer(clock=None, activity_log=None):
    return MilestoneObserver(Aggregates(clock=clock), activity_log or ActivityLog(clock=clock))


class DonationService:
    """
    Donor-facing operations on a user's own donations.

    `subscriptions` is an optional payment-processor adapter with
    pause_subscription / resume_subscription / cancel_subscription; when it
    is None the processor is not called.
    """

    def __init__(self, store=None, subscriptions=None):
        self.store = store or DonationStore()
        self.subscriptions = subscriptions

    def list_by_user(self, user_id, limit, offset, cancel=None):
        if limit <= 0 or offset < 0:
            raise InvalidArgument("limit must be positive and offset non-negative")
        return self.store.list_by_user(user_id, limit, offset, cancel=cancel)

    def patch(self, donation_id, user_id, patch, cancel=None):
        patch.validate()
        donation = self._owned(donation_id, user_id, cancel)
        if patch.paused is not None and self._has_subscription(donation):
            if patch.paused:
                self.subscriptions.pause_subscription(donation.external_subscription_id)
            else:
                self.subscriptions.resume_subscription(donation.external_subscription_id)
        self.store.patch(donation_id, patch, cancel=cancel)

    def delete(self, donation_id, user_id, cancel=None):
        donation = self._owned(donation_id, user_id, cancel)
        if self._has_subscription(donation):
            self.subscriptions.cancel_subscription(donation.external_subscription_id)
        self.store.delete(donation_id, cancel=cancel)

    def migrate_token(self, token, user_id, cancel=None):
        count = self.store.migrate_token(token, user_id, cancel=cancel)
        if count:
            logger.info("migrated %d donation(s) to user %s", count, user_id)
        return MigrationResult(migrated_count=count, already_migrated=count == 0)

    def _owned(self, donation_id, user_id, cancel):
        donation = self.store.get_by_id(donation_id, cancel=cancel)
        if donation.donor_type != Donation.DONOR_USER or donation.donor_id != str(user_id):
            raise Forbidden(f"donation {donation_id}")
        return donation

    def _has_subscription(self, donation):
        return self.subscriptions is not None and donation.is_recurring and bool(donation.external_subscription_id)


class SettlementService:
    """Entry points for the payment-processor webhook handler."""

    def __init__(self, store=None, activity_log=None, observer=None):
        self.store = store or DonationStore()
        self.activity_log = activity_log or ActivityLog()
        self.observer = observer or build_milestone_observer(activity_log=self.activity_log)

    def on_donation_settled(self, project_id, donation, cancel=None):
        """
        Record a settled payment and run the milestone check.

        Returns False when the processor re-delivered a payment that is
        already stored; nothing else happens in that case.
        """
        if not project_id:
            raise InvalidArgument("project id is required")
        donation.project_id = project_id
        try:
            self.store.create(donation, cancel=cancel)
        except DuplicateExternalPaymentId:
            logger.info("settlement retry ignored for payment %s", donation.external_payment_id)
            return False

        self._record_donation(donation, donation.amount, donation.message, cancel)
        self._notify_milestones(project_id, cancel)
        return True

    def on_subscription_cancelled(self, subscription_id, cancel=None):
        return self.store.delete_by_external_subscription_id(subscription_id, cancel=cancel)

    def on_invoice_paid(self, subscription_id, cancel=None):
        """Publish and clear the donor's note for this billing cycle, if any."""
        if not subscription_id:
            return
        try:
            donation = self.store.get_by_external_subscription_id(subscription_id, cancel=cancel)
        except NotFound:
            return
        if not donation.next_billing_message:
            return
        self._record_donation(donation, donation.amount, donation.next_billing_message, cancel)
        self.store.patch(donation.pk, DonationPatch(next_billing_message=""), cancel=cancel)

    def _record_donation(self, donation, amount, message, cancel):
        try:
            self.activity_log.insert(
                Activity.KIND_DONATION,
                donation.project_id,
                actor_id=_actor_id(donation),
                amount=amount,
                message=message,
                cancel=cancel,
            )
        except Exception:
            logger.warning("donation activity not recorded for project %s", donation.project_id, exc_info=True)

    def _notify_milestones(self, project_id, cancel):
        if getattr(settings, "GIVERS_MILESTONES_ASYNC", False):
            from .tasks import notify_milestones_task

            try:
                notify_milestones_task.delay(str(project_id))
            except Exception:
                logger.warning("milestone task not queued for project %s", project_id, exc_info=True)
            return
        self.observer.notify_donation(project_id, cancel=cancel)


def _actor_id(donation):
    """The donor's user pk, or None for anonymous token donors and unknown users."""
    if donation.donor_type != Donation.DONOR_USER:
        return None
    try:
        return get_user_model().objects.filter(pk=donation.donor_id).values_list("pk", flat=True).first()
    except (ValidationError, ValueError):
        return None
