import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction

from .clock import default_clock
from .exceptions import DuplicateExternalPaymentId, InvalidArgument, NotFound, translate_errors
from .models import Donation

logger = logging.getLogger(__name__)

_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")


@dataclass
class DonationPatch:
    """Sparse update. None means "leave as is"; an empty message clears it."""

    amount: Optional[int] = None
    paused: Optional[bool] = None
    next_billing_message: Optional[str] = None

    def is_empty(self) -> bool:
        return self.amount is None and self.paused is None and self.next_billing_message is None

    def validate(self) -> None:
        if self.amount is not None and self.amount <= 0:
            raise InvalidArgument("amount must be positive")


class DonationStore:
    """Sole owner of donation rows."""

    def __init__(self, clock=None):
        self.clock = clock or default_clock

    def create(self, donation: Donation, cancel=None) -> Donation:
        self._validate_new(donation)
        for field in ("message", "external_payment_id", "external_subscription_id", "next_billing_message"):
            if not getattr(donation, field):
                setattr(donation, field, None)
        donation.currency = donation.currency.lower()
        donation.created_at = donation.updated_at = self.clock.now()

        with translate_errors("donation.create", cancel):
            try:
                with transaction.atomic():
                    donation.save(force_insert=True)
            except IntegrityError:
                payment_id = donation.external_payment_id
                if payment_id and Donation.objects.filter(external_payment_id=payment_id).exists():
                    logger.info("donation for payment %s already recorded", payment_id)
                    raise DuplicateExternalPaymentId(payment_id)
                raise
        return donation

    def list_by_user(self, user_id, limit: int, offset: int, cancel=None) -> List[Donation]:
        with translate_errors("donation.list_by_user", cancel):
            qs = Donation.objects.filter(donor_type=Donation.DONOR_USER, donor_id=str(user_id))
            return list(qs.order_by("-created_at", "-id")[offset:offset + limit])

    def get_by_id(self, donation_id, cancel=None) -> Donation:
        with translate_errors("donation.get_by_id", cancel):
            try:
                return Donation.objects.get(pk=donation_id)
            except (Donation.DoesNotExist, ValidationError, ValueError):
                raise NotFound(f"donation {donation_id}")

    def get_by_external_subscription_id(self, subscription_id, cancel=None) -> Donation:
        if not subscription_id:
            raise NotFound("subscription id is empty")
        with translate_errors("donation.get_by_external_subscription_id", cancel):
            donation = (
                Donation.objects.filter(external_subscription_id=subscription_id)
                .order_by("-created_at")
                .first()
            )
        if donation is None:
            raise NotFound(f"subscription {subscription_id}")
        return donation

    def patch(self, donation_id, patch: DonationPatch, cancel=None) -> None:
        patch.validate()
        if patch.is_empty():
            return
        fields = {}
        if patch.amount is not None:
            fields["amount"] = patch.amount
        if patch.paused is not None:
            fields["paused"] = patch.paused
        if patch.next_billing_message is not None:
            fields["next_billing_message"] = patch.next_billing_message or None
        fields["updated_at"] = self.clock.now()

        with translate_errors("donation.patch", cancel):
            try:
                updated = Donation.objects.filter(pk=donation_id).update(**fields)
            except (ValidationError, ValueError):
                updated = 0
        if not updated:
            raise NotFound(f"donation {donation_id}")

    def delete(self, donation_id, cancel=None) -> None:
        with translate_errors("donation.delete", cancel):
            try:
                deleted, _ = Donation.objects.filter(pk=donation_id).delete()
            except (ValidationError, ValueError):
                deleted = 0
        if not deleted:
            raise NotFound(f"donation {donation_id}")

    def delete_by_external_subscription_id(self, subscription_id, cancel=None) -> int:
        if not subscription_id:
            return 0
        with translate_errors("donation.delete_by_external_subscription_id", cancel):
            deleted, _ = Donation.objects.filter(external_subscription_id=subscription_id).delete()
        return deleted

    def migrate_token(self, token: str, user_id, cancel=None) -> int:
        """
        Promote every donation made under an anonymous donor token to user_id.

        A single UPDATE: either all matching rows move or none do. Returns the
        row count; 0 means the token was already migrated or never donated.
        """
        if not token:
            raise InvalidArgument("donor token is required")
        if user_id is None or str(user_id) == "":
            raise InvalidArgument("user id is required")
        with translate_errors("donation.migrate_token", cancel):
            with transaction.atomic():
                return Donation.objects.filter(donor_type=Donation.DONOR_TOKEN, donor_id=token).update(
                    donor_type=Donation.DONOR_USER,
                    donor_id=str(user_id),
                    updated_at=self.clock.now(),
                )

    def _validate_new(self, donation):
        if not donation.project_id:
            raise InvalidArgument("project id is required")
        if donation.amount is None or donation.amount <= 0:
            raise InvalidArgument("amount must be positive")
        if donation.donor_type not in (Donation.DONOR_TOKEN, Donation.DONOR_USER):
            raise InvalidArgument(f"unknown donor type {donation.donor_type!r}")
        if not donation.donor_id:
            raise InvalidArgument("donor id is required")
        if not donation.currency or not _CURRENCY_RE.match(donation.currency):
            raise InvalidArgument(f"invalid currency {donation.currency!r}")
        if donation.donor_type == Donation.DONOR_TOKEN and donation.external_subscription_id:
            raise InvalidArgument("anonymous donors cannot hold a subscription")
