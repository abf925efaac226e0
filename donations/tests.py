import json
import threading
import uuid
from datetime import datetime, timedelta
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured
from django.core.management import CommandError, call_command
from django.db import DatabaseError, OperationalError
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from donations.activity import ActivityLog
from donations.aggregates import Aggregates
from donations.clock import Clock
from donations.exceptions import (
    Cancelled,
    DuplicateExternalPaymentId,
    Forbidden,
    InvalidArgument,
    NotFound,
    StoreFault,
    translate_errors,
)
from donations.health import PlatformHealthReader, achievement_rate, health_signal
from donations.milestones import MilestoneObserver
from donations.models import Activity, Donation, PlatformHealth, Project
from donations.serializers import rfc3339
from donations.services import DonationService, SettlementService
from donations.store import DonationPatch, DonationStore


class FixedClock(Clock):
    """Clock pinned to a given instant; month_start() comes from the base class."""

    def __init__(self, at):
        self.at = at

    def now(self):
        return self.at

    def advance(self, **kwargs):
        self.at += timedelta(**kwargs)


def local(*args):
    return timezone.make_aware(datetime(*args))


def make_project(target=10_000, **kwargs):
    kwargs.setdefault("name", "Givers")
    return Project.objects.create(monthly_target=target, **kwargs)


def token_donation(project, token, amount, **kwargs):
    return Donation(project=project, donor_type=Donation.DONOR_TOKEN, donor_id=token, amount=amount, **kwargs)


def user_donation(project, user_id, amount, **kwargs):
    return Donation(project=project, donor_type=Donation.DONOR_USER, donor_id=str(user_id), amount=amount, **kwargs)


class DonationStoreTests(TestCase):
    def setUp(self):
        self.clock = FixedClock(local(2026, 3, 10, 12, 0))
        self.store = DonationStore(clock=self.clock)
        self.project = make_project()

    def test_create_stores_empty_optionals_as_null(self):
        d = self.store.create(token_donation(self.project, "tok-1", 1000, message="", external_payment_id=""))
        d.refresh_from_db()
        self.assertIsNone(d.message)
        self.assertIsNone(d.external_payment_id)
        self.assertIsNone(d.external_subscription_id)
        self.assertEqual(d.created_at, self.clock.now())
        self.assertEqual(d.updated_at, self.clock.now())

    def test_duplicate_external_payment_id_does_not_mutate(self):
        self.store.create(token_donation(self.project, "tok-1", 1000, external_payment_id="pi_1"))
        with self.assertRaises(DuplicateExternalPaymentId):
            self.store.create(token_donation(self.project, "tok-2", 9999, external_payment_id="pi_1"))
        self.assertEqual(Donation.objects.count(), 1)
        self.assertEqual(Donation.objects.get().amount, 1000)

    def test_missing_payment_ids_are_not_duplicates(self):
        self.store.create(token_donation(self.project, "tok-1", 1000))
        self.store.create(token_donation(self.project, "tok-1", 1000))
        self.assertEqual(Donation.objects.count(), 2)

    def test_create_rejects_invalid_donations(self):
        bad = [
            token_donation(self.project, "tok-1", 0),
            token_donation(self.project, "", 100),
            token_donation(self.project, "tok-1", 100, currency="yen!"),
            token_donation(self.project, "tok-1", 100, external_subscription_id="sub_1"),
            Donation(project=self.project, donor_type="robot", donor_id="x", amount=100),
        ]
        for donation in bad:
            with self.assertRaises(InvalidArgument):
                self.store.create(donation)
        self.assertEqual(Donation.objects.count(), 0)

    def test_migrate_token_happy_path(self):
        d1 = self.store.create(token_donation(self.project, "tok-7", 1000))
        self.clock.advance(minutes=1)
        d2 = self.store.create(token_donation(self.project, "tok-7", 500))

        migrated = self.store.migrate_token("tok-7", "user-42")

        self.assertEqual(migrated, 2)
        listed = self.store.list_by_user("user-42", 10, 0)
        self.assertEqual([d.pk for d in listed], [d2.pk, d1.pk])
        self.assertFalse(Donation.objects.filter(donor_type=Donation.DONOR_TOKEN, donor_id="tok-7").exists())

    def test_migrate_token_is_idempotent(self):
        self.store.create(token_donation(self.project, "tok-7", 1000))
        self.store.migrate_token("tok-7", "user-42")
        self.clock.advance(minutes=5)

        self.assertEqual(self.store.migrate_token("tok-7", "user-42"), 0)
        self.assertEqual(self.store.migrate_token("tok-7", "someone-else"), 0)
        d = Donation.objects.get()
        self.assertEqual(d.donor_id, "user-42")
        self.assertEqual(d.updated_at, local(2026, 3, 10, 12, 0))

    def test_migrate_token_leaves_other_tokens_alone(self):
        self.store.create(token_donation(self.project, "tok-7", 1000))
        other = self.store.create(token_donation(self.project, "tok-8", 1000))
        self.store.migrate_token("tok-7", "user-42")
        other.refresh_from_db()
        self.assertEqual(other.donor_type, Donation.DONOR_TOKEN)

    def test_migrate_token_requires_token(self):
        with self.assertRaises(InvalidArgument):
            self.store.migrate_token("", "user-42")

    def test_list_by_user_pages(self):
        for i in range(5):
            self.store.create(user_donation(self.project, 42, 100 + i))
            self.clock.advance(minutes=1)
        page = self.store.list_by_user(42, 2, 1)
        self.assertEqual([d.amount for d in page], [103, 102])

    def test_get_by_id_not_found(self):
        with self.assertRaises(NotFound):
            self.store.get_by_id(uuid.uuid4())
        with self.assertRaises(NotFound):
            self.store.get_by_id("not-a-uuid")

    def test_patch_updates_fields_and_timestamp(self):
        d = self.store.create(user_donation(self.project, 1, 1000, is_recurring=True))
        self.clock.advance(days=1)
        self.store.patch(d.pk, DonationPatch(amount=2000, paused=True, next_billing_message="see you"))
        d.refresh_from_db()
        self.assertEqual(d.amount, 2000)
        self.assertTrue(d.paused)
        self.assertEqual(d.next_billing_message, "see you")
        self.assertEqual(d.updated_at, local(2026, 3, 11, 12, 0))

        self.store.patch(d.pk, DonationPatch(next_billing_message=""))
        d.refresh_from_db()
        self.assertIsNone(d.next_billing_message)

    def test_empty_patch_is_a_noop(self):
        self.store.patch(uuid.uuid4(), DonationPatch())

    def test_patch_missing_or_invalid(self):
        with self.assertRaises(NotFound):
            self.store.patch(uuid.uuid4(), DonationPatch(paused=True))
        d = self.store.create(user_donation(self.project, 1, 1000))
        with self.assertRaises(InvalidArgument):
            self.store.patch(d.pk, DonationPatch(amount=0))

    def test_delete(self):
        d = self.store.create(user_donation(self.project, 1, 1000))
        self.store.delete(d.pk)
        self.assertFalse(Donation.objects.exists())
        with self.assertRaises(NotFound):
            self.store.delete(d.pk)

    def test_delete_by_external_subscription_id_is_idempotent(self):
        self.store.create(user_donation(self.project, 1, 1000, is_recurring=True, external_subscription_id="sub_1"))
        self.assertEqual(self.store.delete_by_external_subscription_id("sub_1"), 1)
        self.assertEqual(self.store.delete_by_external_subscription_id("sub_1"), 0)

    def test_cancelled_handle_stops_before_writing(self):
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(Cancelled):
            self.store.create(token_donation(self.project, "tok-1", 1000), cancel=cancel)
        with self.assertRaises(Cancelled):
            self.store.migrate_token("tok-1", "user-1", cancel=cancel)
        self.assertFalse(Donation.objects.exists())


class ActivityLogTests(TestCase):
    def setUp(self):
        self.clock = FixedClock(local(2026, 3, 10, 12, 0))
        self.log = ActivityLog(clock=self.clock)
        self.project = make_project(name="Alpha")
        self.other = make_project(name="Beta")

    def test_insert_validates_kind_shape(self):
        user = get_user_model().objects.create_user(username="ada")
        with self.assertRaises(InvalidArgument):
            self.log.insert(Activity.KIND_MILESTONE, self.project.pk)
        with self.assertRaises(InvalidArgument):
            self.log.insert(Activity.KIND_MILESTONE, self.project.pk, actor_id=user.pk, rate=50)
        with self.assertRaises(InvalidArgument):
            self.log.insert(Activity.KIND_DONATION, self.project.pk)
        with self.assertRaises(InvalidArgument):
            self.log.insert("party", self.project.pk)
        self.assertFalse(Activity.objects.exists())

    def test_feed_is_newest_first_with_ties_by_id(self):
        a = self.log.insert(Activity.KIND_PROJECT_CREATED, self.project.pk)
        self.clock.advance(minutes=1)
        b = self.log.insert(Activity.KIND_DONATION, self.other.pk, amount=500)
        c = self.log.insert(Activity.KIND_DONATION, self.project.pk, amount=700)

        feed = self.log.list_global(10)

        tied = sorted([b.pk, c.pk], reverse=True)
        self.assertEqual([x.pk for x in feed], tied + [a.pk])
        self.assertEqual([x.pk for x in self.log.list_global(1)], tied[:1])

    def test_list_by_project(self):
        self.log.insert(Activity.KIND_DONATION, self.project.pk, amount=1)
        self.log.insert(Activity.KIND_DONATION, self.other.pk, amount=2)
        feed = self.log.list_by_project(self.other.pk, 10)
        self.assertEqual([a.amount for a in feed], [2])
        self.assertEqual(feed[0].project_name, "Beta")

    def test_limit_must_be_positive(self):
        for limit in (0, -1, "5"):
            with self.assertRaises(InvalidArgument):
                self.log.list_global(limit)

    def test_actor_display_names(self):
        User = get_user_model()
        named = User.objects.create_user(username="ada", first_name="Ada", last_name="Lovelace")
        unnamed = User.objects.create_user(username="nobody")
        self.log.insert(Activity.KIND_DONATION, self.project.pk, actor_id=named.pk, amount=1)
        self.log.insert(Activity.KIND_DONATION, self.project.pk, actor_id=unnamed.pk, amount=2)
        self.log.insert(Activity.KIND_DONATION, self.project.pk, amount=3)

        names = {a.amount: a.actor_name for a in self.log.list_global(10)}
        self.assertEqual(names, {1: "Ada Lovelace", 2: "anonymous", 3: None})

        with override_settings(GIVERS_ANONYMOUS_DISPLAY_NAME="匿名"):
            names = {a.amount: a.actor_name for a in self.log.list_global(10)}
        self.assertEqual(names[2], "匿名")

    def test_milestone_window_is_half_open_at_month_start(self):
        start = self.clock.month_start()
        self.clock.at = start
        self.log.insert(Activity.KIND_MILESTONE, self.project.pk, rate=50)
        self.clock.at = start - timedelta(microseconds=1)
        self.log.insert(Activity.KIND_MILESTONE, self.project.pk, rate=100)

        self.clock.at = local(2026, 3, 20, 9, 0)
        self.assertTrue(self.log.exists_milestone_this_month(self.project.pk, 50))
        self.assertFalse(self.log.exists_milestone_this_month(self.project.pk, 100))
        self.assertFalse(self.log.exists_milestone_this_month(self.other.pk, 50))


class AggregatesTests(TestCase):
    def setUp(self):
        self.clock = FixedClock(local(2026, 3, 10, 12, 0))
        self.store = DonationStore(clock=self.clock)
        self.aggregates = Aggregates(clock=self.clock)

    def test_monthly_target(self):
        self.assertEqual(self.aggregates.monthly_target(make_project(target=None).pk), 0)
        self.assertEqual(self.aggregates.monthly_target(make_project(target=5000).pk), 5000)
        with self.assertRaises(NotFound):
            self.aggregates.monthly_target(uuid.uuid4())

    def test_current_month_sum_ignores_previous_months(self):
        project = make_project()
        self.assertEqual(self.aggregates.current_month_sum(project.pk), 0)

        self.clock.at = local(2026, 2, 28, 23, 59)
        self.store.create(token_donation(project, "tok", 4000))
        self.clock.at = local(2026, 3, 1, 0, 0)
        self.store.create(token_donation(project, "tok", 300))
        self.store.create(token_donation(make_project(), "tok", 999))
        self.clock.at = local(2026, 3, 10, 12, 0)

        self.assertEqual(self.aggregates.current_month_sum(project.pk), 300)

    def test_monthly_sums(self):
        project = make_project()
        for at, amount in [((2026, 1, 5), 100), ((2026, 3, 2), 200), ((2026, 3, 9), 50), ((2025, 1, 1), 7)]:
            self.clock.at = local(*at, 10, 0)
            self.store.create(token_donation(project, "tok", amount))
        self.clock.at = local(2026, 3, 10, 12, 0)

        self.assertEqual(
            self.aggregates.monthly_sums(project.pk),
            [{"month": "2026-01", "amount": 100}, {"month": "2026-03", "amount": 250}],
        )

    def test_months_follow_platform_timezone_not_active_one(self):
        project = make_project()
        # 2026-03-31 15:30 UTC
        self.clock.at = local(2026, 4, 1, 0, 30)
        self.store.create(token_donation(project, "tok", 800))
        april = local(2026, 4, 1, 0, 0)

        with timezone.override("UTC"):
            self.assertEqual(self.clock.month_start(), april)
            self.assertEqual(self.aggregates.current_month_sum(project.pk), 800)
            self.assertEqual(self.aggregates.monthly_sums(project.pk), [{"month": "2026-04", "amount": 800}])


class MilestoneObserverTests(TestCase):
    def setUp(self):
        self.clock = FixedClock(local(2026, 3, 10, 12, 0))
        self.store = DonationStore(clock=self.clock)
        self.log = ActivityLog(clock=self.clock)
        self.observer = MilestoneObserver(Aggregates(clock=self.clock), self.log, thresholds=[100, 50])
        self.project = make_project(target=10_000)

    def milestones(self):
        return sorted(
            Activity.objects.filter(kind=Activity.KIND_MILESTONE, project=self.project).values_list("rate", flat=True)
        )

    def donate(self, amount):
        return self.store.create(token_donation(self.project, "tok", amount))

    def test_half_target_emits_fifty_once(self):
        self.donate(5000)
        self.observer.notify_donation(self.project.pk)
        self.assertEqual(self.milestones(), [50])
        self.observer.notify_donation(self.project.pk)
        self.assertEqual(self.milestones(), [50])

    def test_full_target_emits_both_in_one_call(self):
        self.donate(10_000)
        self.observer.notify_donation(self.project.pk)
        self.assertEqual(self.milestones(), [50, 100])
        m = Activity.objects.filter(kind=Activity.KIND_MILESTONE).first()
        self.assertIsNone(m.actor_id)
        self.assertIsNone(m.amount)

    def test_zero_target_is_skipped(self):
        self.project.monthly_target = 0
        self.project.save()
        self.donate(50_000)
        self.observer.notify_donation(self.project.pk)
        self.assertEqual(self.milestones(), [])

    def test_below_threshold_emits_nothing(self):
        self.donate(4999)
        self.observer.notify_donation(self.project.pk)
        self.assertEqual(self.milestones(), [])

    def test_at_most_one_per_threshold_per_month(self):
        for _ in range(4):
            self.donate(3000)
            self.observer.notify_donation(self.project.pk)
        self.assertEqual(self.milestones(), [50, 100])

    def test_milestone_survives_refund(self):
        d = self.donate(6000)
        self.observer.notify_donation(self.project.pk)
        self.store.delete(d.pk)
        self.donate(100)
        self.observer.notify_donation(self.project.pk)
        self.assertEqual(self.milestones(), [50])

    def test_new_month_starts_fresh(self):
        self.clock.at = local(2026, 3, 31, 23, 59)
        self.donate(5000)
        self.observer.notify_donation(self.project.pk)

        self.clock.at = local(2026, 4, 1, 0, 1)
        self.observer.notify_donation(self.project.pk)
        self.assertEqual(self.milestones(), [50])

        self.donate(5000)
        self.observer.notify_donation(self.project.pk)
        self.assertEqual(self.milestones(), [50, 50])

    def test_unknown_project_is_logged_not_raised(self):
        with self.assertLogs("donations.milestones", level="WARNING"):
            self.observer.notify_donation(uuid.uuid4())

    def test_empty_project_id_is_structural(self):
        with self.assertRaises(InvalidArgument):
            self.observer.notify_donation("")

    def test_cancelled_check_is_swallowed(self):
        self.donate(10_000)
        cancel = threading.Event()
        cancel.set()
        self.observer.notify_donation(self.project.pk, cancel=cancel)
        self.assertEqual(self.milestones(), [])


class MilestoneObserverIsolationTests(SimpleTestCase):
    def make(self, total, target=10_000, thresholds=(100, 50)):
        aggregates = mock.Mock()
        aggregates.monthly_target.return_value = target
        aggregates.current_month_sum.return_value = total
        activity = mock.Mock()
        activity.exists_milestone_this_month.return_value = False
        return MilestoneObserver(aggregates, activity, thresholds=thresholds), aggregates, activity

    def test_failing_exists_check_does_not_suppress_lower_threshold(self):
        observer, _, activity = self.make(10_000)
        activity.exists_milestone_this_month.side_effect = [StoreFault("activity.exists"), False]
        with self.assertLogs("donations.milestones", level="WARNING") as logs:
            observer.notify_donation("p1")
        activity.insert.assert_called_once_with(Activity.KIND_MILESTONE, "p1", rate=50, cancel=None)
        self.assertIn("threshold=100", logs.output[0])

    def test_failing_insert_does_not_stop_the_walk(self):
        observer, _, activity = self.make(10_000)
        activity.insert.side_effect = [StoreFault("activity.insert"), None]
        with self.assertLogs("donations.milestones", level="WARNING"):
            observer.notify_donation("p1")
        self.assertEqual([c.kwargs["rate"] for c in activity.insert.call_args_list], [100, 50])

    def test_failing_sum_returns_quietly(self):
        observer, aggregates, activity = self.make(0)
        aggregates.current_month_sum.side_effect = StoreFault("aggregates.current_month_sum")
        with self.assertLogs("donations.milestones", level="WARNING"):
            observer.notify_donation("p1")
        activity.exists_milestone_this_month.assert_not_called()

    def test_unexpected_errors_are_swallowed(self):
        observer, aggregates, activity = self.make(0)
        aggregates.monthly_target.side_effect = RuntimeError("boom")
        with self.assertLogs("donations.milestones", level="WARNING"):
            self.assertIsNone(observer.notify_donation("p1"))

    def test_negative_sum_counts_as_zero(self):
        observer, _, activity = self.make(-500)
        observer.notify_donation("p1")
        activity.insert.assert_not_called()

    def test_rate_can_exceed_one_hundred(self):
        observer, _, activity = self.make(15_000, thresholds=(150, 100, 50))
        observer.notify_donation("p1")
        self.assertEqual([c.kwargs["rate"] for c in activity.insert.call_args_list], [150, 100, 50])

    def test_already_emitted_threshold_is_skipped(self):
        observer, _, activity = self.make(10_000)
        activity.exists_milestone_this_month.side_effect = lambda project_id, rate, cancel=None: rate == 100
        observer.notify_donation("p1")
        activity.insert.assert_called_once_with(Activity.KIND_MILESTONE, "p1", rate=50, cancel=None)

    def test_thresholds_must_not_increase(self):
        with self.assertRaises(ImproperlyConfigured):
            MilestoneObserver(mock.Mock(), mock.Mock(), thresholds=[50, 100])
        with self.assertRaises(ImproperlyConfigured):
            MilestoneObserver(mock.Mock(), mock.Mock(), thresholds=[])

    @override_settings(GIVERS_MILESTONE_THRESHOLDS=[75, 25])
    def test_thresholds_come_from_settings(self):
        self.assertEqual(MilestoneObserver(mock.Mock(), mock.Mock()).thresholds, (75, 25))


class PlatformHealthTests(TestCase):
    def test_signal_table(self):
        expected = {0: "red", 29: "red", 30: "yellow", 59: "yellow", 60: "green", 150: "green"}
        for current, signal in expected.items():
            h = PlatformHealth(monthly_cost=100, current_monthly=current, warning_threshold=60, critical_threshold=30)
            self.assertEqual(h.signal(), signal, current)

    def test_rate(self):
        self.assertEqual(achievement_rate(999, 0), 0)
        self.assertEqual(achievement_rate(1, 3), 33)
        self.assertEqual(achievement_rate(250, 100), 250)

    def test_signal_is_monotonic_in_rate(self):
        rank = {"red": 0, "yellow": 1, "green": 2}
        for warn, crit in [(60, 30), (50, 50), (100, 0), (0, 0)]:
            seen = [rank[health_signal(achievement_rate(c, 100), warn, crit)] for c in range(0, 200)]
            self.assertEqual(seen, sorted(seen))

    def test_reader_returns_seeded_row_and_recomputes(self):
        reader = PlatformHealthReader()
        PlatformHealth.objects.filter(pk=1).update(monthly_cost=1000, current_monthly=200)
        h = reader.get()
        self.assertEqual((h.rate(), h.signal()), (20, "red"))
        h.current_monthly = 700
        self.assertEqual((h.rate(), h.signal()), (70, "green"))

    def test_reader_not_found(self):
        PlatformHealth.objects.all().delete()
        with self.assertRaises(NotFound):
            PlatformHealthReader().get()


class ErrorTranslationTests(SimpleTestCase):
    def test_database_error_becomes_store_fault(self):
        with self.assertLogs("donations.exceptions", level="ERROR") as logs:
            with self.assertRaises(StoreFault) as ctx:
                with translate_errors("donation.create"):
                    raise DatabaseError("disk full")
        self.assertIn(ctx.exception.correlation_id, logs.output[0])

    def test_cancelled_query_becomes_cancelled(self):
        class QueryCanceled(Exception):
            sqlstate = "57014"

        with self.assertRaises(Cancelled):
            with translate_errors("donation.list_by_user"):
                try:
                    raise QueryCanceled()
                except QueryCanceled as exc:
                    raise OperationalError("canceling statement") from exc

    def test_domain_errors_pass_through(self):
        with self.assertRaises(NotFound):
            with translate_errors("donation.get_by_id"):
                raise NotFound("x")

    def test_rfc3339_is_utc(self):
        jst = timezone.get_fixed_timezone(540)
        self.assertEqual(rfc3339(datetime(2026, 3, 1, 9, 0, tzinfo=jst)), "2026-03-01T00:00:00Z")


class SettlementServiceTests(TestCase):
    def setUp(self):
        self.project = make_project(target=10_000)
        self.service = SettlementService()
        self.user = get_user_model().objects.create_user(username="ada", first_name="Ada")

    def test_settled_donation_records_activity_and_milestones(self):
        created = self.service.on_donation_settled(
            self.project.pk, user_donation(self.project, self.user.pk, 10_000, message="go!", external_payment_id="pi_1")
        )
        self.assertTrue(created)
        self.assertCountEqual(
            Activity.objects.values_list("kind", "rate"),
            [("donation", None), ("milestone", 100), ("milestone", 50)],
        )
        donation_activity = Activity.objects.get(kind=Activity.KIND_DONATION)
        self.assertEqual(donation_activity.actor_id, self.user.pk)
        self.assertEqual(donation_activity.message, "go!")

    def test_anonymous_donation_activity_has_no_actor(self):
        self.service.on_donation_settled(self.project.pk, token_donation(self.project, "tok-1", 100))
        self.assertIsNone(Activity.objects.get(kind=Activity.KIND_DONATION).actor_id)

    def test_processor_retry_is_a_noop(self):
        self.service.on_donation_settled(self.project.pk, token_donation(self.project, "tok-1", 100, external_payment_id="pi_1"))
        again = self.service.on_donation_settled(
            self.project.pk, token_donation(self.project, "tok-1", 100, external_payment_id="pi_1")
        )
        self.assertFalse(again)
        self.assertEqual(Donation.objects.count(), 1)
        self.assertEqual(Activity.objects.count(), 1)

    @override_settings(GIVERS_MILESTONES_ASYNC=True)
    @mock.patch("donations.tasks.notify_milestones_task.delay")
    def test_async_milestones_are_queued(self, delay):
        self.service.on_donation_settled(self.project.pk, token_donation(self.project, "tok-1", 10_000))
        delay.assert_called_once_with(str(self.project.pk))
        self.assertFalse(Activity.objects.filter(kind=Activity.KIND_MILESTONE).exists())

    @mock.patch("donations.services.build_milestone_observer")
    def test_observer_shares_the_activity_log(self, build):
        service = SettlementService()
        build.assert_called_once_with(activity_log=service.activity_log)
        self.assertIs(service.observer, build.return_value)

    def test_subscription_cancelled(self):
        self.service.on_donation_settled(
            self.project.pk, user_donation(self.project, self.user.pk, 100, is_recurring=True, external_subscription_id="sub_1")
        )
        self.assertEqual(self.service.on_subscription_cancelled("sub_1"), 1)
        self.assertEqual(self.service.on_subscription_cancelled("sub_1"), 0)

    def test_invoice_paid_publishes_and_clears_next_billing_message(self):
        self.service.on_donation_settled(
            self.project.pk, user_donation(self.project, self.user.pk, 300, is_recurring=True, external_subscription_id="sub_1")
        )
        d = Donation.objects.get()
        DonationStore().patch(d.pk, DonationPatch(next_billing_message="thanks again"))

        self.service.on_invoice_paid("sub_1")
        self.service.on_invoice_paid("sub_1")
        self.service.on_invoice_paid("sub_unknown")

        messages = list(Activity.objects.filter(kind=Activity.KIND_DONATION).values_list("message", flat=True))
        self.assertCountEqual(messages, [None, "thanks again"])
        d.refresh_from_db()
        self.assertIsNone(d.next_billing_message)


class DonationServiceTests(TestCase):
    def setUp(self):
        self.project = make_project()
        self.subscriptions = mock.Mock()
        self.service = DonationService(subscriptions=self.subscriptions)
        self.donation = DonationStore().create(
            user_donation(self.project, 42, 1000, is_recurring=True, external_subscription_id="sub_1")
        )

    def test_owner_can_pause_and_resume(self):
        self.service.patch(self.donation.pk, 42, DonationPatch(paused=True))
        self.subscriptions.pause_subscription.assert_called_once_with("sub_1")
        self.service.patch(self.donation.pk, 42, DonationPatch(paused=False))
        self.subscriptions.resume_subscription.assert_called_once_with("sub_1")
        self.donation.refresh_from_db()
        self.assertFalse(self.donation.paused)

    def test_other_users_are_forbidden(self):
        with self.assertRaises(Forbidden):
            self.service.patch(self.donation.pk, 7, DonationPatch(amount=1))
        with self.assertRaises(Forbidden):
            self.service.delete(self.donation.pk, 7)
        self.subscriptions.cancel_subscription.assert_not_called()

    def test_invalid_patch_leaves_processor_alone(self):
        with self.assertRaises(InvalidArgument):
            self.service.patch(self.donation.pk, 42, DonationPatch(paused=True, amount=0))
        self.subscriptions.pause_subscription.assert_not_called()
        self.donation.refresh_from_db()
        self.assertFalse(self.donation.paused)
        self.assertEqual(self.donation.amount, 1000)

    def test_delete_cancels_subscription_first(self):
        self.service.delete(self.donation.pk, 42)
        self.subscriptions.cancel_subscription.assert_called_once_with("sub_1")
        self.assertFalse(Donation.objects.exists())

    def test_migrate_token_result(self):
        DonationStore().create(token_donation(self.project, "tok-7", 1000))
        first = self.service.migrate_token("tok-7", 42)
        second = self.service.migrate_token("tok-7", 42)
        self.assertEqual((first.migrated_count, first.already_migrated), (1, False))
        self.assertEqual((second.migrated_count, second.already_migrated), (0, True))
        self.assertEqual(len(self.service.list_by_user(42, 10, 0)), 2)


@override_settings(SECURE_SSL_REDIRECT=False)
class ApiTests(TestCase):
    def setUp(self):
        self.project = make_project(name="Alpha")
        self.user = get_user_model().objects.create_user(username="ada", first_name="Ada")

    def test_platform_health(self):
        PlatformHealth.objects.filter(pk=1).update(monthly_cost=100, current_monthly=45)
        resp = self.client.get(reverse("donations:platform-health"))
        self.assertEqual(resp.status_code, 200)
        data = json.loads(resp.content)
        self.assertEqual(data["rate"], 45)
        self.assertEqual(data["signal"], "yellow")
        self.assertTrue(data["updated_at"].endswith("Z"))

    def test_activity_feeds(self):
        log = ActivityLog()
        log.insert(Activity.KIND_DONATION, self.project.pk, actor_id=self.user.pk, amount=500)
        log.insert(Activity.KIND_MILESTONE, self.project.pk, rate=50)

        resp = self.client.get(reverse("donations:activity"), {"limit": "10"})
        self.assertEqual(resp.status_code, 200)
        items = json.loads(resp.content)["activities"]
        self.assertEqual(len(items), 2)
        self.assertEqual({i["kind"] for i in items}, {"donation", "milestone"})
        self.assertEqual({i["actor_name"] for i in items}, {"Ada", None})

        url = reverse("donations:project-activity", kwargs={"project_id": make_project().pk})
        self.assertEqual(json.loads(self.client.get(url).content)["activities"], [])

    def test_invalid_limit(self):
        resp = self.client.get(reverse("donations:activity"), {"limit": "zero"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(json.loads(resp.content)["error"], "invalid_argument")

    def test_my_donations_requires_login(self):
        self.assertEqual(self.client.get(reverse("donations:my-donations")).status_code, 401)

        DonationStore().create(user_donation(self.project, self.user.pk, 700, external_payment_id="pi_1"))
        self.client.force_login(self.user)
        resp = self.client.get(reverse("donations:my-donations"))
        self.assertEqual(resp.status_code, 200)
        donations = json.loads(resp.content)["donations"]
        self.assertEqual([d["amount"] for d in donations], [700])
        self.assertNotIn("external_payment_id", donations[0])

    def test_migrate_from_token_cookie(self):
        DonationStore().create(token_donation(self.project, "tok-7", 1000))
        url = reverse("donations:migrate-from-token")

        self.assertEqual(self.client.post(url).status_code, 401)

        self.client.force_login(self.user)
        self.assertEqual(self.client.post(url).status_code, 400)

        self.client.cookies["donor_token"] = "tok-7"
        data = json.loads(self.client.post(url).content)
        self.assertEqual(data, {"migrated_count": 1, "already_migrated": False})

        resp = self.client.post(url, data=json.dumps({"donor_token": "tok-7"}), content_type="application/json")
        self.assertEqual(json.loads(resp.content), {"migrated_count": 0, "already_migrated": True})

    def test_patch_my_donation(self):
        d = DonationStore().create(user_donation(self.project, self.user.pk, 700))
        url = reverse("donations:my-donation-detail", kwargs={"donation_id": d.pk})
        body = json.dumps({"amount": 900, "paused": True})

        self.assertEqual(self.client.patch(url, data=body, content_type="application/json").status_code, 401)

        self.client.force_login(self.user)
        resp = self.client.patch(url, data=body, content_type="application/json")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(json.loads(resp.content), {"ok": True})
        d.refresh_from_db()
        self.assertEqual((d.amount, d.paused), (900, True))

        resp = self.client.patch(url, data=json.dumps({"amount": 0}), content_type="application/json")
        self.assertEqual(resp.status_code, 400)
        resp = self.client.patch(url, data="{nope", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_donation_detail_checks_ownership(self):
        other = get_user_model().objects.create_user(username="bob")
        d = DonationStore().create(user_donation(self.project, other.pk, 700))
        url = reverse("donations:my-donation-detail", kwargs={"donation_id": d.pk})
        self.client.force_login(self.user)

        resp = self.client.delete(url)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(json.loads(resp.content)["error"], "forbidden")
        resp = self.client.patch(url, data=json.dumps({"paused": True}), content_type="application/json")
        self.assertEqual(resp.status_code, 403)
        self.assertTrue(Donation.objects.filter(pk=d.pk).exists())

        missing = reverse("donations:my-donation-detail", kwargs={"donation_id": uuid.uuid4()})
        self.assertEqual(self.client.delete(missing).status_code, 404)

    def test_delete_my_donation(self):
        d = DonationStore().create(user_donation(self.project, self.user.pk, 700))
        url = reverse("donations:my-donation-detail", kwargs={"donation_id": d.pk})
        self.assertEqual(self.client.delete(url).status_code, 401)

        self.client.force_login(self.user)
        resp = self.client.delete(url)
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(Donation.objects.exists())

    def test_project_chart(self):
        DonationStore().create(token_donation(self.project, "tok", 1200))
        url = reverse("donations:project-chart", kwargs={"project_id": self.project.pk})

        resp = self.client.get(url)
        self.assertEqual(resp.status_code, 200)
        chart = json.loads(resp.content)["chart"]
        self.assertEqual(len(chart), 1)
        self.assertEqual(chart[0]["actual_amount"], 1200)
        self.assertEqual(chart[0]["target_amount"], 10_000)
        self.assertEqual(chart[0]["month"], timezone.localtime(timezone.now()).strftime("%Y-%m"))

        missing = reverse("donations:project-chart", kwargs={"project_id": uuid.uuid4()})
        self.assertEqual(self.client.get(missing).status_code, 404)


class CeleryTaskTests(SimpleTestCase):
    @mock.patch("donations.tasks.call_command")
    def test_sweep_task_calls_management_command(self, call_cmd):
        from donations.tasks import sweep_milestones_task

        sweep_milestones_task.run(dry_run=True)

        call_cmd.assert_called_once_with("notify_milestones", all_active=True, dry_run=True)

    @mock.patch("donations.tasks.build_milestone_observer")
    def test_notify_task_runs_observer(self, build):
        from donations.tasks import notify_milestones_task

        notify_milestones_task.run("p1")

        build.return_value.notify_donation.assert_called_once_with("p1")


class NotifyMilestonesCommandTests(TestCase):
    def setUp(self):
        self.project = make_project(target=1000)
        DonationStore().create(token_donation(self.project, "tok", 600))

    def test_all_active(self):
        make_project(target=1000, status=Project.STATUS_FROZEN)
        out = StringIO()
        call_command("notify_milestones", all_active=True, stdout=out)
        self.assertIn("checked=1", out.getvalue())
        self.assertEqual(list(Activity.objects.values_list("rate", flat=True)), [50])

    def test_dry_run_writes_nothing(self):
        out = StringIO()
        call_command("notify_milestones", str(self.project.pk), dry_run=True, stdout=out)
        self.assertIn("600/1000 = 60%", out.getvalue())
        self.assertFalse(Activity.objects.exists())

    def test_requires_targets(self):
        with self.assertRaises(CommandError):
            call_command("notify_milestones", stdout=StringIO())
