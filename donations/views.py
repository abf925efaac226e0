import json

from django.conf import settings
from django.http import JsonResponse
from django.views import View

from .activity import ActivityLog
from .aggregates import Aggregates
from .exceptions import DonationsError, Forbidden, InvalidArgument, NotFound
from .health import PlatformHealthReader
from .serializers import activity_to_json, chart_to_json, donation_to_json, health_to_json
from .services import DonationService
from .store import DonationPatch

DEFAULT_LIMIT = 20
MAX_LIMIT = 100

_STATUS = {InvalidArgument: 400, Forbidden: 403, NotFound: 404}


def _int_param(request, name, default, minimum):
    raw = request.GET.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidArgument(f"invalid_{name}")
    if value < minimum:
        raise InvalidArgument(f"invalid_{name}")
    return value


def _limit(request):
    return min(_int_param(request, "limit", DEFAULT_LIMIT, 1), MAX_LIMIT)


def error_response(exc):
    """Map a domain error to the JSON error body; anything unknown is a 500."""
    status = _STATUS.get(type(exc), 500)
    body = {"error": exc.code}
    if status < 500:
        body["detail"] = str(exc)
    return JsonResponse(body, status=status)


class GlobalActivityView(View):
    http_method_names = ["get"]

    def get(self, request, *args, **kwargs):
        try:
            items = ActivityLog().list_global(_limit(request))
        except DonationsError as exc:
            return error_response(exc)
        return JsonResponse({"activities": [activity_to_json(a) for a in items]})


class ProjectActivityView(View):
    http_method_names = ["get"]

    def get(self, request, project_id, *args, **kwargs):
        try:
            items = ActivityLog().list_by_project(project_id, _limit(request))
        except DonationsError as exc:
            return error_response(exc)
        return JsonResponse({"activities": [activity_to_json(a) for a in items]})


class PlatformHealthView(View):
    http_method_names = ["get"]

    def get(self, request, *args, **kwargs):
        try:
            health = PlatformHealthReader().get()
        except DonationsError as exc:
            return error_response(exc)
        return JsonResponse(health_to_json(health))


class MyDonationsView(View):
    http_method_names = ["get"]

    def get(self, request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({"error": "unauthorized"}, status=401)
        try:
            limit = _limit(request)
            offset = _int_param(request, "offset", 0, 0)
            donations = DonationService().list_by_user(request.user.pk, limit, offset)
        except DonationsError as exc:
            return error_response(exc)
        return JsonResponse({"donations": [donation_to_json(d) for d in donations]})


class MigrateTokenView(View):
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({"error": "unauthorized"}, status=401)

        cookie_name = settings.GIVERS_DONOR_TOKEN_COOKIE
        token = request.COOKIES.get(cookie_name, "")
        if not token and request.body:
            try:
                payload = json.loads(request.body.decode("utf-8"))
            except ValueError:
                return JsonResponse({"error": "invalid_json"}, status=400)
            if isinstance(payload, dict) and isinstance(payload.get("donor_token"), str):
                token = payload["donor_token"]
        if not token:
            return JsonResponse({"error": "donor_token_required"}, status=400)

        try:
            result = DonationService().migrate_token(token, request.user.pk)
        except DonationsError as exc:
            return error_response(exc)

        resp = JsonResponse({
            "migrated_count": result.migrated_count,
            "already_migrated": result.already_migrated,
        })
        resp.delete_cookie(cookie_name)
        return resp


def _patch_from_body(request):
    try:
        payload = json.loads(request.body.decode("utf-8") or "{}")
    except ValueError:
        raise InvalidArgument("invalid_json")
    if not isinstance(payload, dict):
        raise InvalidArgument("invalid_json")

    amount = payload.get("amount")
    paused = payload.get("paused")
    message = payload.get("next_billing_message")
    if amount is not None and (not isinstance(amount, int) or isinstance(amount, bool)):
        raise InvalidArgument("invalid_amount")
    if paused is not None and not isinstance(paused, bool):
        raise InvalidArgument("invalid_paused")
    if message is not None and not isinstance(message, str):
        raise InvalidArgument("invalid_next_billing_message")
    return DonationPatch(amount=amount, paused=paused, next_billing_message=message)


class MyDonationDetailView(View):
    http_method_names = ["patch", "delete"]

    def patch(self, request, donation_id, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({"error": "unauthorized"}, status=401)
        try:
            DonationService().patch(donation_id, request.user.pk, _patch_from_body(request))
        except DonationsError as exc:
            return error_response(exc)
        return JsonResponse({"ok": True})

    def delete(self, request, donation_id, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({"error": "unauthorized"}, status=401)
        try:
            DonationService().delete(donation_id, request.user.pk)
        except DonationsError as exc:
            return error_response(exc)
        return JsonResponse({"ok": True})


class ProjectChartView(View):
    http_method_names = ["get"]

    def get(self, request, project_id, *args, **kwargs):
        aggregates = Aggregates()
        try:
            target = aggregates.monthly_target(project_id)
            sums = aggregates.monthly_sums(project_id)
        except DonationsError as exc:
            return error_response(exc)
        return JsonResponse(chart_to_json(sums, target))
