from datetime import timezone as dt_timezone


def rfc3339(value):
    if value is None:
        return None
    return value.astimezone(dt_timezone.utc).isoformat().replace("+00:00", "Z")


def donation_to_json(d):
    # processor ids stay server-side
    return {
        "id": str(d.pk),
        "project_id": str(d.project_id),
        "donor_type": d.donor_type,
        "donor_id": d.donor_id,
        "amount": d.amount,
        "currency": d.currency,
        "message": d.message or "",
        "is_recurring": d.is_recurring,
        "paused": d.paused,
        "next_billing_message": d.next_billing_message or "",
        "created_at": rfc3339(d.created_at),
        "updated_at": rfc3339(d.updated_at),
    }


def activity_to_json(a):
    return {
        "id": str(a.pk),
        "kind": a.kind,
        "project_id": str(a.project_id),
        "project_name": a.project_name,
        "actor_name": a.actor_name,
        "amount": a.amount,
        "rate": a.rate,
        "message": a.message or "",
        "created_at": rfc3339(a.created_at),
    }


def health_to_json(h):
    return {
        "monthly_cost": h.monthly_cost,
        "current_monthly": h.current_monthly,
        "warning_threshold": h.warning_threshold,
        "critical_threshold": h.critical_threshold,
        "rate": h.rate(),
        "signal": str(h.signal()),
        "updated_at": rfc3339(h.updated_at),
    }


def chart_to_json(sums, target):
    # months without donations are not plotted
    return {
        "chart": [
            {"month": s["month"], "target_amount": target, "actual_amount": s["amount"]}
            for s in sums
        ]
    }
