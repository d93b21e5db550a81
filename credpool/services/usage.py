"""
Usage Extractor - tolerant parsing of provider quota payloads.

Every function here is total: malformed or partial input degrades to
documented defaults instead of raising. Quota data is advisory
telemetry, so it must never fail the surrounding import or refresh.

Defaults:
    subscription        "unknown"
    current_usage       0
    usage_limit         0
    reset_date          None
    free_trial_*        None
    bonus_*             0 / ()
"""

from datetime import UTC, datetime
from typing import Any

from credpool.models.domain import ProviderIdentity, UsageSnapshot

DEFAULT_RESOURCE_URL = "portal.qwen.ai"

# Upper bound for epoch seconds (year 9999); anything beyond is garbage
_MAX_EPOCH_SECONDS = 253402300799


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _precise(source: dict[str, Any], key: str) -> float | None:
    """Prefer `<key>WithPrecision` over the rounded `<key>`; zero falls through."""
    for candidate in (f"{key}WithPrecision", key):
        number = _as_number(source.get(candidate))
        if number:
            return number
    return None


def epoch_seconds_to_datetime(value: Any) -> datetime | None:
    """Convert epoch seconds to an aware UTC datetime; invalid or zero becomes None."""
    number = _as_number(value)
    if number is None or number <= 0 or number > _MAX_EPOCH_SECONDS:
        return None
    try:
        return datetime.fromtimestamp(number, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def _credit_breakdown(payload: dict[str, Any]) -> dict[str, Any]:
    breakdowns = payload.get("usageBreakdownList")
    if not isinstance(breakdowns, list):
        return {}
    for entry in breakdowns:
        if isinstance(entry, dict) and entry.get("resourceType") == "CREDIT":
            return entry
    return {}


def extract_usage(payload: Any) -> UsageSnapshot:
    """
    Normalize a Kiro usage-limits payload into a UsageSnapshot.

    Reads subscriptionInfo.subscriptionTitle, the CREDIT entry of
    usageBreakdownList (and its freeTrialInfo), and nextDateReset.
    """
    data = _as_dict(payload)
    if not data:
        return UsageSnapshot()

    subscription_title = _as_dict(data.get("subscriptionInfo")).get("subscriptionTitle")
    subscription = (
        subscription_title.strip()
        if isinstance(subscription_title, str) and subscription_title.strip()
        else "unknown"
    )

    credit = _credit_breakdown(data)
    free_trial = _as_dict(credit.get("freeTrialInfo"))

    free_trial_status = None
    if free_trial:
        free_trial_status = free_trial.get("freeTrialStatus") == "ACTIVE"

    return UsageSnapshot(
        subscription=subscription,
        current_usage=_precise(credit, "currentUsage") or 0,
        usage_limit=_precise(credit, "usageLimit") or 0,
        reset_date=epoch_seconds_to_datetime(data.get("nextDateReset")),
        free_trial_status=free_trial_status,
        free_trial_usage=_precise(free_trial, "currentUsage"),
        free_trial_limit=_precise(free_trial, "usageLimit"),
        free_trial_expiry=epoch_seconds_to_datetime(free_trial.get("freeTrialExpiry")),
    )


def extract_user_info(payload: Any) -> ProviderIdentity:
    """Identity fallbacks carried in a usage payload's userInfo block."""
    user_info = _as_dict(_as_dict(payload).get("userInfo"))
    email = user_info.get("email")
    user_id = user_info.get("userId")
    return ProviderIdentity(
        remote_user_id=user_id if isinstance(user_id, str) and user_id else None,
        email=email if isinstance(email, str) and email else None,
    )


def parse_expiry_millis(value: Any) -> int | None:
    """
    Parse an exported expiry into epoch milliseconds.

    Accepts ISO-8601 strings and the legacy "2026/01/12 02:32:20" form
    (naive values are taken as UTC). Returns None when unparseable.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().replace("/", "-")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp() * 1000)


def normalize_resource_url(resource_url: Any) -> str:
    """Strip any scheme from a Qwen resource URL; default to portal.qwen.ai."""
    if not isinstance(resource_url, str) or not resource_url.strip():
        return DEFAULT_RESOURCE_URL
    text = resource_url.strip()
    lowered = text.lower()
    for scheme in ("https://", "http://"):
        if lowered.startswith(scheme):
            return text[len(scheme) :] or DEFAULT_RESOURCE_URL
    return text
