"""
Tests for the Usage Extractor.

The extractor must be total: any JSON-shaped input yields a snapshot.
"""

from datetime import UTC, datetime

from hypothesis import given, settings
from hypothesis import strategies as st

from credpool.models.domain import ProviderIdentity, UsageSnapshot
from credpool.services.usage import (
    DEFAULT_RESOURCE_URL,
    epoch_seconds_to_datetime,
    extract_usage,
    extract_user_info,
    normalize_resource_url,
    parse_expiry_millis,
)

FULL_PAYLOAD = {
    "subscriptionInfo": {"subscriptionTitle": "KIRO PRO"},
    "nextDateReset": 1767225600,
    "usageBreakdownList": [
        {"resourceType": "AGENTIC_REQUEST", "currentUsage": 99, "usageLimit": 100},
        {
            "resourceType": "CREDIT",
            "currentUsage": 12,
            "currentUsageWithPrecision": 12.37,
            "usageLimit": 1000,
            "usageLimitWithPrecision": 1000.0,
            "freeTrialInfo": {
                "freeTrialStatus": "ACTIVE",
                "currentUsageWithPrecision": 3.5,
                "usageLimit": 500,
                "freeTrialExpiry": 1769904000,
            },
        },
    ],
    "userInfo": {"email": "dev@example.com", "userId": "u-123"},
}

json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.floats(allow_nan=False) | st.text(),
    lambda children: st.lists(children, max_size=4)
    | st.dictionaries(st.text(max_size=20), children, max_size=4),
    max_leaves=20,
)


class TestExtractUsage:
    """Tests for extract_usage."""

    def test_none_and_empty_give_defaults(self):
        assert extract_usage(None) == UsageSnapshot()
        assert extract_usage({}) == UsageSnapshot()
        assert extract_usage("not a dict") == UsageSnapshot()

    def test_payload_without_breakdown(self):
        """Subscription is read even when no CREDIT entry exists."""
        usage = extract_usage({"subscriptionInfo": {"subscriptionTitle": "KIRO FREE"}})

        assert usage.subscription == "KIRO FREE"
        assert usage.current_usage == 0
        assert usage.usage_limit == 0
        assert usage.free_trial_status is None

    def test_full_payload(self):
        usage = extract_usage(FULL_PAYLOAD)

        assert usage.subscription == "KIRO PRO"
        assert usage.current_usage == 12.37
        assert usage.usage_limit == 1000.0
        assert usage.reset_date == datetime(2026, 1, 1, tzinfo=UTC)
        assert usage.free_trial_status is True
        assert usage.free_trial_usage == 3.5
        assert usage.free_trial_limit == 500
        assert usage.free_trial_expiry == datetime(2026, 2, 1, tzinfo=UTC)
        assert usage.bonus_details == ()

    def test_precision_zero_falls_back_to_rounded(self):
        usage = extract_usage(
            {
                "usageBreakdownList": [
                    {"resourceType": "CREDIT", "currentUsageWithPrecision": 0, "currentUsage": 5}
                ]
            }
        )

        assert usage.current_usage == 5

    def test_inactive_free_trial(self):
        usage = extract_usage(
            {
                "usageBreakdownList": [
                    {"resourceType": "CREDIT", "freeTrialInfo": {"freeTrialStatus": "EXPIRED"}}
                ]
            }
        )

        assert usage.free_trial_status is False

    def test_wrong_types_degrade(self):
        usage = extract_usage(
            {
                "subscriptionInfo": ["KIRO PRO"],
                "nextDateReset": "tomorrow",
                "usageBreakdownList": {"resourceType": "CREDIT"},
            }
        )

        assert usage == UsageSnapshot()

    def test_blank_subscription_is_unknown(self):
        usage = extract_usage({"subscriptionInfo": {"subscriptionTitle": "   "}})
        assert usage.subscription == "unknown"

    @given(json_values)
    @settings(max_examples=200)
    def test_extract_usage_is_total(self, payload):
        """Arbitrary JSON never raises."""
        assert isinstance(extract_usage(payload), UsageSnapshot)

    @given(
        st.dictionaries(
            st.sampled_from(["subscriptionInfo", "usageBreakdownList", "nextDateReset", "userInfo"]),
            json_values,
        )
    )
    def test_extract_usage_total_on_known_keys(self, payload):
        """Known keys with garbage values never raise."""
        usage = extract_usage(payload)
        assert isinstance(usage.subscription, str)
        assert isinstance(usage.current_usage, (int, float))


class TestExtractUserInfo:
    def test_reads_email_and_user_id(self):
        assert extract_user_info(FULL_PAYLOAD) == ProviderIdentity(
            remote_user_id="u-123", email="dev@example.com"
        )

    def test_missing_block(self):
        assert extract_user_info(None) == ProviderIdentity()
        assert extract_user_info({"userInfo": "x"}) == ProviderIdentity()

    def test_blank_values_ignored(self):
        assert extract_user_info({"userInfo": {"email": "", "userId": 7}}) == ProviderIdentity()


class TestEpochSecondsToDatetime:
    def test_valid_seconds(self):
        assert epoch_seconds_to_datetime(1767225600) == datetime(2026, 1, 1, tzinfo=UTC)
        assert epoch_seconds_to_datetime(1767225600.5).microsecond == 500000

    def test_invalid_values(self):
        for value in (None, 0, -5, True, "1767225600", 10**20, float("inf")):
            assert epoch_seconds_to_datetime(value) is None


class TestParseExpiryMillis:
    def test_legacy_slash_format_is_utc(self):
        expected = int(datetime(2026, 1, 12, 2, 32, 20, tzinfo=UTC).timestamp() * 1000)
        assert parse_expiry_millis("2026/01/12 02:32:20") == expected

    def test_iso_with_z(self):
        assert parse_expiry_millis("2026-01-01T00:00:00Z") == 1_767_225_600_000

    def test_iso_with_offset(self):
        assert parse_expiry_millis("2026-01-01T08:00:00+08:00") == 1_767_225_600_000

    def test_unparseable(self):
        for value in (None, "", "   ", "next tuesday", 1767225600):
            assert parse_expiry_millis(value) is None


class TestNormalizeResourceUrl:
    def test_strips_scheme(self):
        assert normalize_resource_url("https://portal.qwen.ai") == "portal.qwen.ai"
        assert normalize_resource_url("HTTP://dashscope.aliyuncs.com") == "dashscope.aliyuncs.com"

    def test_bare_host_kept(self):
        assert normalize_resource_url(" portal.qwen.ai ") == "portal.qwen.ai"

    def test_defaults(self):
        for value in (None, "", "  ", 42, "https://"):
            assert normalize_resource_url(value) == DEFAULT_RESOURCE_URL
