"""
Tests for the credential lifecycle jobs: quota reset, rotation, security
analysis and the weekly report.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from keyledger.core.clock import as_utc, utcnow
from keyledger.core.database import get_session_context
from keyledger.jobs.credential_rotation import run_credential_rotation
from keyledger.jobs.quota_reset import run_quota_reset
from keyledger.jobs.security_analysis import (
    FLAG_DISTINCT_IPS,
    FLAG_SUSPICIOUS_ACTIVITY,
    ActivitySnapshot,
    assess,
    run_security_analysis,
)
from keyledger.jobs.weekly_report import build_report, recommendations, run_weekly_report, security_score
from keyledger.models import AccessLogEntry, Credential
from keyledger.models.credential import ACTOR_SYSTEM, TIER_PREMIUM
from keyledger.models.outcomes import ITEM_FAILED, ITEM_SKIPPED, ITEM_SUCCESS, JOB_COMPLETED, JOB_FAILED
from keyledger.services.access_log_source import AccessLogSource
from keyledger.services.credential_store import CredentialStore, default_limits, hash_secret


@pytest.fixture
def store():
    return CredentialStore(batch_size=2)


@pytest.fixture
def source():
    return AccessLogSource()


def _set(credential_id, **values):
    with get_session_context() as session:
        row = session.get(Credential, credential_id)
        for key, value in values.items():
            setattr(row, key, value)
        session.add(row)
        session.commit()


def _log_calls(credential_id, count, endpoint="/v1/items", ip="10.0.0.1", user_agent="client/1.0", at=None):
    at = at or utcnow() - timedelta(minutes=5)
    with get_session_context() as session:
        for _ in range(count):
            session.add(
                AccessLogEntry(
                    credential_id=credential_id,
                    endpoint=endpoint,
                    ip=ip,
                    user_agent=user_agent,
                    timestamp=at,
                )
            )
        session.commit()


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class TestCredentialStore:
    def test_issue_returns_key_once(self, store):
        credential, full_key = store.issue("u1", tier=TIER_PREMIUM)

        prefix, key_id, secret = full_key.split("_")
        assert prefix == "kl"
        assert key_id == credential.key_id
        assert credential.key_hash == hash_secret(secret)
        assert credential.daily_quota_limit == default_limits(TIER_PREMIUM)["daily_quota_limit"]

    def test_list_active_pages_through_everything(self, store):
        ids = [store.issue("u1")[0].id for _ in range(5)]
        store.deactivate(ids[2], "admin")

        assert [c.id for c in store.list_active()] == [i for i in ids if i != ids[2]]

    def test_counts(self, store):
        first, _ = store.issue("u1")
        store.issue("u2")
        store.deactivate(first.id, "admin")

        counts = store.counts()
        assert (counts.total, counts.active, counts.deactivated) == (2, 1, 1)

    def test_deactivate_only_once(self, store):
        credential, _ = store.issue("u1")

        assert store.deactivate(credential.id, "admin", reason="manual") is True
        assert store.deactivate(credential.id, ACTOR_SYSTEM) is False

        row = store.get(credential.id)
        assert row.deactivated_by == "admin"
        assert row.deactivation_reason == "manual"


# ---------------------------------------------------------------------------
# Quota reset
# ---------------------------------------------------------------------------


class TestQuotaReset:
    def test_zeroes_daily_counter_only(self, store):
        credential, _ = store.issue("u1")
        _set(credential.id, daily_quota_used=420, minute_quota_used=3)
        before = store.get(credential.id)

        result = run_quota_reset(store)

        after = store.get(credential.id)
        assert result.status == JOB_COMPLETED
        assert result.affected == 1
        assert after.daily_quota_used == 0
        assert after.minute_quota_used == 3
        assert after.updated_at == before.updated_at
        assert after.is_active == before.is_active

    def test_includes_inactive_credentials(self, store):
        credential, _ = store.issue("u1")
        _set(credential.id, daily_quota_used=7)
        store.deactivate(credential.id, "admin")

        run_quota_reset(store)

        assert store.get(credential.id).daily_quota_used == 0

    def test_repeat_is_harmless(self, store):
        store.issue("u1")

        run_quota_reset(store)
        second = run_quota_reset(store)

        assert second.status == JOB_COMPLETED


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------


class TestCredentialRotation:
    def test_expired_credential_deactivated(self, store):
        credential, _ = store.issue("u1", expires_at=utcnow() - timedelta(days=1))

        result = run_credential_rotation(store, issue_replacement=False)

        row = store.get(credential.id)
        assert row.is_active is False
        assert row.deactivated_by == ACTOR_SYSTEM
        assert row.deactivation_reason == "expired"
        assert result.affected == 1
        assert result.items[0].status == ITEM_SUCCESS
        assert result.items[0].detail == "deactivated"

    def test_unexpired_and_open_ended_untouched(self, store):
        future, _ = store.issue("u1", expires_at=utcnow() + timedelta(days=1))
        open_ended, _ = store.issue("u1")

        result = run_credential_rotation(store, issue_replacement=False)

        assert result.items == []
        assert store.get(future.id).is_active is True
        assert store.get(open_ended.id).is_active is True

    def test_second_run_changes_nothing(self, store):
        credential, _ = store.issue("u1", expires_at=utcnow() - timedelta(days=1))

        run_credential_rotation(store, issue_replacement=True)
        first_counts = store.counts()
        second = run_credential_rotation(store, issue_replacement=True)

        assert second.affected == 0
        assert store.counts() == first_counts

    def test_replacement_keeps_owner_tier_and_limits(self, store):
        credential, _ = store.issue(
            "u1",
            tier=TIER_PREMIUM,
            name="CI key",
            expires_at=utcnow() - timedelta(hours=1),
            limits={"daily_quota_limit": 77, "minute_quota_limit": 7, "hourly_quota_limit": 0, "monthly_quota_limit": 0},
        )
        delivered = MagicMock()

        result = run_credential_rotation(store, issue_replacement=True, on_replacement=delivered)

        assert result.items[0].detail.startswith("replaced_by:")
        old, replacement, full_key = delivered.call_args.args
        assert old.id == credential.id
        assert replacement.owner_subscriber_id == "u1"
        assert replacement.tier == TIER_PREMIUM
        assert replacement.daily_quota_limit == 77
        assert replacement.rotated_from_id == credential.id
        assert replacement.is_active is True
        assert full_key.split("_")[1] == replacement.key_id

    def test_skips_credential_deactivated_mid_run(self, store):
        credential, _ = store.issue("u1", expires_at=utcnow() - timedelta(days=1))

        with patch.object(CredentialStore, "rotate", return_value=None):
            result = run_credential_rotation(store, issue_replacement=True)

        assert result.items[0].status == ITEM_SKIPPED
        assert result.affected == 0

    def test_failed_issuance_keeps_credential_for_next_run(self, store):
        credential, _ = store.issue("u1", expires_at=utcnow() - timedelta(days=1))

        with patch(
            "keyledger.services.credential_store._generate_key",
            side_effect=RuntimeError("entropy source unavailable"),
        ):
            first = run_credential_rotation(store, issue_replacement=True)

        assert first.items[0].status == ITEM_FAILED
        assert store.get(credential.id).is_active is True
        assert store.counts().total == 1

        second = run_credential_rotation(store, issue_replacement=True)

        assert second.items[0].status == ITEM_SUCCESS
        assert store.get(credential.id).is_active is False
        counts = store.counts()
        assert (counts.total, counts.active) == (2, 1)
        assert run_credential_rotation(store, issue_replacement=True).items == []

    def test_item_failure_does_not_stop_the_run(self, store):
        first, _ = store.issue("u1", expires_at=utcnow() - timedelta(days=2))
        second, _ = store.issue("u2", expires_at=utcnow() - timedelta(days=1))
        real_deactivate = CredentialStore.deactivate

        def flaky(self, credential_id, actor, reason=None):
            if credential_id == first.id:
                raise RuntimeError("row locked")
            return real_deactivate(self, credential_id, actor, reason)

        with patch.object(CredentialStore, "deactivate", flaky):
            result = run_credential_rotation(store, issue_replacement=False)

        assert result.status == JOB_COMPLETED
        assert [i.status for i in result.items] == [ITEM_FAILED, ITEM_SUCCESS]
        assert store.get(second.id).is_active is False

    def test_store_outage_fails_the_run(self):
        broken = MagicMock(spec=CredentialStore)
        broken.find_expired.side_effect = RuntimeError("database unavailable")

        result = run_credential_rotation(broken)

        assert result.status == JOB_FAILED
        assert "database unavailable" in result.error


# ---------------------------------------------------------------------------
# Security analysis
# ---------------------------------------------------------------------------


class TestAssess:
    def test_clean(self):
        assert assess(ActivitySnapshot(1, 1, 0, 10)).flags == []

    def test_thresholds_are_strict(self):
        assert assess(ActivitySnapshot(5, 3, 5, 10_000)).flags == []

    def test_distinct_ips_flag_without_deactivation(self):
        result = assess(ActivitySnapshot(6, 1, 0, 6))

        assert result.flags == [FLAG_DISTINCT_IPS]
        assert result.deactivate is False

    def test_deactivates_above_ten_marker_hits(self):
        assert assess(ActivitySnapshot(1, 1, 10, 10)).deactivate is False
        assert assess(ActivitySnapshot(1, 1, 11, 11)).deactivate is True


class TestSecurityAnalysis:
    def test_six_ips_flagged_but_active(self, store, source):
        credential, _ = store.issue("u1")
        for n in range(6):
            _log_calls(credential.id, 1, ip=f"10.0.0.{n}")

        result = run_security_analysis(store, source)

        item = result.items[0]
        assert item.detail == "flagged"
        assert item.flags == [FLAG_DISTINCT_IPS]
        assert result.affected == 0
        assert store.get(credential.id).is_active is True

    def test_marker_hits_deactivate(self, store, source):
        credential, _ = store.issue("u1")
        _log_calls(credential.id, 11, endpoint="SECURITY_CHECK")

        result = run_security_analysis(store, source)

        assert result.items[0].detail == "deactivated"
        assert FLAG_SUSPICIOUS_ACTIVITY in result.items[0].flags
        row = store.get(credential.id)
        assert row.is_active is False
        assert row.deactivated_by == ACTOR_SYSTEM
        assert row.deactivation_reason == "suspicious_activity"

    def test_activity_outside_window_ignored(self, store, source):
        credential, _ = store.issue("u1")
        _log_calls(credential.id, 20, endpoint="SECURITY_CHECK", at=utcnow() - timedelta(days=2))

        result = run_security_analysis(store, source)

        assert result.items[0].detail == "clean"
        assert store.get(credential.id).is_active is True

    def test_inactive_credentials_skipped(self, store, source):
        credential, _ = store.issue("u1")
        store.deactivate(credential.id, "admin")

        assert run_security_analysis(store, source).items == []

    def test_counts_are_per_credential(self, store, source):
        noisy, _ = store.issue("u1")
        quiet, _ = store.issue("u2")
        _log_calls(noisy.id, 11, endpoint="SECURITY_CHECK")
        _log_calls(quiet.id, 3)

        result = run_security_analysis(store, source)

        details = {i.item_id: i.detail for i in result.items}
        assert details == {noisy.id: "deactivated", quiet.id: "clean"}


# ---------------------------------------------------------------------------
# Weekly report
# ---------------------------------------------------------------------------


class TestSecurityScore:
    def test_no_traffic_is_perfect(self):
        assert security_score(0, 0) == 100.0

    def test_bounds(self):
        assert security_score(100, 0) == 100.0
        assert security_score(100, 100) == 0.0
        assert security_score(100, 250) == 0.0

    def test_rounding(self):
        assert security_score(3, 1) == 66.67


class TestRecommendations:
    def test_quiet_week(self):
        assert recommendations(100, 1) == []

    def test_high_ratio(self):
        assert len(recommendations(100, 20)) == 1

    def test_everything(self):
        assert len(recommendations(200_000, 60_000)) == 3


class TestWeeklyReport:
    def test_report_aggregates(self, store, source):
        active, _ = store.issue("u1")
        inactive, _ = store.issue("u2")
        store.deactivate(inactive.id, "admin")
        _log_calls(active.id, 8)
        _log_calls(active.id, 2, endpoint="SECURITY_CHECK")
        _log_calls(active.id, 50, at=utcnow() - timedelta(days=10))

        now = utcnow()
        report = build_report(store, source, now)

        assert report.total_credentials == 2
        assert report.active_credentials == 1
        assert report.deactivated_credentials == 1
        assert report.total_calls == 10
        assert report.suspicious_calls == 2
        assert report.security_score == 80.0
        assert len(report.recommendations) == 1
        assert as_utc(report.period_end) == now
        assert report.period_end - report.period_start == timedelta(days=7)

    def test_job_attaches_report(self, store, source):
        result = run_weekly_report(store, source)

        assert result.status == JOB_COMPLETED
        assert result.report.security_score == 100.0
        assert result.to_dict()["report"]["total_calls"] == 0
