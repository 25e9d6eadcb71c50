import pytest
import json
import os
import tempfile

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
from lockout_service import db
from lockout_service.errors import InvalidPolicy
from lockout_service.policy import (
    PolicyStore,
    SecurityPolicy,
    Severity,
    merge_levels,
    next_tier_info,
    severity_of,
    tier_for_attempts,
    validate_policy,
)


@pytest.fixture
def ledger():
    """Create a temporary ledger for testing"""
    fd, temp_path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    try:
        yield db.init_db(temp_path)
    finally:
        if db.engine is not None:
            db.engine.dispose()
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(temp_path + suffix):
                os.remove(temp_path + suffix)


class TestSecurityPolicy:
    """Test policy validation"""

    def test_defaults(self):
        policy = SecurityPolicy()
        thresholds = [(t.tier_index, t.attempt_threshold, t.lock_duration_minutes) for t in policy.lockout_thresholds]
        assert thresholds == [(1, 3, 1), (2, 4, 5), (3, 5, 10), (4, 6, 30)]
        assert policy.version == 1
        assert policy.audit_logging.retention_days == 365

    def test_level_keys_are_accepted(self):
        """The dashboard's level_N layout maps onto ordered tiers"""
        policy = validate_policy(
            {
                "lockout_thresholds": {
                    "level_2": {"attempts": 5, "duration": 15},
                    "level_1": {"attempts": 2, "duration": 2},
                }
            }
        )
        assert [t.attempt_threshold for t in policy.lockout_thresholds] == [2, 5]
        assert policy.tier(2).lock_duration_minutes == 15

    def test_decreasing_thresholds_rejected(self):
        with pytest.raises(InvalidPolicy) as exc_info:
            validate_policy({"lockout_thresholds": [{"attempts": 5, "duration": 1}, {"attempts": 3, "duration": 5}]})
        assert any("attempt threshold" in e for e in exc_info.value.errors)

    def test_shorter_duration_rejected(self):
        with pytest.raises(InvalidPolicy):
            validate_policy({"lockout_thresholds": [{"attempts": 3, "duration": 10}, {"attempts": 4, "duration": 5}]})

    @pytest.mark.parametrize(
        "tier",
        [
            {"attempts": 0, "duration": 1},
            {"attempts": 21, "duration": 1},
            {"attempts": 3, "duration": 0},
            {"attempts": 3, "duration": 1441},
        ],
    )
    def test_tier_ranges(self, tier):
        with pytest.raises(InvalidPolicy):
            validate_policy({"lockout_thresholds": [tier]})

    def test_empty_tier_table_rejected(self):
        with pytest.raises(InvalidPolicy):
            validate_policy({"lockout_thresholds": []})

    def test_section_ranges(self):
        with pytest.raises(InvalidPolicy) as exc_info:
            validate_policy({"password_policy": {"min_length": 4}})
        assert exc_info.value.errors[0].startswith("password_policy.min_length")

    def test_document_round_trips(self):
        policy = SecurityPolicy()
        assert validate_policy(policy.document()) == policy


class TestTierHelpers:
    """Test tier lookups"""

    def test_tier_for_attempts(self):
        tiers = SecurityPolicy().lockout_thresholds
        assert tier_for_attempts(tiers, 2) is None
        assert tier_for_attempts(tiers, 3).tier_index == 1
        assert tier_for_attempts(tiers, 50).tier_index == 4

    def test_highest_satisfied_tier_wins(self):
        """Out-of-order tables still resolve to the most severe tier"""
        tiers = list(reversed(SecurityPolicy().lockout_thresholds))
        assert tier_for_attempts(tiers, 5).tier_index == 3

    def test_severity(self):
        tiers = SecurityPolicy().lockout_thresholds
        assert severity_of(1, tiers) == Severity.LOW
        assert severity_of(3, tiers) == Severity.MEDIUM
        assert severity_of(5, tiers) == Severity.HIGH
        assert severity_of(6, tiers) == Severity.CRITICAL

    def test_next_tier_info(self):
        tiers = SecurityPolicy().lockout_thresholds
        info = next_tier_info(1, tiers)
        assert info["next_tier"] == 1
        assert info["attempts_remaining"] == 2
        assert next_tier_info(6, tiers)["is_max_level"] is True


class TestPolicyStore:
    """Test loading and updating the active policy"""

    def test_load_persists_defaults(self, ledger):
        store = PolicyStore.load(ledger)
        assert store.get_policy() == SecurityPolicy()
        assert [entry["version"] for entry in ledger.policy_history()] == [1]

    def test_load_from_file(self, ledger, tmp_path):
        policy_file = tmp_path / "policy.json"
        policy_file.write_text(json.dumps({"lockout_thresholds": [{"attempts": 2, "duration": 3}]}))

        store = PolicyStore.load(ledger, str(policy_file))

        assert store.get_policy().tier(1).attempt_threshold == 2
        assert ledger.latest_policy() == store.get_policy()

    def test_file_policy_becomes_first_version(self, ledger, tmp_path):
        """Updates on top of a file policy are versioned from 1 and survive a reload"""
        policy_file = tmp_path / "policy.json"
        policy_file.write_text(json.dumps({"lockout_thresholds": [{"attempts": 2, "duration": 3}]}))

        PolicyStore.load(ledger, str(policy_file)).update_policy({"notifications": {"sms_on_lockout": True}}, actor="admin")

        assert [entry["version"] for entry in ledger.policy_history()] == [1, 2]
        reloaded = PolicyStore.load(ledger, str(policy_file)).get_policy()
        assert reloaded.version == 2
        assert reloaded.tier(1).attempt_threshold == 2
        assert reloaded.notifications.sms_on_lockout is True

    def test_load_prefers_ledger(self, ledger, tmp_path):
        PolicyStore.load(ledger).update_policy({"notifications": {"sms_on_lockout": True}})
        policy_file = tmp_path / "policy.json"
        policy_file.write_text(json.dumps({"lockout_thresholds": [{"attempts": 2, "duration": 3}]}))

        store = PolicyStore.load(ledger, str(policy_file))

        assert store.get_policy().version == 2
        assert store.get_policy().notifications.sms_on_lockout is True

    def test_update_merges_sections(self, ledger):
        store = PolicyStore.load(ledger)
        updated = store.update_policy({"notifications": {"sms_on_lockout": True}}, actor="admin")

        assert updated.version == 2
        assert updated.notifications.sms_on_lockout is True
        assert updated.notifications.email_on_lockout is True
        assert store.get_policy() is updated

    def test_update_writes_history_and_audit(self, ledger):
        store = PolicyStore.load(ledger)
        store.update_policy({"audit_logging": {"retention_days": 90}}, actor="admin")

        history = store.history()
        assert [entry["version"] for entry in history] == [1, 2]
        assert history[1]["actor"] == "admin"
        entries = ledger.audit_entries(event_types=["policy_change"])
        assert len(entries) == 1
        assert entries[0].detail == "version 1 -> 2"

    def test_invalid_update_leaves_policy_unchanged(self, ledger):
        """A rejected update is not partially applied"""
        store = PolicyStore.load(ledger)
        before = store.get_policy()

        with pytest.raises(InvalidPolicy):
            store.update_policy(
                {
                    "notifications": {"sms_on_lockout": True},
                    "lockout_thresholds": [{"attempts": 4, "duration": 1}, {"attempts": 2, "duration": 5}],
                }
            )

        assert store.get_policy() is before
        assert len(ledger.policy_history()) == 1

    def test_in_memory_store(self):
        store = PolicyStore()
        store.update_policy({"lockout_thresholds": [{"attempts": 10, "duration": 60}]})
        assert store.history()[0]["version"] == 2


class TestLevelUpdates:
    """Partial tier updates keyed level_N"""

    def test_patch_one_field_keeps_other_tiers(self):
        store = PolicyStore()
        updated = store.update_policy({"lockout_thresholds": {"level_2": {"duration": 8}}})

        assert updated.levels() == {
            "level_1": {"attempts": 3, "duration": 1},
            "level_2": {"attempts": 4, "duration": 8},
            "level_3": {"attempts": 5, "duration": 10},
            "level_4": {"attempts": 6, "duration": 30},
        }

    def test_next_level_appends_a_tier(self):
        store = PolicyStore()
        updated = store.update_policy({"lockout_thresholds": {"level_5": {"attempts": 8, "duration": 60}}})

        assert len(updated.lockout_thresholds) == 5
        assert updated.tier(5).lock_duration_minutes == 60

    def test_merged_table_is_still_validated(self):
        store = PolicyStore()
        with pytest.raises(InvalidPolicy):
            store.update_policy({"lockout_thresholds": {"level_2": {"attempts": 7}}})
        assert store.get_policy().version == 1

    @pytest.mark.parametrize("levels", [
        {"level_6": {"attempts": 9, "duration": 60}},
        {"tier_one": {"attempts": 2}},
        {"level_1": 5},
    ])
    def test_malformed_levels_rejected(self, levels):
        with pytest.raises(InvalidPolicy):
            merge_levels(SecurityPolicy().document()["lockout_thresholds"], levels)

    def test_list_still_replaces_table(self):
        store = PolicyStore()
        updated = store.update_policy({"lockout_thresholds": [{"attempts": 2, "duration": 5}]})
        assert list(updated.levels()) == ["level_1"]
