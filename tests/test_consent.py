"""
Unit tests for tiered consent validation.
"""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from care_guard.core.consent import ConsentGate, ConsentType, device_fingerprint
from care_guard.core.errors import ConsentRequiredError
from care_guard.storage.models import ConsentStatus
from care_guard.storage.repository import ConsentRepository, initialize_schema


class TickingClock:
    """Clock that advances one second per read, so records are strictly ordered."""

    def __init__(self):
        self.now = datetime(2024, 5, 1, 8, 0, 0)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


DEVICE = {"userAgent": "Mozilla/5.0", "platform": "iOS", "screen": "390x844"}


class TestConsentType:
    """Test tier ordering."""

    def test_higher_tiers_cover_lower(self):
        assert ConsentType.PREMIUM.covers(ConsentType.BASIC)
        assert ConsentType.ENHANCED.covers(ConsentType.ENHANCED)
        assert not ConsentType.BASIC.covers(ConsentType.ENHANCED)


class TestDeviceFingerprint:

    def test_fixed_length_and_stable(self):
        a = device_fingerprint(DEVICE)
        b = device_fingerprint(dict(reversed(list(DEVICE.items()))))
        assert a == b
        assert len(a) == 64

    def test_string_input(self):
        assert len(device_fingerprint("unknown")) == 64


class TestConsentGate:
    """Test grants, upgrades and revocations."""

    def setup_method(self):
        self.gate = ConsentGate(clock=TickingClock())

    def test_no_history_means_no_consent(self):
        assert not self.gate.has_valid_consent("user-1", ConsentType.BASIC)
        with pytest.raises(ConsentRequiredError) as exc_info:
            self.gate.require("user-1", "basic")
        assert exc_info.value.user_id == "user-1"

    def test_basic_grant_does_not_unlock_enhanced(self):
        self.gate.grant("user-1", ConsentType.BASIC, "v1.0", "10.0.0.1", DEVICE)
        assert self.gate.has_valid_consent("user-1", ConsentType.BASIC)
        assert not self.gate.has_valid_consent("user-1", ConsentType.ENHANCED)

    def test_upgrade_unlocks_higher_tier(self):
        self.gate.grant("user-1", "basic", "v1.0", "10.0.0.1", DEVICE)
        self.gate.grant("user-1", "enhanced", "v1.0", "10.0.0.1", DEVICE)

        assert self.gate.has_valid_consent("user-1", ConsentType.ENHANCED)
        assert self.gate.has_valid_consent("user-1", ConsentType.BASIC)
        assert not self.gate.has_valid_consent("user-1", ConsentType.PREMIUM)
        assert len(self.gate.history("user-1")) == 2

    def test_revoking_basic_withdraws_everything(self):
        self.gate.grant("user-1", "premium", "v1.0", "10.0.0.1", DEVICE)
        self.gate.revoke("user-1")

        for tier in ConsentType:
            assert not self.gate.has_valid_consent("user-1", tier)

    def test_revoking_higher_tier_keeps_lower(self):
        self.gate.grant("user-1", "basic", "v1.0", "10.0.0.1", DEVICE)
        self.gate.grant("user-1", "premium", "v1.0", "10.0.0.1", DEVICE)
        self.gate.revoke("user-1", ConsentType.ENHANCED)

        assert self.gate.has_valid_consent("user-1", ConsentType.BASIC)
        assert not self.gate.has_valid_consent("user-1", ConsentType.ENHANCED)

    def test_grant_after_revocation_restores_consent(self):
        self.gate.grant("user-1", "enhanced", "v1.0", "10.0.0.1", DEVICE)
        self.gate.revoke("user-1")
        self.gate.grant("user-1", "enhanced", "v1.1", "10.0.0.1", DEVICE)

        assert self.gate.has_valid_consent("user-1", ConsentType.ENHANCED)

    def test_history_is_append_only(self):
        self.gate.grant("user-1", "basic", "v1.0", "10.0.0.1", DEVICE)
        self.gate.revoke("user-1", ip_address="10.0.0.2")

        history = self.gate.history("user-1")
        assert [r.status for r in history] == [ConsentStatus.GRANTED, ConsentStatus.REVOKED]
        assert history[1].disclaimer_version == "v1.0"
        assert history[0].timestamp < history[1].timestamp

    def test_required_disclaimer_version(self):
        gate = ConsentGate(required_disclaimer_version="v2.0", clock=TickingClock())
        gate.grant("user-1", "premium", "v1.0", "10.0.0.1", DEVICE)
        assert not gate.has_valid_consent("user-1", "basic")

        gate.grant("user-1", "basic", "v2.0", "10.0.0.1", DEVICE)
        assert gate.has_valid_consent("user-1", "basic")
        assert not gate.has_valid_consent("user-1", "enhanced")

    def test_record_fields(self):
        record = self.gate.grant(
            "user-1", "enhanced", "v1.0", "10.0.0.1", DEVICE,
            tenant_id="clinic-a", additional_consents=["marketing"]
        )
        assert record.tenant_id == "clinic-a"
        assert record.device_fingerprint == device_fingerprint(DEVICE)
        assert record.additional_consents == ("marketing",)

    def test_invalid_grant_rejected(self):
        with pytest.raises(ValueError):
            self.gate.grant("user-1", "platinum", "v1.0", "10.0.0.1", DEVICE)
        with pytest.raises(ValueError):
            self.gate.grant("user-1", "basic", "", "10.0.0.1", DEVICE)

    def test_users_are_independent(self):
        self.gate.grant("user-1", "premium", "v1.0", "10.0.0.1", DEVICE)
        assert not self.gate.has_valid_consent("user-2", "basic")

    def test_tenants_are_independent(self):
        self.gate.grant("user-1", "premium", "v1.0", "10.0.0.1", DEVICE, tenant_id="clinic-a")

        assert self.gate.has_valid_consent("user-1", "premium", tenant_id="clinic-a")
        assert not self.gate.has_valid_consent("user-1", "basic")
        assert not self.gate.has_valid_consent("user-1", "basic", tenant_id="clinic-b")
        assert self.gate.history("user-1", tenant_id="clinic-b") == []
        with pytest.raises(ConsentRequiredError):
            self.gate.require("user-1", "basic", tenant_id="clinic-b")

    def test_revocation_only_affects_its_tenant(self):
        self.gate.grant("user-1", "enhanced", "v1.0", "10.0.0.1", DEVICE, tenant_id="clinic-a")
        self.gate.grant("user-1", "enhanced", "v1.0", "10.0.0.1", DEVICE, tenant_id="clinic-b")
        self.gate.revoke("user-1", tenant_id="clinic-a")

        assert not self.gate.has_valid_consent("user-1", "basic", tenant_id="clinic-a")
        assert self.gate.has_valid_consent("user-1", "enhanced", tenant_id="clinic-b")


class TestPersistentConsentGate:
    """Test consent history backed by SQLite."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "consent.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_history_survives_new_gate(self):
        gate = ConsentGate(ConsentRepository(self.db_path), clock=TickingClock())
        gate.grant("user-1", "enhanced", "v1.0", "10.0.0.1", DEVICE, additional_consents=["research"])

        reopened = ConsentGate(ConsentRepository(self.db_path))
        assert reopened.has_valid_consent("user-1", "enhanced")
        assert reopened.history("user-1")[0].additional_consents == ("research",)

    def test_revocation_persisted(self):
        clock = TickingClock()
        gate = ConsentGate(ConsentRepository(self.db_path), clock=clock)
        gate.grant("user-1", "premium", "v1.0", "10.0.0.1", DEVICE)
        gate.revoke("user-1", "basic")

        reopened = ConsentGate(ConsentRepository(self.db_path))
        assert not reopened.has_valid_consent("user-1", "basic")

    def test_persisted_history_is_tenant_scoped(self):
        repository = ConsentRepository(self.db_path)
        gate = ConsentGate(repository, clock=TickingClock())
        gate.grant("user-1", "premium", "v1.0", "10.0.0.1", DEVICE, tenant_id="clinic-a")

        assert gate.has_valid_consent("user-1", "premium", tenant_id="clinic-a")
        assert not gate.has_valid_consent("user-1", "basic", tenant_id="clinic-b")
        assert repository.records_for_user("user-1", "clinic-b") == []
        assert len(repository.records_for_user("user-1", "clinic-a")) == 1
