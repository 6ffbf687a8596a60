"""
Shared test fixtures: a recording fake of the STS provider and temp credential files.
"""

from datetime import datetime, timedelta, timezone

import pytest

from aws_swamp import Credentials, ProfileWriter, ProviderError, SwampConfig


CALLER_ARN = "arn:aws:iam::210987654321:user/alice"
ROLE_ARN = "arn:aws:iam::123456789012:role/admin"
MFA_SERIAL = "arn:aws:iam::210987654321:mfa/alice"


def make_credentials(suffix: str = "1") -> Credentials:
    return Credentials(
        access_key_id=f"ASIAEXAMPLE{suffix}",
        secret_access_key=f"secret-{suffix}",
        session_token=f"token-{suffix}",
        expiration=datetime.now(timezone.utc) + timedelta(hours=1),
    )


class FakeProvider:
    """Stands in for StsProvider and records every call in order."""

    def __init__(self, session_valid=False, caller_arn=CALLER_ARN, region="eu-west-1",
                 fail_on=None):
        self.session_valid = session_valid
        self.caller_arn = caller_arn
        self.region = region
        self.fail_on = fail_on
        self.calls = []
        self._issued = 0

    def _maybe_fail(self, name):
        if self.fail_on == name:
            raise ProviderError(f"Error in {name}", RuntimeError("boom"))

    def validate_session(self, profile, region):
        self.calls.append(("validate_session", profile, region))
        return self.session_valid

    def get_session_token(self, profile, region, serial_number, token_code, duration):
        self.calls.append(("get_session_token", profile, region, serial_number, token_code, duration))
        self._maybe_fail("get_session_token")
        self._issued += 1
        return make_credentials(f"S{self._issued}")

    def get_caller_identity(self, profile, region):
        self.calls.append(("get_caller_identity", profile, region))
        self._maybe_fail("get_caller_identity")
        return {"Arn": self.caller_arn, "Account": "210987654321", "UserId": "AIDAEXAMPLE"}

    def assume_role(self, profile, region, role_arn, session_name, duration):
        self.calls.append(("assume_role", profile, region, role_arn, session_name, duration))
        self._maybe_fail("assume_role")
        self._issued += 1
        return make_credentials(f"R{self._issued}")

    def session_region(self, profile, region):
        return region or self.region

    def call_names(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def credentials_file(tmp_path):
    return tmp_path / "aws" / "credentials"


@pytest.fixture
def writer(credentials_file):
    return ProfileWriter(credentials_file)


@pytest.fixture
def base_config(tmp_path):
    """No MFA, no export, no renew."""
    return SwampConfig(
        target_profile="target",
        target_role=ROLE_ARN,
        region="eu-west-1",
        export_file=str(tmp_path / "swamp_profile"),
    )
