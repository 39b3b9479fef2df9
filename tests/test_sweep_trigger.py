import pytest

from classes.auth import CallerIdentity, TriggerAuthenticator, require_privileged
from classes.deadline_sweep import DeadlineSweepEngine
from classes.errors import AuthError
from classes.sweep_trigger import SweepTrigger

from conftest import NOW, StepClock, hours


def claims_verifier(claims_by_token):
    def _verify(token):
        if token not in claims_by_token:
            raise ValueError("Token used too late")
        return claims_by_token[token]
    return _verify


@pytest.fixture
def authenticator():
    return TriggerAuthenticator(
        verifier=claims_verifier({
            "admin-token": {"sub": "u-admin", "email": "Ops@Example.com", "email_verified": True},
            "claim-token": {"sub": "u-claim", "admin": True},
            "user-token": {"sub": "u-user", "email": "someone@example.com"},
            "unverified-token": {"sub": "u-x", "email": "ops@example.com", "email_verified": False},
            "nosub-token": {"email": "ops@example.com"},
        }),
        admin_emails={"ops@example.com"},
    )


@pytest.fixture
def trigger(store, dispatcher):
    return SweepTrigger(DeadlineSweepEngine(store, dispatcher, clock=StepClock(NOW)))


# -----------------------
# Authentication
# -----------------------

def test_admin_email_is_privileged(authenticator):
    identity = authenticator.identify("Bearer admin-token")
    assert identity == CallerIdentity(uid="u-admin", email="Ops@Example.com", is_admin=True)


def test_admin_claim_is_privileged(authenticator):
    assert authenticator.identify("bearer claim-token").is_admin


def test_unverified_email_is_not_privileged(authenticator):
    assert not authenticator.identify("Bearer unverified-token").is_admin


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer bogus", "Bearer nosub-token"])
def test_bad_credentials_are_unauthenticated(authenticator, header):
    with pytest.raises(AuthError) as exc:
        authenticator.identify(header)
    assert exc.value.status_code == 401


def test_require_privileged():
    with pytest.raises(AuthError) as missing:
        require_privileged(None)
    with pytest.raises(AuthError) as plain:
        require_privileged(CallerIdentity(uid="u-user"))

    assert missing.value.status_code == 401
    assert plain.value.status_code == 403
    admin = CallerIdentity(uid="u-admin", is_admin=True)
    assert require_privileged(admin) is admin


# -----------------------
# Trigger
# -----------------------

def test_manual_trigger_reports_expired_count(trigger, add_request, fetch):
    add_request("r-1", NOW - hours(1))
    add_request("r-2", NOW - hours(2), quotations=1)

    body = trigger.run_manual(CallerIdentity(uid="u-admin", is_admin=True))

    assert body == {"success": True, "expiredRequestsCount": 2, "timestamp": "2024-05-01T12:00:00.000Z"}
    assert fetch.request("r-1")["status"] == "expired"


def test_manual_trigger_refused_before_anything_runs(trigger, add_request, fetch):
    add_request("r-1", NOW - hours(1))

    with pytest.raises(AuthError) as exc:
        trigger.run_manual(CallerIdentity(uid="u-user"))

    assert exc.value.status_code == 403
    assert fetch.request("r-1")["status"] == "open"
    assert fetch.notifications() == []


def test_manual_and_scheduled_share_the_same_sweep(trigger, add_request):
    add_request("r-1", NOW - hours(1))

    scheduled = trigger.run_scheduled()
    manual = trigger.run_manual(CallerIdentity(uid="u-admin", is_admin=True))

    assert scheduled.expired_count == 1
    assert manual["expiredRequestsCount"] == 0
