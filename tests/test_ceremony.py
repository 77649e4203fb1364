"""Orchestrator state machine and end-to-end ceremony scenarios."""

import pytest

from fido2.utils import websafe_encode

from caregiver_auth.ceremony import CeremonyOrchestrator
from caregiver_auth.challenges import MemoryChallengeStore
from caregiver_auth.config import RelyingParty
from caregiver_auth.errors import (
    BadRequest,
    CredentialNotFound,
    CredentialOwnershipMismatch,
    Forbidden,
    NoCredentials,
    NotFound,
    SessionExpired,
    StoreUnavailable,
    Unauthenticated,
    UserNotFound,
    VerificationFailed,
)
from caregiver_auth.verifier import Fido2CeremonyCrypto

from authenticator import DEFAULT_ORIGIN, DEFAULT_RP_ID, SoftAuthenticator

SESSION = "session-a"


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


class SessionRecorder:
    def __init__(self):
        self.users = []

    def __call__(self, user):
        self.users.append(user)


def _register(orchestrator, user, authenticator, session_id=SESSION, **kwargs):
    options = orchestrator.registration_start(session_id, user)
    return orchestrator.registration_finish(session_id, user, authenticator.create(options, **kwargs))


def _login(orchestrator, username, authenticator, session_id=SESSION, establish=None, **kwargs):
    options = orchestrator.authentication_start(session_id, username)
    return orchestrator.authentication_finish(
        session_id, authenticator.get(options, **kwargs), establish or SessionRecorder()
    )


def test_registration_requires_authenticated_caller(orchestrator, authenticator):
    with pytest.raises(Unauthenticated):
        orchestrator.registration_start(SESSION, None)
    with pytest.raises(Unauthenticated):
        orchestrator.registration_finish(SESSION, None, {})


def test_registration_finish_without_start_is_expired(orchestrator, alice, authenticator):
    with pytest.raises(SessionExpired):
        orchestrator.registration_finish(SESSION, alice, {"id": "AAAA"})
    with pytest.raises(SessionExpired):
        orchestrator.registration_finish(None, alice, {"id": "AAAA"})


def test_successful_registration_binds_owner_and_consumes_challenge(orchestrator, services, alice, authenticator):
    options = orchestrator.registration_start(SESSION, alice)
    response = authenticator.create(options)

    credential = orchestrator.registration_finish(SESSION, alice, response)
    assert credential.user_id == alice.id
    assert credential.counter == 0
    assert services.credentials.get_by_credential_id(authenticator.credential_id) == credential
    assert services.challenges.peek(SESSION) is None

    with pytest.raises(SessionExpired):
        orchestrator.registration_finish(SESSION, alice, response)


def test_registration_excludes_existing_credentials(orchestrator, alice, authenticator):
    _register(orchestrator, alice, authenticator)
    options = orchestrator.registration_start(SESSION, alice)
    excluded = options["publicKey"]["excludeCredentials"]
    assert [entry["id"] for entry in excluded] == [websafe_encode(authenticator.credential_id)]


def test_registration_challenge_is_bound_to_user(orchestrator, alice, bob, authenticator):
    options = orchestrator.registration_start(SESSION, alice)
    with pytest.raises(SessionExpired):
        orchestrator.registration_finish(SESSION, bob, authenticator.create(options))


def test_registration_challenge_expires(orchestrator, alice, authenticator, clock):
    options = orchestrator.registration_start(SESSION, alice)
    clock.advance(301)
    with pytest.raises(SessionExpired):
        orchestrator.registration_finish(SESSION, alice, authenticator.create(options))


def test_failed_registration_clears_challenge(orchestrator, services, alice, authenticator):
    options = orchestrator.registration_start(SESSION, alice)
    with pytest.raises(VerificationFailed):
        orchestrator.registration_finish(SESSION, alice, authenticator.create(options, origin="https://evil.example"))
    assert services.challenges.peek(SESSION) is None


def test_duplicate_credential_id_is_rejected(orchestrator, alice, bob, authenticator):
    _register(orchestrator, alice, authenticator)
    with pytest.raises(VerificationFailed):
        _register(orchestrator, bob, authenticator, session_id="session-b")


def test_newer_start_overwrites_pending_challenge(orchestrator, alice, authenticator):
    first = orchestrator.registration_start(SESSION, alice)
    second = orchestrator.registration_start(SESSION, alice)

    with pytest.raises(VerificationFailed):
        orchestrator.registration_finish(SESSION, alice, authenticator.create(first))
    # The mismatched attempt consumed the newer challenge too.
    with pytest.raises(SessionExpired):
        orchestrator.registration_finish(SESSION, alice, authenticator.create(second))


def test_authentication_start_validation(orchestrator, alice):
    with pytest.raises(BadRequest):
        orchestrator.authentication_start(SESSION, "")
    with pytest.raises(BadRequest):
        orchestrator.authentication_start(SESSION, None)
    with pytest.raises(UserNotFound):
        orchestrator.authentication_start(SESSION, "mallory")


def test_authentication_start_without_credentials_issues_no_challenge(orchestrator, services, alice):
    with pytest.raises(NoCredentials):
        orchestrator.authentication_start(SESSION, "alice")
    assert services.challenges.peek(SESSION) is None


def test_authentication_establishes_session_after_counter_update(orchestrator, services, alice, authenticator):
    _register(orchestrator, alice, authenticator)
    observed = []

    def establish(user):
        observed.append((user, services.credentials.get_by_credential_id(authenticator.credential_id).counter))

    user = _login(orchestrator, "alice", authenticator, establish=establish, counter=1)
    assert user == alice
    assert observed == [(alice, 1)]
    assert services.challenges.peek(SESSION) is None


def test_authentication_finish_without_start_is_expired(orchestrator, alice, authenticator):
    recorder = SessionRecorder()
    with pytest.raises(SessionExpired):
        orchestrator.authentication_finish(SESSION, {"id": "AAAA"}, recorder)
    assert recorder.users == []


def test_registration_challenge_cannot_finish_authentication(orchestrator, alice, authenticator):
    _register(orchestrator, alice, authenticator)
    options = orchestrator.registration_start(SESSION, alice)
    with pytest.raises(SessionExpired):
        orchestrator.authentication_finish(SESSION, authenticator.get(options), SessionRecorder())


def test_authentication_with_unknown_credential(orchestrator, alice, authenticator):
    _register(orchestrator, alice, authenticator)
    options = orchestrator.authentication_start(SESSION, "alice")
    with pytest.raises(CredentialNotFound):
        orchestrator.authentication_finish(SESSION, SoftAuthenticator().get(options), SessionRecorder())


def test_credential_owned_by_other_user_is_rejected(orchestrator, alice, bob):
    alice_key = SoftAuthenticator()
    bob_key = SoftAuthenticator()
    _register(orchestrator, alice, alice_key)
    _register(orchestrator, bob, bob_key)

    recorder = SessionRecorder()
    options = orchestrator.authentication_start(SESSION, "alice")
    with pytest.raises(CredentialOwnershipMismatch):
        orchestrator.authentication_finish(SESSION, bob_key.get(options), recorder)
    assert recorder.users == []


def test_user_deleted_between_start_and_finish(orchestrator, services, alice, authenticator):
    _register(orchestrator, alice, authenticator)
    options = orchestrator.authentication_start(SESSION, "alice")
    with services.database.connect() as conn:
        conn.execute("DELETE FROM users WHERE id = ?", (alice.id,))
    with pytest.raises(UserNotFound):
        orchestrator.authentication_finish(SESSION, authenticator.get(options), SessionRecorder())


def test_counter_scenario(orchestrator, services, alice, authenticator):
    credential = _register(orchestrator, alice, authenticator)
    assert credential.counter == 0

    recorder = SessionRecorder()
    with pytest.raises(VerificationFailed):
        _login(orchestrator, "alice", authenticator, establish=recorder, counter=0)
    assert recorder.users == []

    _login(orchestrator, "alice", authenticator, establish=recorder, counter=1)
    assert recorder.users == [alice]
    assert services.credentials.get(credential.id).counter == 1

    with pytest.raises(VerificationFailed):
        _login(orchestrator, "alice", authenticator, establish=recorder, counter=1)
    assert services.credentials.get(credential.id).counter == 1
    assert recorder.users == [alice]


def test_lost_counter_race_is_rejected(orchestrator, services, alice, authenticator):
    credential = _register(orchestrator, alice, authenticator)
    options = orchestrator.authentication_start(SESSION, "alice")
    response = authenticator.get(options, counter=5)

    # A concurrent login advanced the counter after this one loaded it.
    original_get = services.credentials.get_by_credential_id

    def stale_get(credential_id):
        stale = original_get(credential_id)
        services.credentials.update_counter(credential_id, stale.counter, 3)
        return stale

    services.credentials.get_by_credential_id = stale_get
    recorder = SessionRecorder()
    with pytest.raises(VerificationFailed):
        orchestrator.authentication_finish(SESSION, response, recorder)
    assert recorder.users == []
    assert services.credentials.get(credential.id).counter == 3


def test_counterless_mode_accepts_zero_after_zero(services, alice, clock):
    relying_party = RelyingParty(name="CareGiver App", id=DEFAULT_RP_ID, origins=(DEFAULT_ORIGIN,))
    orchestrator = CeremonyOrchestrator(
        services.users,
        services.credentials,
        MemoryChallengeStore(clock=clock),
        Fido2CeremonyCrypto(relying_party, allow_counterless=True),
    )
    authenticator = SoftAuthenticator()
    credential = _register(orchestrator, alice, authenticator)

    assert _login(orchestrator, "alice", authenticator, counter=0) == alice
    assert services.credentials.get(credential.id).counter == 0
    _login(orchestrator, "alice", authenticator, counter=2)
    with pytest.raises(VerificationFailed):
        _login(orchestrator, "alice", authenticator, counter=0)


def test_status(orchestrator, alice, authenticator):
    with pytest.raises(Unauthenticated):
        orchestrator.status(None)
    assert orchestrator.status(alice) == {"enabled": False, "credentials": []}

    credential = _register(orchestrator, alice, authenticator)
    status = orchestrator.status(alice)
    assert status["enabled"] is True
    assert status["credentials"] == [{"id": credential.id, "created": credential.created_at.isoformat()}]


def test_delete_scenario(orchestrator, alice, bob, authenticator):
    credential = _register(orchestrator, alice, authenticator)

    with pytest.raises(Unauthenticated):
        orchestrator.delete_credential(None, credential.id)
    with pytest.raises(Forbidden):
        orchestrator.delete_credential(bob, credential.id)
    with pytest.raises(NotFound):
        orchestrator.delete_credential(alice, credential.id + 100)

    orchestrator.delete_credential(alice, credential.id)
    assert orchestrator.status(alice)["enabled"] is False
    with pytest.raises(NoCredentials):
        orchestrator.authentication_start(SESSION, "alice")


def _failing_store(*args, **kwargs):
    raise StoreUnavailable()


def test_store_failure_while_saving_credential(orchestrator, services, alice, authenticator, monkeypatch):
    options = orchestrator.registration_start(SESSION, alice)
    monkeypatch.setattr(services.credentials, "create", _failing_store)

    with pytest.raises(StoreUnavailable):
        orchestrator.registration_finish(SESSION, alice, authenticator.create(options))
    assert services.challenges.peek(SESSION) is None


def test_store_failure_while_updating_counter(orchestrator, services, alice, authenticator, monkeypatch):
    credential = _register(orchestrator, alice, authenticator)
    options = orchestrator.authentication_start(SESSION, "alice")
    monkeypatch.setattr(services.credentials, "update_counter", _failing_store)

    recorder = SessionRecorder()
    with pytest.raises(StoreUnavailable):
        orchestrator.authentication_finish(SESSION, authenticator.get(options), recorder)
    assert recorder.users == []
    assert services.challenges.peek(SESSION) is None
    monkeypatch.undo()
    assert services.credentials.get(credential.id).counter == 0


def test_registration_for_deleted_account(orchestrator, services, alice, authenticator):
    options = orchestrator.registration_start(SESSION, alice)
    with services.database.connect() as conn:
        conn.execute("DELETE FROM users WHERE id = ?", (alice.id,))

    with pytest.raises(Unauthenticated):
        orchestrator.registration_finish(SESSION, alice, authenticator.create(options))
    assert services.challenges.peek(SESSION) is None
    assert services.credentials.get_by_credential_id(authenticator.credential_id) is None
