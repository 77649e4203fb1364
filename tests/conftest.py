import pytest

from caregiver_auth.app import app
from caregiver_auth.ceremony import init_app
from caregiver_auth.challenges import MemoryChallengeStore
from caregiver_auth.config import configure_relying_party

from authenticator import DEFAULT_ORIGIN, DEFAULT_RP_ID, SoftAuthenticator


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def flask_app(tmp_path, clock):
    app.config.update(
        TESTING=True,
        DATABASE=str(tmp_path / "caregiver.db"),
        WEBAUTHN_CHALLENGE_TTL=300,
        WEBAUTHN_CHALLENGE_BACKEND="memory",
        WEBAUTHN_ALLOW_COUNTERLESS=False,
    )
    configure_relying_party(app, name="CareGiver App", rp_id=DEFAULT_RP_ID, origins=[DEFAULT_ORIGIN])
    init_app(app, challenges=MemoryChallengeStore(clock=clock))
    yield app
    app.extensions.pop("caregiver_auth.services", None)


@pytest.fixture
def services(flask_app):
    return flask_app.extensions["caregiver_auth.services"]


@pytest.fixture
def client(flask_app):
    with flask_app.test_client() as test_client:
        yield test_client


@pytest.fixture
def alice(services):
    return services.users.create("alice", "Alice Carer")


@pytest.fixture
def bob(services):
    return services.users.create("bob")


@pytest.fixture
def authenticator():
    return SoftAuthenticator()


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as flask_session:
            flask_session["user_id"] = user.id

    return _login
