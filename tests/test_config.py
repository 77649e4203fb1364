import pytest
from flask import Flask

from caregiver_auth import config
from caregiver_auth.config import RelyingParty, configure_relying_party, create_fido_server
from caregiver_auth.errors import ConfigurationError


def test_parse_origins_accepts_mixed_separators():
    raw = "https://care.example.com/, https://app.care.example.com;https://care.example.com\n"
    assert config._parse_origins(raw) == [
        "https://care.example.com",
        "https://app.care.example.com",
    ]


def test_parse_origins_blank_is_none():
    assert config._parse_origins(" , ; ") is None
    assert config._parse_origins(None) is None


@pytest.mark.parametrize(
    "rp_id, production, expected",
    [
        ("localhost", False, ["http://localhost:5000", "https://localhost"]),
        ("care.example.com", True, ["https://care.example.com"]),
        ("care.example.com", False, ["https://care.example.com"]),
    ],
)
def test_default_origins(rp_id, production, expected):
    assert config._default_origins(rp_id, production) == expected


def test_env_int_rejects_garbage(monkeypatch):
    monkeypatch.setenv("CAREGIVER_CHALLENGE_TTL", "five minutes")
    with pytest.raises(ConfigurationError):
        config._env_int("CAREGIVER_CHALLENGE_TTL", 300)


def test_env_flag(monkeypatch):
    monkeypatch.delenv("CAREGIVER_ALLOW_COUNTERLESS", raising=False)
    assert config._env_flag("CAREGIVER_ALLOW_COUNTERLESS") is None
    monkeypatch.setenv("CAREGIVER_ALLOW_COUNTERLESS", "off")
    assert config._env_flag("CAREGIVER_ALLOW_COUNTERLESS") is False
    monkeypatch.setenv("CAREGIVER_ALLOW_COUNTERLESS", "yes")
    assert config._env_flag("CAREGIVER_ALLOW_COUNTERLESS") is True


def test_multiple_subdomain_origins_are_accepted():
    target = Flask("multi-origin")
    relying_party = configure_relying_party(
        target,
        name="CareGiver App",
        rp_id="care.example.com",
        origins=["https://care.example.com", "https://staff.care.example.com/"],
    )

    assert relying_party.origins == ("https://care.example.com", "https://staff.care.example.com")
    assert relying_party.accepts_origin("https://staff.care.example.com")
    assert not relying_party.accepts_origin("https://other.care.example.com")
    assert target.config["WEBAUTHN_RP_ID"] == "care.example.com"
    assert target.extensions[config._RP_EXTENSION_KEY] is relying_party


def test_origin_outside_rp_id_fails_at_startup():
    target = Flask("bad-origin")
    with pytest.raises(ConfigurationError):
        configure_relying_party(
            target,
            rp_id="care.example.com",
            origins=["https://care.example.com", "https://project.replit.dev"],
        )
    assert config._RP_EXTENSION_KEY not in target.extensions


def test_plain_http_origin_is_rejected_outside_localhost():
    relying_party = RelyingParty(name="CareGiver App", id="care.example.com", origins=("http://care.example.com",))
    with pytest.raises(ConfigurationError):
        relying_party.validate()


def test_empty_origin_list_is_rejected():
    with pytest.raises(ConfigurationError):
        RelyingParty(name="CareGiver App", id="localhost", origins=()).validate()


def test_fido_server_is_bound_to_relying_party():
    relying_party = RelyingParty(name="CareGiver App", id="localhost", origins=("http://localhost:5000",))
    server = create_fido_server(relying_party)
    assert server.rp.id == "localhost"
    assert server.rp.name == "CareGiver App"
