from cryptography.fernet import Fernet
from sqlalchemy import text

from conftest import add_location
from models import Realm
from token_crypto import PREFIX, decrypt_token, encrypt_token


def test_realm_tokens_are_encrypted_at_rest(session) -> None:
    location = add_location(session, "BOS", realm_external_id="r1")

    stored = session.execute(
        text("SELECT access_token, refresh_token FROM realms WHERE id = :id"),
        {"id": location.realm_id},
    ).one()
    assert stored.refresh_token.startswith(PREFIX)
    assert "refresh-r1" not in stored.refresh_token
    assert "access-r1" not in stored.access_token

    session.expire_all()
    realm = session.get(Realm, location.realm_id)
    assert realm.refresh_token == "refresh-r1"
    assert realm.access_token == "access-r1"


def test_same_token_encrypts_differently_each_time() -> None:
    assert encrypt_token("refresh-x") != encrypt_token("refresh-x")


def test_rows_written_before_encryption_still_read(session) -> None:
    location = add_location(session, "BOS", realm_external_id="r1")
    session.execute(
        text("UPDATE realms SET refresh_token = 'legacy-plain' WHERE id = :id"),
        {"id": location.realm_id},
    )
    session.commit()
    session.expire_all()
    assert session.get(Realm, location.realm_id).refresh_token == "legacy-plain"


def test_token_from_another_key_reads_as_missing() -> None:
    other = Fernet(Fernet.generate_key())
    assert decrypt_token(encrypt_token("refresh-x", other)) is None
    assert decrypt_token(encrypt_token("refresh-x", other), other) == "refresh-x"
