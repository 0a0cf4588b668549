from datetime import datetime, timedelta, timezone

from jose import jwt

from auth import AccessGuard, hash_password, verify_password
from errors import ErrorKind

SECRET = "test-secret"


def test_password_hash_round_trip():
    hashed = hash_password("correct horse")
    assert verify_password("correct horse", hashed)
    assert not verify_password("battery staple", hashed)
    assert hash_password("correct horse") != hashed  # fresh salt each time
    assert not verify_password("anything", "")


def test_issue_and_resolve_token():
    guard = AccessGuard(secret_key=SECRET)
    token = guard.issue_token(42)
    identity = guard.resolve(f"Bearer {token}").unwrap()
    assert identity.user_id == 42
    # bare tokens are accepted too
    assert guard.resolve(token).unwrap().user_id == 42


def test_missing_or_garbled_credentials_are_unauthorized():
    guard = AccessGuard(secret_key=SECRET)
    for credential in (None, "", "   ", "Bearer", "Bearer not-a-jwt"):
        assert guard.resolve(credential).kind is ErrorKind.UNAUTHORIZED


def test_token_signed_with_other_secret_is_rejected():
    token = AccessGuard(secret_key="someone-else").issue_token(1)
    assert AccessGuard(secret_key=SECRET).resolve(token).kind is ErrorKind.UNAUTHORIZED


def test_expired_token_is_rejected():
    guard = AccessGuard(secret_key=SECRET, expiration_minutes=5)
    token = guard.issue_token(7, now=datetime.now(timezone.utc) - timedelta(hours=1))
    assert guard.resolve(token).kind is ErrorKind.UNAUTHORIZED


def test_token_without_user_claim_is_rejected():
    token = jwt.encode({"role": "reader"}, SECRET, algorithm="HS256")
    result = AccessGuard(secret_key=SECRET).resolve(token)
    assert result.kind is ErrorKind.UNAUTHORIZED
    assert "user id" in result.error.message


def test_user_id_claim_is_trusted_verbatim():
    token = jwt.encode({"userId": "15"}, SECRET, algorithm="HS256")
    assert AccessGuard(secret_key=SECRET).resolve(token).unwrap().user_id == 15
