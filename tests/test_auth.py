from datetime import datetime, timedelta, timezone

import jwt

from orderflow.api.auth_local import create_access_token, decode_access_token, principal_from_token
from orderflow.application.schemas import Role
from orderflow.core_settings import get_settings


def test_token_round_trip_to_principal():
    principal = principal_from_token(create_access_token(42, "admin"))
    assert principal.user_id == 42
    assert principal.role == Role.ADMIN
    assert principal.is_admin


def test_role_defaults_to_customer():
    settings = get_settings()
    exp = datetime.now(timezone.utc) + timedelta(minutes=5)
    token = jwt.encode({"sub": "7", "exp": exp}, settings.JWT_SECRET, algorithm=settings.JWT_ALG)
    assert principal_from_token(token).role == Role.CUSTOMER


def test_expired_token_is_rejected():
    assert decode_access_token(create_access_token(1, expires_minutes=-1)) is None


def test_foreign_signature_is_rejected():
    exp = datetime.now(timezone.utc) + timedelta(minutes=5)
    token = jwt.encode({"sub": "1", "exp": exp}, "someone-else", algorithm="HS256")
    assert principal_from_token(token) is None


def test_unknown_role_is_rejected():
    settings = get_settings()
    exp = datetime.now(timezone.utc) + timedelta(minutes=5)
    token = jwt.encode({"sub": "1", "role": "root", "exp": exp}, settings.JWT_SECRET, algorithm=settings.JWT_ALG)
    assert principal_from_token(token) is None
