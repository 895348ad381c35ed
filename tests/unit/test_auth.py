"""Unit tests for racereg.auth login tokens."""

import pytest
from fastapi import HTTPException

from racereg import auth
from racereg.auth import CurrentUser, make_login_token, read_login_token, require_roles
from racereg.settings import settings


def test_token_round_trips_user():
    user = CurrentUser(id=7, email="anna@example.com", role="STAFF")
    assert read_login_token(make_login_token(user)) == user


def test_tampered_token_is_rejected():
    token = make_login_token(CurrentUser(id=1, email="a@example.com", role="USER"))
    assert read_login_token(token[:-2] + "xx") is None


def test_expired_token_is_rejected(monkeypatch):
    token = make_login_token(CurrentUser(id=1, email="a@example.com", role="ADMIN"))
    monkeypatch.setattr(settings, "LOGIN_MAX_AGE_SECONDS", -1)
    assert read_login_token(token) is None


def test_token_from_another_key_is_rejected(monkeypatch):
    token = make_login_token(CurrentUser(id=1, email="a@example.com", role="ADMIN"))
    monkeypatch.setattr(settings, "RACEREG_SECRET_KEY", "rotated")
    assert read_login_token(token) is None


def test_require_roles():
    staff_only = require_roles("ADMIN", "STAFF")
    staff = CurrentUser(id=2, email="s@example.com", role="STAFF")
    assert staff_only(staff) is staff
    with pytest.raises(HTTPException) as exc:
        auth.admin_required(staff)
    assert exc.value.status_code == 403
