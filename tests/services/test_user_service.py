"""Tests for the account directory used by the lockout service"""

from sqlalchemy import select

from guardapi import db
from guardapi.models import User
from guardapi.services.user_service import UserAccountDirectory


def account_active(email):
    return db.session.scalar(select(User.is_active).where(User.email == email))


class TestUserAccountDirectory:
    def test_find_is_case_insensitive(self, core, regular_user):
        account = core.lockout.accounts.find("USER@test.com")
        assert account["email"] == "user@test.com"
        assert account["is_active"] is True
        assert core.lockout.accounts.find("ghost@test.com") is None

    def test_deactivate_and_activate(self, core, regular_user):
        accounts = core.lockout.accounts
        assert accounts.deactivate("user@test.com") is True
        assert accounts.deactivate("user@test.com") is False
        assert account_active("user@test.com") is False

        assert accounts.activate("user@test.com") is True
        assert accounts.activate("user@test.com") is False
        assert account_active("user@test.com") is True

    def test_updates_leave_request_transaction_alone(
        self, core, regular_user, admin_user
    ):
        admin_user.name = "Pending Rename"

        assert core.lockout.accounts.deactivate("user@test.com") is True
        db.session.rollback()

        assert db.session.get(User, admin_user.id).name == "Admin User"
        assert account_active("user@test.com") is False

    def test_default_session_binds_to_application_engine(self, app, regular_user):
        accounts = UserAccountDirectory()
        assert accounts.deactivate("user@test.com") is True
        assert account_active("user@test.com") is False
