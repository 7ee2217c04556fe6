"""
Tests for the Guest Account Provisioner
=======================================
"""

import pytest

from errors import AccountExistsError
from pipeline.guest_provisioner import (
    PASSWORD_CHARSET,
    GuestAccountProvisioner,
    generate_password,
)
from services.auth_service import InMemoryAuthProvider
from services.email_service import EmailService, IEmailSender
from storage.document_store import InMemoryDocumentStore


class FailingSender(IEmailSender):
    async def send(self, message):
        raise RuntimeError("sendgrid unavailable")


@pytest.fixture
def email_service(email_sender):
    return EmailService(email_sender, "https://app.example.com/dashboard/purchases")


class TestPassword:

    def test_length_and_charset(self):
        password = generate_password()
        assert len(password) == 12
        assert set(password) <= set(PASSWORD_CHARSET)

    def test_ambiguous_characters_excluded(self):
        for ch in "0O1lI":
            assert ch not in PASSWORD_CHARSET


class TestEnsureBuyerAccount:

    @pytest.mark.asyncio
    async def test_creates_account_profile_and_email(self, auth, store, email_service, email_sender):
        provisioner = GuestAccountProvisioner(auth, store, email_service)

        account = await provisioner.ensure_buyer_account("new@example.com", "New Buyer")

        assert account.created and account.is_guest
        assert not account.placeholder

        profile = store.collection("users")[account.uid]
        assert profile["email"] == "new@example.com"
        assert profile["isGuestCreated"] is True
        assert profile["emailVerified"] is False
        assert profile["plan"] == "free"
        assert profile["username"].startswith("user_")

        assert len(email_sender.outbox) == 1
        message = email_sender.outbox[0]
        assert message.to == "new@example.com"
        assert auth.password_for(account.uid) in message.text
        assert "https://app.example.com/dashboard/purchases" in message.html

    @pytest.mark.asyncio
    async def test_display_name_defaults_to_email_local_part(self, auth, store, email_service):
        provisioner = GuestAccountProvisioner(auth, store, email_service)

        account = await provisioner.ensure_buyer_account("jo.smith@example.com")

        assert account.display_name == "jo.smith"

    @pytest.mark.asyncio
    async def test_existing_user_is_reused(self, auth, store, email_service, email_sender):
        existing = await auth.create_user("known@example.com", "pw", "Known")
        provisioner = GuestAccountProvisioner(auth, store, email_service)

        account = await provisioner.ensure_buyer_account("known@example.com")

        assert account.uid == existing.uid
        assert not account.is_guest
        assert email_sender.outbox == []
        assert store.collection("users") == {}

    @pytest.mark.asyncio
    async def test_email_failure_keeps_account(self, auth, store):
        email = EmailService(FailingSender(), "https://app.example.com/dashboard/purchases")
        provisioner = GuestAccountProvisioner(auth, store, email)

        account = await provisioner.ensure_buyer_account("mailfail@example.com")

        assert account.created
        assert not account.placeholder
        assert account.uid in store.collection("users")

    @pytest.mark.asyncio
    async def test_auth_failure_returns_placeholder(self, store, email_service):
        class BrokenAuth(InMemoryAuthProvider):
            async def create_user(self, *args, **kwargs):
                raise RuntimeError("auth backend down")

        provisioner = GuestAccountProvisioner(BrokenAuth(), store, email_service)

        account = await provisioner.ensure_buyer_account("orphan@example.com")

        assert account.placeholder
        assert account.uid.startswith("guest_")
        assert account.uid[len("guest_"):].isdigit()

    @pytest.mark.asyncio
    async def test_profile_write_failure_keeps_real_uid(self, auth, email_service, email_sender):
        class UsersWriteFails(InMemoryDocumentStore):
            async def set(self, collection, doc_id, data, merge=False):
                if collection == "users":
                    raise ConnectionError("firestore unavailable")
                await super().set(collection, doc_id, data, merge=merge)

        store = UsersWriteFails()
        provisioner = GuestAccountProvisioner(auth, store, email_service)

        account = await provisioner.ensure_buyer_account("profilefail@example.com")

        assert not account.placeholder
        assert account.created
        assert account.uid in [u.uid for u in auth.users]
        assert store.collection("users") == {}
        assert [m.to for m in email_sender.outbox] == ["profilefail@example.com"]
        assert auth.password_for(account.uid) in email_sender.outbox[0].text


class TestConcurrentCreation:
    """Another checkout for the same email creates the user between lookup and create."""

    @pytest.mark.asyncio
    async def test_existing_account_adopted_after_create_conflict(self, store, email_service, email_sender):
        class LosesCreateRace(InMemoryAuthProvider):
            async def create_user(self, email, password, display_name, email_verified=False):
                await super().create_user(email, "winner-password", "Winner")
                return await super().create_user(email, password, display_name, email_verified)

        auth = LosesCreateRace()
        provisioner = GuestAccountProvisioner(auth, store, email_service)

        account = await provisioner.ensure_buyer_account("race@example.com")

        assert [u.uid for u in auth.users] == [account.uid]
        assert not account.placeholder
        assert not account.created
        assert account.is_guest
        assert email_sender.outbox == []

    @pytest.mark.asyncio
    async def test_create_conflict_with_lookup_failure_falls_back(self, store, email_service):
        class ConflictThenDown(InMemoryAuthProvider):
            calls = 0

            async def get_user_by_email(self, email):
                self.calls += 1
                if self.calls > 1:
                    raise RuntimeError("auth backend down")
                return None

            async def create_user(self, *args, **kwargs):
                raise AccountExistsError("User with email already exists")

        provisioner = GuestAccountProvisioner(ConflictThenDown(), store, email_service)

        account = await provisioner.ensure_buyer_account("flaky@example.com")

        assert account.placeholder
        assert account.uid.startswith("guest_")
