"""
Guest Account Provisioner
=========================
Gives an unauthenticated buyer a real account so their purchase has an owner.

Existing accounts (matched by email) are reused. New accounts get a random
temporary password that is mailed to the buyer with the login link. If the
auth backend itself fails, a placeholder uid (``guest_<epoch-ms>``) is
returned so the purchase record can still be written; such purchases are
orphaned until support reconciles them.
"""

import secrets
from dataclasses import dataclass
from typing import Optional

import structlog

from errors import AccountExistsError
from schemas.models import GuestAccount, epoch_ms
from services.auth_service import IAuthProvider
from services.email_service import EmailService
from storage.document_store import IDocumentStore

logger = structlog.get_logger().bind(component="guest_provisioner")

PASSWORD_CHARSET = "ABCDEFGHJKMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789!@#$%^&*"
PASSWORD_LENGTH = 12


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))


def placeholder_uid() -> str:
    return f"guest_{epoch_ms()}"


@dataclass
class BuyerAccount:
    uid: str
    email: str
    display_name: str
    created: bool = False       # a new auth user was created for this purchase
    placeholder: bool = False   # auth failed; uid is synthetic
    concurrent: bool = False    # another checkout for this email created the user first

    @property
    def is_guest(self) -> bool:
        return self.created or self.placeholder or self.concurrent


class GuestAccountProvisioner:

    def __init__(
        self,
        auth: IAuthProvider,
        store: IDocumentStore,
        email: Optional[EmailService] = None,
    ):
        self.auth = auth
        self.store = store
        self.email = email

    async def ensure_buyer_account(
        self, email: str, display_name: Optional[str] = None
    ) -> BuyerAccount:
        """Return the uid owning purchases for ``email``, creating an account if needed."""
        name = display_name or email.split("@")[0]
        password = generate_password()

        try:
            existing = await self.auth.get_user_by_email(email)
            if existing:
                logger.info("buyer_account_exists", uid=existing.uid, email=email)
                return BuyerAccount(
                    uid=existing.uid,
                    email=email,
                    display_name=existing.display_name or name,
                )
            user = await self.auth.create_user(
                email=email,
                password=password,
                display_name=name,
                email_verified=False,
            )
        except AccountExistsError:
            return await self._adopt_concurrent_account(email, name)
        except Exception as e:
            return self._placeholder(email, name, e)

        await self._write_profile(user.uid, email, name)
        logger.info("guest_account_created", uid=user.uid, email=email)
        await self._send_welcome(email, password, name)
        return BuyerAccount(uid=user.uid, email=email, display_name=name, created=True)

    async def _adopt_concurrent_account(self, email: str, name: str) -> BuyerAccount:
        # Lost the create race; the winner owns the profile and the welcome email.
        try:
            user = await self.auth.get_user_by_email(email)
        except Exception as e:
            return self._placeholder(email, name, e)
        if user is None:
            return self._placeholder(email, name, RuntimeError("account vanished after create conflict"))
        logger.info("guest_account_created_concurrently", uid=user.uid, email=email)
        return BuyerAccount(
            uid=user.uid,
            email=email,
            display_name=user.display_name or name,
            concurrent=True,
        )

    def _placeholder(self, email: str, name: str, error: Exception) -> BuyerAccount:
        uid = placeholder_uid()
        logger.error(
            "guest_account_failed",
            email=email,
            placeholder_uid=uid,
            error=str(error),
            error_type=type(error).__name__,
        )
        return BuyerAccount(uid=uid, email=email, display_name=name, placeholder=True)

    async def _write_profile(self, uid: str, email: str, name: str) -> None:
        profile = GuestAccount(
            uid=uid,
            email=email,
            display_name=name,
            username=f"user_{epoch_ms()}",
        )
        try:
            await self.store.set("users", uid, profile.to_document())
        except Exception as e:
            # The auth user exists and still owns the purchase.
            logger.error("guest_profile_write_failed", uid=uid, email=email, error=str(e))

    async def _send_welcome(self, email: str, password: str, name: str) -> None:
        if self.email is None:
            logger.warning("welcome_email_skipped", email=email, reason="no_email_service")
            return
        try:
            await self.email.send_welcome_email(email, password, name)
        except Exception as e:
            # The account exists; the buyer can still use password reset.
            logger.error("welcome_email_failed", email=email, error=str(e))
