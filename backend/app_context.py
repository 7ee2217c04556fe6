# app_context.py
# ============================================================================
# APPLICATION CONTEXT
# ============================================================================
# Built once at startup and attached to app.state. Owns the external clients
# (Firestore, Firebase Auth, Stripe, SendGrid) and every pipeline service.
# ============================================================================

from dataclasses import dataclass
from typing import Optional

import firebase_admin
import structlog
from firebase_admin import credentials

from config import Settings
from pipeline.bundle_content import BundleContentService
from pipeline.content_resolver import ContentResolver
from pipeline.guest_provisioner import GuestAccountProvisioner
from pipeline.memberships import MembershipService
from pipeline.purchase_writer import PurchaseRecordWriter
from pipeline.verification import PurchaseVerifier
from pipeline.webhooks import StripeWebhookHandler
from services.auth_service import FirebaseAuthProvider, IAuthProvider, InMemoryAuthProvider
from services.email_service import (
    EmailService,
    IEmailSender,
    InMemoryEmailSender,
    SendGridEmailSender,
)
from services.payments import IPaymentProvider, StripePaymentProvider
from storage.document_store import FirestoreDocumentStore, IDocumentStore, InMemoryDocumentStore
from tasks.bundle_jobs import BundleJobQueue

logger = structlog.get_logger().bind(component="app_context")


def init_firebase(settings: Settings) -> firebase_admin.App:
    """Initialize the default Firebase app exactly once."""
    if firebase_admin._apps:
        return firebase_admin.get_app()
    if settings.firebase_credentials_path:
        cred = credentials.Certificate(settings.firebase_credentials_path)
    else:
        cred = credentials.Certificate(settings.firebase_service_account())
    options = {"projectId": settings.firebase_project_id} if settings.firebase_project_id else None
    app = firebase_admin.initialize_app(cred, options)
    logger.info("firebase_initialized", project_id=settings.firebase_project_id)
    return app


@dataclass
class AppContext:
    settings: Settings
    store: IDocumentStore
    auth: IAuthProvider
    payments: IPaymentProvider
    email: EmailService
    resolver: ContentResolver
    provisioner: GuestAccountProvisioner
    writer: PurchaseRecordWriter
    verifier: PurchaseVerifier
    memberships: MembershipService
    webhooks: StripeWebhookHandler
    jobs: BundleJobQueue
    content: BundleContentService

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: Optional[IDocumentStore] = None,
        auth: Optional[IAuthProvider] = None,
        payments: Optional[IPaymentProvider] = None,
        email_sender: Optional[IEmailSender] = None,
    ) -> "AppContext":
        """Wire every service; collaborators not passed in are created from settings."""
        if store is None or auth is None:
            if settings.firebase_configured:
                app = init_firebase(settings)
                store = store or FirestoreDocumentStore(app)
                auth = auth or FirebaseAuthProvider(app)
            else:
                logger.warning("firebase_not_configured", fallback="in_memory")
                store = store or InMemoryDocumentStore()
                auth = auth or InMemoryAuthProvider()

        if payments is None:
            payments = StripePaymentProvider(
                settings.stripe_secret_key, settings.stripe_webhook_secret
            )

        if email_sender is None:
            if settings.sendgrid_api_key:
                email_sender = SendGridEmailSender(settings.sendgrid_api_key, settings.email_from)
            else:
                logger.warning("sendgrid_not_configured", fallback="in_memory")
                email_sender = InMemoryEmailSender()

        email = EmailService(email_sender, settings.login_url, settings.support_email)
        resolver = ContentResolver(store)
        provisioner = GuestAccountProvisioner(auth, store, email)
        writer = PurchaseRecordWriter(store, resolver, provisioner)
        memberships = MembershipService(store, auth, payments)

        return cls(
            settings=settings,
            store=store,
            auth=auth,
            payments=payments,
            email=email,
            resolver=resolver,
            provisioner=provisioner,
            writer=writer,
            verifier=PurchaseVerifier(store, payments, auth, writer, settings.support_email),
            memberships=memberships,
            webhooks=StripeWebhookHandler(payments, store, writer, memberships),
            jobs=BundleJobQueue(
                store,
                payments,
                memberships,
                max_retries=settings.job_max_retries,
                backoff_base_seconds=settings.job_backoff_base_seconds,
            ),
            content=BundleContentService(store, resolver),
        )
