"""
Tests for Purchase Verification
===============================
"""

import pytest

from errors import VerificationError
from pipeline.purchase_writer import PURCHASES

from conftest import checkout_session, parallel_array_bundle, upload


@pytest.fixture
def paid_session(stripe_fake, store):
    store.seed("bundles", "bundle_1", parallel_array_bundle())
    session = checkout_session(buyer_user_id="buyer_1")
    stripe_fake.sessions[session["id"]] = session
    return session


class TestVerifyBySession:

    @pytest.mark.asyncio
    async def test_writes_purchase_when_webhook_missed(self, ctx, store, paid_session):
        result = await ctx.verifier.verify(session_id="cs_test_1")

        assert result["success"] is True
        assert result["alreadyProcessed"] is False
        assert result["purchase"]["source"] == "verification"
        assert result["verificationDetails"]["method"] == "session"
        assert result["productBox"]["id"] == "bundle_1"
        assert "cs_test_1" in store.collection(PURCHASES)

    @pytest.mark.asyncio
    async def test_already_processed(self, ctx, store, paid_session):
        await ctx.writer.record_purchase(paid_session)

        result = await ctx.verifier.verify(session_id="cs_test_1")

        assert result["alreadyProcessed"] is True
        assert result["purchase"]["source"] == "stripe_webhook"
        assert result["verificationDetails"]["duplicateCheck"] is True

    @pytest.mark.asyncio
    async def test_token_uid_used_as_buyer(self, ctx, auth, stripe_fake, store):
        store.seed("bundles", "bundle_1", parallel_array_bundle())
        session = checkout_session()
        stripe_fake.sessions[session["id"]] = session
        token = auth.issue_token("signed_in_uid", "me@example.com")

        result = await ctx.verifier.verify(session_id="cs_test_1", id_token=token)

        assert result["purchase"]["buyerUid"] == "signed_in_uid"
        assert result["verificationDetails"]["authenticatedUid"] == "signed_in_uid"

    @pytest.mark.asyncio
    async def test_unpaid_session(self, ctx, stripe_fake, paid_session):
        stripe_fake.sessions["cs_test_1"]["payment_status"] = "unpaid"

        with pytest.raises(VerificationError) as exc_info:
            await ctx.verifier.verify(session_id="cs_test_1")

        error = exc_info.value
        assert error.status_code == 400
        assert error.message == "Payment not completed"
        assert error.possible_causes
        assert error.debug_info["sessionId"] == "cs_test_1"
        assert error.debug_info["maxClientRetries"] == 3
        assert error.debug_info["supportLink"].startswith("mailto:help@example.com")

    @pytest.mark.asyncio
    async def test_content_rebuilt_from_uploads(self, ctx, stripe_fake, store):
        store.seed("bundles", "bundle_1", {"title": "Ids only", "price": 4, "contentItems": ["up_1"]})
        store.seed("uploads", "up_1", upload("creator_1", "clip1", size=2048))
        session = checkout_session(buyer_user_id="buyer_1")
        stripe_fake.sessions[session["id"]] = session

        result = await ctx.verifier.verify(session_id="cs_test_1")

        assert result["purchase"]["contentCount"] == 1
        assert result["purchase"]["bundleTotalSize"] == 2048
        assert result["purchase"]["bundleContent"][0]["fileUrl"] == "https://cdn.example.com/clip1.mp4"


class TestVerifyByPaymentIntent:

    @pytest.mark.asyncio
    async def test_matches_existing_purchase(self, ctx, stripe_fake, paid_session):
        await ctx.writer.record_purchase(paid_session)
        stripe_fake.intents["pi_cs_test_1"] = {"id": "pi_cs_test_1", "status": "succeeded", "amount": 500}

        result = await ctx.verifier.verify(payment_intent_id="pi_cs_test_1")

        assert result["alreadyProcessed"] is True
        assert result["purchase"]["id"] == "cs_test_1"
        assert result["verificationDetails"]["method"] == "payment_intent"

    @pytest.mark.asyncio
    async def test_intent_without_session(self, ctx, stripe_fake, store):
        store.seed("bundles", "bundle_1", parallel_array_bundle())
        stripe_fake.intents["pi_direct"] = {
            "id": "pi_direct",
            "status": "succeeded",
            "amount": 999,
            "amount_received": 999,
            "currency": "usd",
            "metadata": {"bundleId": "bundle_1", "buyerUid": "buyer_2"},
        }

        result = await ctx.verifier.verify(payment_intent_id="pi_direct")

        assert result["purchase"]["id"] == "pi_direct"
        assert result["purchase"]["buyerUid"] == "buyer_2"
        assert "pi_direct" in store.collection(PURCHASES)

    @pytest.mark.asyncio
    async def test_intent_not_succeeded(self, ctx, stripe_fake):
        stripe_fake.intents["pi_pending"] = {"id": "pi_pending", "status": "processing"}

        with pytest.raises(VerificationError) as exc_info:
            await ctx.verifier.verify(payment_intent_id="pi_pending")
        assert exc_info.value.status_code == 400


class TestVerifyErrors:

    @pytest.mark.asyncio
    async def test_no_ids(self, ctx):
        with pytest.raises(VerificationError) as exc_info:
            await ctx.verifier.verify()
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_token(self, ctx, paid_session):
        with pytest.raises(VerificationError) as exc_info:
            await ctx.verifier.verify(session_id="cs_test_1", id_token="forged")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_stripe_failure(self, ctx):
        with pytest.raises(VerificationError) as exc_info:
            await ctx.verifier.verify(session_id="cs_missing")
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_bundle_deleted(self, ctx, stripe_fake, store):
        session = checkout_session(bundle_id="gone", buyer_user_id="buyer_1")
        stripe_fake.sessions[session["id"]] = session

        with pytest.raises(VerificationError) as exc_info:
            await ctx.verifier.verify(session_id="cs_test_1")
        assert exc_info.value.status_code == 404
