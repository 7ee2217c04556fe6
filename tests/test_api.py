"""
Tests for the HTTP surface
==========================

Auth, validation and error mapping for the non-webhook endpoints.
"""

from conftest import checkout_session, parallel_array_bundle, upload

CREATOR = "creator_1"


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["store"] == "memory"
        assert "X-Response-Time-Ms" in response.headers


class TestVerifyPurchaseEndpoint:

    def test_success(self, client, store, stripe_fake):
        store.seed("bundles", "bundle_1", parallel_array_bundle())
        stripe_fake.sessions["cs_test_1"] = checkout_session(buyer_user_id="buyer_1")

        response = client.post("/api/verify-purchase", json={"sessionId": "cs_test_1"})

        assert response.status_code == 200
        assert response.json()["purchase"]["contentCount"] == 2

    def test_bearer_header_used_as_token(self, client, store, stripe_fake, auth):
        store.seed("bundles", "bundle_1", parallel_array_bundle())
        stripe_fake.sessions["cs_test_1"] = checkout_session()
        token = auth.issue_token("header_uid")

        response = client.post(
            "/api/verify-purchase", json={"sessionId": "cs_test_1"}, headers=bearer(token)
        )

        assert response.status_code == 200
        assert response.json()["purchase"]["buyerUid"] == "header_uid"

    def test_missing_ids(self, client):
        response = client.post("/api/verify-purchase", json={})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Missing session ID or payment intent ID"
        assert body["possibleCauses"]
        assert "supportLink" in body["debugInfo"]

    def test_payment_not_completed(self, client, stripe_fake):
        session = checkout_session(buyer_user_id="buyer_1")
        session["payment_status"] = "unpaid"
        stripe_fake.sessions["cs_test_1"] = session

        response = client.post("/api/verify-purchase", json={"sessionId": "cs_test_1"})

        assert response.status_code == 400
        assert response.json()["error"] == "Payment not completed"


class TestBundleContentEndpoints:

    def _seed(self, store):
        store.seed("bundles", "b1", {
            "title": "Pack",
            "creatorId": CREATOR,
            "detailedContentItems": [{"id": "up_1", "title": "clip1", "fileUrl": "u1"}],
        })
        store.seed("uploads", "up_1", upload(CREATOR, "clip1"))
        store.seed("uploads", "up_2", upload(CREATOR, "clip2"))
        store.seed("uploads", "up_x", upload("someone_else", "other"))

    def test_requires_auth(self, client, store):
        self._seed(store)
        assert client.get("/api/bundles/b1/content").status_code == 401
        assert client.get("/api/bundles/b1/content", headers=bearer("bogus")).status_code == 401

    def test_creator_lists_content(self, client, store, auth):
        self._seed(store)
        token = auth.issue_token(CREATOR)

        response = client.get("/api/bundles/b1/content", headers=bearer(token))

        assert response.status_code == 200
        assert [i["id"] for i in response.json()["items"]] == ["up_1"]

    def test_buyer_lists_content(self, client, store, auth):
        self._seed(store)
        store.seed("bundlePurchases", "cs_1", {"buyerUid": "buyer_1", "bundleId": "b1"})
        token = auth.issue_token("buyer_1")

        response = client.get("/api/bundles/b1/content", headers=bearer(token))

        assert response.status_code == 200

    def test_stranger_forbidden(self, client, store, auth):
        self._seed(store)
        token = auth.issue_token("stranger")

        assert client.get("/api/bundles/b1/content", headers=bearer(token)).status_code == 403

    def test_missing_bundle(self, client, auth):
        token = auth.issue_token(CREATOR)
        assert client.get("/api/bundles/nope/content", headers=bearer(token)).status_code == 404

    def test_add_content_dedupes(self, client, store, auth):
        self._seed(store)
        token = auth.issue_token(CREATOR)

        response = client.post(
            "/api/bundles/b1/content",
            json={"uploadIds": ["up_1", "up_2", "up_2"]},
            headers=bearer(token),
        )

        assert response.status_code == 200
        assert response.json()["contentItems"] == ["up_1", "up_2"]
        bundle = store.collection("bundles")["b1"]
        assert bundle["contentItems"] == ["up_1", "up_2"]
        assert bundle["contentTitles"] == ["clip1", "clip2"]
        assert len(bundle["detailedContentItems"]) == 2

    def test_add_foreign_upload_forbidden(self, client, store, auth):
        self._seed(store)
        token = auth.issue_token(CREATOR)

        response = client.post(
            "/api/bundles/b1/content", json={"uploadIds": ["up_x"]}, headers=bearer(token)
        )

        assert response.status_code == 403

    def test_add_missing_upload(self, client, store, auth):
        self._seed(store)
        token = auth.issue_token(CREATOR)

        response = client.post(
            "/api/bundles/b1/content", json={"uploadIds": ["ghost"]}, headers=bearer(token)
        )

        assert response.status_code == 404

    def test_add_requires_ids(self, client, store, auth):
        self._seed(store)
        token = auth.issue_token(CREATOR)

        response = client.post("/api/bundles/b1/content", json={"uploadIds": []}, headers=bearer(token))

        assert response.status_code == 400

    def test_non_creator_cannot_modify(self, client, store, auth):
        self._seed(store)
        token = auth.issue_token("stranger")

        response = client.post(
            "/api/bundles/b1/content", json={"uploadIds": ["up_2"]}, headers=bearer(token)
        )

        assert response.status_code == 403

    def test_remove_content(self, client, store, auth):
        self._seed(store)
        token = auth.issue_token(CREATOR)

        response = client.request(
            "DELETE", "/api/bundles/b1/content", json={"uploadId": "up_1"}, headers=bearer(token)
        )

        assert response.status_code == 200
        assert response.json()["contentItems"] == []
        assert store.collection("bundles")["b1"]["contentUrls"] == []

    def test_remove_content_by_query(self, client, store, auth):
        self._seed(store)
        token = auth.issue_token(CREATOR)

        response = client.delete("/api/bundles/b1/content?uploadId=up_1", headers=bearer(token))

        assert response.status_code == 200


class TestBundleJobEndpoints:

    def test_requires_auth(self, client):
        response = client.post("/api/bundle-jobs", json={"title": "x"})
        assert response.status_code == 401

    def test_missing_fields(self, client, auth):
        token = auth.issue_token(CREATOR)

        response = client.post(
            "/api/bundle-jobs",
            json={"title": "Pack", "description": "desc", "contentIds": ["up_1"]},
            headers=bearer(token),
        )

        assert response.status_code == 400
        assert "Missing required fields" in response.json()["error"]

    def test_negative_price(self, client, auth):
        token = auth.issue_token(CREATOR)

        response = client.post(
            "/api/bundle-jobs",
            json={"title": "Pack", "description": "desc", "price": -5, "contentIds": ["up_1"]},
            headers=bearer(token),
        )

        assert response.status_code == 400

    def test_submit_and_poll(self, client, auth):
        token = auth.issue_token(CREATOR)

        created = client.post(
            "/api/bundle-jobs",
            json={"title": "Pack", "description": "desc", "price": 5, "contentIds": ["up_1"]},
            headers=bearer(token),
        )

        assert created.status_code == 200
        body = created.json()
        assert body["success"] is True
        assert body["message"] == "Bundle creation job started"

        polled = client.get(f"/api/bundle-jobs?jobId={body['jobId']}", headers=bearer(token))
        assert polled.status_code == 200
        job = polled.json()["job"]
        assert job["id"] == body["jobId"]
        assert job["status"] in {"queued", "processing", "retrying", "failed", "completed"}
        assert job["maxRetries"] == 3

    def test_poll_requires_job_id(self, client, auth):
        token = auth.issue_token(CREATOR)
        assert client.get("/api/bundle-jobs", headers=bearer(token)).status_code == 400

    def test_poll_other_users_job(self, client, auth):
        owner = auth.issue_token(CREATOR)
        other = auth.issue_token("intruder")
        created = client.post(
            "/api/bundle-jobs",
            json={"title": "Pack", "description": "desc", "price": 5, "contentIds": ["up_1"]},
            headers=bearer(owner),
        )

        response = client.get(f"/api/bundle-jobs?jobId={created.json()['jobId']}", headers=bearer(other))

        assert response.status_code == 403

    def test_poll_unknown_job(self, client, auth):
        token = auth.issue_token(CREATOR)
        assert client.get("/api/bundle-jobs?jobId=nope", headers=bearer(token)).status_code == 404
