"""
Tests for the provisioning, status and sending endpoints.

Tests cover:
- Health and metrics endpoints
- Owner authentication and authorization (401/403/404)
- Provisioning, queueing and the operator drain
- Live status lookup and the scheduled status poll
- Verification resubmission
- Compliant outbound sending
"""

from datetime import timedelta

import pytest

from conftest import OWNER_ID, business_info
from tollfree_sms.compliance import FOOTER
from tollfree_sms.deps import create_access_token, get_app_settings
from tollfree_sms.main import app
from tollfree_sms.models import VerificationStatus
from tollfree_sms.provisioning import PROVISIONED_MESSAGE, QUEUED_MESSAGE


ADMIN_HEADERS = {"x-admin-token": "test-admin-token"}
CRON_HEADERS = {"x-cron-secret": "test-cron-secret"}


def provision(client, headers, business_id, **overrides):
    return client.post(
        "/api/surge/provision-number",
        json={"businessId": business_id, "businessInfo": business_info(**overrides)},
        headers=headers,
    )


@pytest.fixture
def active_business(store):
    return store.create_business(
        owner_id=OWNER_ID,
        name="Acme Plumbing",
        carrier_account_id="acct_master",
        from_number="+18335550001",
        verification_id="cmp_1",
        verification_status=VerificationStatus.ACTIVE,
    )


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_webhook_secret(self, client, settings):
        app.dependency_overrides[get_app_settings] = lambda: settings.model_copy(update={"SURGE_WEBHOOK_SECRET": ""})

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_metrics_exposed(self, client):
        client.get("/health/live")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text


class TestOwnerAuth:

    def test_missing_token(self, client, business):
        response = provision(client, {}, business.id)

        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_FAILED"

    def test_garbage_token(self, client, business):
        response = provision(client, {"Authorization": "Bearer not-a-jwt"}, business.id)
        assert response.status_code == 401

    def test_expired_token(self, client, business, settings):
        token = create_access_token(OWNER_ID, settings, expires_delta=timedelta(minutes=-5))
        response = provision(client, {"Authorization": f"Bearer {token}"}, business.id)
        assert response.status_code == 401

    def test_other_users_business(self, client, business, settings, surge):
        token = create_access_token("intruder", settings)

        response = provision(client, {"Authorization": f"Bearer {token}"}, business.id)

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"
        assert surge.requests == []

    def test_unknown_business(self, client, auth_headers):
        response = provision(client, auth_headers, "no-such-business")
        assert response.status_code == 404


class TestProvisionEndpoint:

    def test_provision_success(self, client, auth_headers, business, store):
        response = provision(client, auth_headers, business.id)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "from_number": "+18335550001",
            "status": "pending",
            "message": PROVISIONED_MESSAGE,
        }
        store.db.expire_all()
        assert store.get_business(business.id).verification_id == "cmp_1"

    def test_invalid_business_info(self, client, auth_headers, business, surge):
        response = provision(client, auth_headers, business.id, ein="123", contact_email="nope")

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert {d["field"] for d in body["details"]} == {"ein", "contact_email"}
        assert surge.requests == []

    def test_missing_business_id(self, client, auth_headers):
        response = client.post(
            "/api/surge/provision-number",
            json={"businessInfo": business_info()},
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json()["details"][0]["field"] == "businessId"

    def test_carrier_rejection_returns_502(self, client, auth_headers, business, surge):
        surge.respond("purchase_number", 422, {"error": {"message": "No toll-free inventory"}})

        response = provision(client, auth_headers, business.id)

        assert response.status_code == 502
        assert response.json()["error"] == "No toll-free inventory"
        assert response.json()["code"] == "CARRIER_ERROR"

    def test_second_provision_conflicts(self, client, auth_headers, business, surge):
        provision(client, auth_headers, business.id)
        response = provision(client, auth_headers, business.id)

        assert response.status_code == 409
        assert len(surge.calls("purchase_number")) == 1

    def test_capacity_unlimited(self, client):
        response = client.get("/api/surge/capacity")

        assert response.status_code == 200
        assert response.json() == {"success": True, "in_use": 0, "max": 0, "queued": 0, "unlimited": True}


class TestQueueAndDrain:

    @pytest.fixture
    def settings(self, settings):
        return settings.model_copy(update={"SURGE_MAX_NUMBERS": 1})

    def test_queued_when_capacity_exhausted(self, client, auth_headers, business, store, surge):
        store.create_business(owner_id="other", from_number="+18335559999", carrier_account_id="acct_master")

        response = provision(client, auth_headers, business.id)

        assert response.status_code == 200
        assert response.json() == {"success": True, "queued": True, "message": QUEUED_MESSAGE}
        assert surge.calls("purchase_number") == []

        capacity = client.get("/api/surge/capacity").json()
        assert capacity == {"success": True, "in_use": 1, "max": 1, "queued": 1, "unlimited": False}

    def test_drain_requires_admin_token(self, client):
        assert client.post("/api/surge/provisioning/drain").status_code == 401
        assert client.post("/api/surge/provisioning/drain", headers={"x-admin-token": "wrong"}).status_code == 401

    def test_drain_provisions_queued_business(self, client, auth_headers, business, store, surge):
        other = store.create_business(owner_id="other", from_number="+18335559999", carrier_account_id="acct_master")
        provision(client, auth_headers, business.id)

        # Capacity frees up
        store.update_business(other.id, from_number=None)
        response = client.post("/api/surge/provisioning/drain", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"success": True, "drained": 1}
        store.db.expire_all()
        assert store.get_business(business.id).from_number == "+18335550001"

    def test_drain_accepts_query_token(self, client):
        response = client.post("/api/surge/provisioning/drain?token=test-admin-token")

        assert response.status_code == 200
        assert response.json() == {"success": True, "drained": 0}


class TestDrainUnlimited:

    def test_unlimited_capacity_message(self, client):
        response = client.post("/api/surge/provisioning/drain", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["drained"] == 0
        assert body["message"]


class TestStatusEndpoint:

    def test_not_provisioned(self, client, auth_headers, business, surge):
        response = client.get(f"/api/surge/status?businessId={business.id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "not_provisioned"
        assert surge.requests == []

    def test_live_status_persisted(self, client, auth_headers, store, surge):
        business = store.create_business(
            owner_id=OWNER_ID,
            carrier_account_id="acct_master",
            from_number="+18335550001",
            verification_status=VerificationStatus.PENDING,
        )
        surge.capability_status = "approved"

        response = client.get(f"/api/surge/status?businessId={business.id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert response.json()["from_number"] == "+18335550001"
        store.db.expire_all()
        assert store.get_business(business.id).verification_status == VerificationStatus.ACTIVE

    def test_carrier_failure_falls_back_to_stored_status(self, client, auth_headers, store, surge):
        business = store.create_business(
            owner_id=OWNER_ID,
            carrier_account_id="acct_master",
            from_number="+18335550001",
            verification_status=VerificationStatus.PENDING,
        )
        surge.respond("capability_status", 503, {"error": "unavailable"})

        response = client.get(f"/api/surge/status?businessId={business.id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "pending"

    def test_requires_business_id(self, client, auth_headers):
        assert client.get("/api/surge/status", headers=auth_headers).status_code == 422

    def test_requires_owner(self, client, business, settings):
        token = create_access_token("intruder", settings)
        response = client.get(
            f"/api/surge/status?businessId={business.id}",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 403


class TestStatusPoll:

    def test_requires_cron_secret(self, client):
        assert client.post("/api/surge/status/poll").status_code == 401

    def test_poll_with_header(self, client, store, surge):
        store.create_business(owner_id="a", carrier_account_id="acct_1", verification_status=VerificationStatus.PENDING)
        surge.capability_status = "approved"

        response = client.post("/api/surge/status/poll", headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"success": True, "checked": 1, "updated": 1}

    def test_poll_with_bearer_secret(self, client):
        response = client.post("/api/surge/status/poll", headers={"Authorization": "Bearer test-cron-secret"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "checked": 0, "updated": 0}


class TestResubmitEndpoint:

    def test_resubmit(self, client, auth_headers, store, surge):
        business = store.create_business(
            owner_id=OWNER_ID,
            carrier_account_id="acct_master",
            from_number="+18335550001",
            verification_id="cmp_old",
            verification_status=VerificationStatus.ACTION_NEEDED,
            last_verification_error="Opt-in evidence unclear",
        )

        response = client.post(
            "/api/surge/verification/resubmit",
            json={"businessId": business.id, "businessInfo": business_info()},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "status": "pending", "verification_id": "cmp_1"}
        assert surge.calls("purchase_number") == []

    def test_resubmit_without_account_conflicts(self, client, auth_headers, business):
        response = client.post(
            "/api/surge/verification/resubmit",
            json={"businessId": business.id, "businessInfo": business_info()},
            headers=auth_headers,
        )

        assert response.status_code == 409


class TestSendEndpoint:

    def send(self, client, headers, business_id, to="+14155550199", body="Your order is ready"):
        return client.post(
            "/api/surge/sms/send",
            json={"businessId": business_id, "to": to, "body": body},
            headers=headers,
        )

    def test_send_appends_footer_and_stores(self, client, auth_headers, active_business, store, surge):
        response = self.send(client, auth_headers, active_business.id, to="(415) 555-0199")

        assert response.status_code == 200
        assert response.json() == {"success": True, "message_id": "msg_out_1", "status": "queued", "to": "+14155550199"}
        sent = surge.bodies("send_message")[0]
        assert sent["body"] == f"Your order is ready {FOOTER}"

        store.db.expire_all()
        message = store.get_message_by_carrier_id("msg_out_1")
        assert message.direction == "outbound"
        assert message.body.endswith(FOOTER)

    def test_existing_footer_not_duplicated(self, client, auth_headers, active_business, surge):
        self.send(client, auth_headers, active_business.id, body=f"Hi! {FOOTER}")
        assert surge.bodies("send_message")[0]["body"] == f"Hi! {FOOTER}"

    def test_pending_business_cannot_send(self, client, auth_headers, store, active_business, surge):
        store.update_business(active_business.id, verification_status=VerificationStatus.PENDING)

        response = self.send(client, auth_headers, active_business.id)

        assert response.status_code == 409
        assert "pending verification" in response.json()["error"]
        assert surge.requests == []

    def test_action_needed_reports_reason(self, client, auth_headers, store, active_business):
        store.update_business(
            active_business.id,
            verification_status=VerificationStatus.ACTION_NEEDED,
            last_verification_error="Upload opt-in screenshot",
        )

        response = self.send(client, auth_headers, active_business.id)

        assert response.status_code == 409
        assert "Upload opt-in screenshot" in response.json()["error"]

    def test_opted_out_recipient_blocked(self, client, auth_headers, store, active_business, surge):
        store.set_contact_opted_out(active_business.id, "+14155550199")

        response = self.send(client, auth_headers, active_business.id)

        assert response.status_code == 409
        assert surge.requests == []

    def test_invalid_recipient(self, client, auth_headers, active_business):
        response = self.send(client, auth_headers, active_business.id, to="12345")

        assert response.status_code == 422
        assert response.json()["details"][0]["field"] == "to"

    def test_no_number(self, client, auth_headers, business):
        assert self.send(client, auth_headers, business.id).status_code == 409
