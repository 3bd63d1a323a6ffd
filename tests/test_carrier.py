"""
Tests for the Surge carrier client.

The HTTP layer is replaced by httpx.MockTransport (see conftest.FakeSurge).
"""

import httpx
import pytest

from conftest import FakeSurge, make_carrier
from tollfree_sms.carrier import (
    CampaignInfo,
    CarrierClient,
    SharedAccountStrategy,
    SubaccountStrategy,
    map_vendor_status,
)
from tollfree_sms.compliance import FOOTER
from tollfree_sms.errors import CarrierError
from tollfree_sms.models import VerificationStatus


class _Business:
    id = "biz_1"
    name = "Acme"
    brand_name = None
    legal_name = "Acme LLC"


class TestStatusMapping:

    @pytest.mark.parametrize("vendor,expected", [
        ("active", VerificationStatus.ACTIVE),
        ("APPROVED", VerificationStatus.ACTIVE),
        ("verified", VerificationStatus.ACTIVE),
        ("rejected", VerificationStatus.DISABLED),
        ("disabled", VerificationStatus.DISABLED),
        ("failed", VerificationStatus.DISABLED),
        ("action_required", VerificationStatus.ACTION_NEEDED),
        ("incomplete", VerificationStatus.ACTION_NEEDED),
        ("pending", VerificationStatus.PENDING),
        ("in_review", VerificationStatus.PENDING),
        ("", VerificationStatus.PENDING),
        (None, VerificationStatus.PENDING),
    ])
    def test_map_vendor_status(self, vendor, expected):
        assert map_vendor_status(vendor) == expected


class TestCampaignInfo:

    def test_samples_carry_disclosure(self):
        campaign = CampaignInfo(brand_name="Acme", opt_in_evidence_url="https://acme.example.com/optin")
        samples = campaign.sample_messages()

        assert len(samples) == 2
        for sample in samples:
            assert FOOTER in sample
            assert "Acme" in sample

    def test_consent_flow_mentions_evidence(self):
        campaign = CampaignInfo(brand_name="Acme", opt_in_evidence_url="https://acme.example.com/optin")
        assert "https://acme.example.com/optin" in campaign.consent_flow()


class TestCarrierClient:

    @pytest.mark.asyncio
    async def test_purchase_number(self, carrier, surge):
        number = await carrier.purchase_number("acct_1")

        assert number.e164 == "+18335550001"
        assert number.phone_id == "pn_1"
        request = surge.calls("purchase_number")[0]
        assert request.url.path == "/accounts/acct_1/phone_numbers"
        assert surge.bodies("purchase_number")[0] == {"type": "toll_free"}

    @pytest.mark.asyncio
    async def test_carrier_error_message_passed_through(self, carrier, surge):
        surge.respond("purchase_number", 422, {"error": {"message": "No toll-free inventory"}})

        with pytest.raises(CarrierError) as exc_info:
            await carrier.purchase_number("acct_1")

        assert exc_info.value.message == "No toll-free inventory"
        assert exc_info.value.carrier_status == 422
        assert exc_info.value.status_code == 502
        assert exc_info.value.details == {"error": {"message": "No toll-free inventory"}}

    @pytest.mark.asyncio
    async def test_error_without_message_uses_http_status(self, carrier, surge):
        surge.respond("capability_status", 503, ["unavailable"])

        with pytest.raises(CarrierError) as exc_info:
            await carrier.get_capability_status("acct_1")

        assert exc_info.value.message.startswith("Surge API error: HTTP 503")

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self, settings):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = CarrierClient(
            settings,
            http_client=httpx.AsyncClient(base_url=settings.SURGE_API_BASE, transport=httpx.MockTransport(boom)),
        )

        with pytest.raises(CarrierError, match="unreachable"):
            await client.purchase_number("acct_1")

    @pytest.mark.asyncio
    async def test_missing_api_key(self, settings, surge):
        client = make_carrier(settings.model_copy(update={"SURGE_API_KEY": ""}), surge)

        with pytest.raises(CarrierError, match="SURGE_API_KEY"):
            await client.purchase_number("acct_1")
        assert surge.requests == []

    @pytest.mark.asyncio
    async def test_submit_verification_payload(self, carrier, surge, settings):
        campaign = CampaignInfo(
            brand_name="Acme",
            opt_in_evidence_url="https://acme.example.com/optin",
            estimated_monthly_volume=250,
        )

        submission = await carrier.submit_verification("acct_1", campaign)

        assert submission.verification_id == "cmp_1"
        assert submission.status == VerificationStatus.PENDING
        body = surge.bodies("submit_verification")[0]
        assert body["opt_in_evidence_url"] == "https://acme.example.com/optin"
        assert body["privacy_policy_url"] == settings.DEFAULT_PRIVACY_URL
        assert body["terms_and_conditions_url"] == settings.DEFAULT_TERMS_URL
        assert body["estimated_monthly_volume"] == 250
        assert all(FOOTER in sample for sample in body["message_samples"])

    @pytest.mark.asyncio
    async def test_capability_status(self, carrier, surge):
        surge.capability_status = "action_required"
        surge.capability_message = "Website unreachable"

        status = await carrier.get_capability_status("acct_1")

        assert status.status == VerificationStatus.ACTION_NEEDED
        assert status.details == "Website unreachable"
        assert status.vendor_status == "action_required"
        params = surge.calls("capability_status")[0].url.params
        assert params.get_list("capabilities") == ["local_messaging", "toll_free_messaging"]

    @pytest.mark.asyncio
    async def test_send_message(self, carrier, surge):
        sent = await carrier.send_message("acct_1", "+18335550001", "+14155550199", "hello")

        assert sent.message_id == "msg_out_1"
        assert sent.status == "queued"
        body = surge.bodies("send_message")[0]
        assert body["conversation"]["contact"]["phone_number"] == "+14155550199"
        assert body["body"] == "hello"


class TestAccountStrategies:

    def test_strategy_from_settings(self, settings, surge):
        assert isinstance(make_carrier(settings, surge).account_strategy, SharedAccountStrategy)
        subaccounts = settings.model_copy(update={"SURGE_USE_SUBACCOUNTS": True})
        assert isinstance(make_carrier(subaccounts, surge).account_strategy, SubaccountStrategy)

    @pytest.mark.asyncio
    async def test_shared_account(self, carrier, surge):
        assert await carrier.resolve_account(_Business()) == "acct_master"
        assert surge.requests == []

    @pytest.mark.asyncio
    async def test_shared_account_not_configured(self, settings):
        client = make_carrier(settings, FakeSurge(), account_strategy=SharedAccountStrategy(""))

        with pytest.raises(CarrierError, match="SURGE_ACCOUNT_ID"):
            await client.resolve_account(_Business())

    @pytest.mark.asyncio
    async def test_subaccount_created_per_business(self, settings, surge):
        client = make_carrier(settings, surge, account_strategy=SubaccountStrategy())

        account_id = await client.resolve_account(_Business())

        assert account_id == "acct_sub_1"
        assert surge.bodies("create_account")[0] == {"name": "Acme LLC", "metadata": {"business_id": "biz_1"}}
