"""Tests for the configurable fake gateway."""

import pytest
from storefront.errors import GatewayError, GatewayUnavailableError
from storefront.payments.gateway import CARD, WALLET, get_gateway, reset_gateways, set_gateway
from storefront.payments.gateway.fake_adapter import FakeGateway
from storefront.payments.gateway.port import InitiateResult


class TestFakeGateway:
    def test_initiate_succeeds_by_default(self):
        gateway = FakeGateway("card")
        result = gateway.initiate(37.5, "USD", {"order_id": "order-1"})

        assert isinstance(result, InitiateResult)
        assert result.status == "pending"
        assert result.external_ref.startswith("fake_pay_")
        assert gateway.fetch_status(result.external_ref) == "pending"

    def test_configured_decline(self):
        gateway = FakeGateway("card")
        gateway.configure(should_succeed=False, failure_reason="Insufficient funds")

        with pytest.raises(GatewayError) as exc:
            gateway.initiate(10.0, "USD", {})
        assert not isinstance(exc.value, GatewayUnavailableError)
        assert exc.value.message == "Insufficient funds"

    def test_fail_times_then_recovers(self):
        gateway = FakeGateway("card")
        gateway.configure(fail_times=1)

        with pytest.raises(GatewayUnavailableError):
            gateway.initiate(10.0, "USD", {})
        assert gateway.initiate(10.0, "USD", {}).external_ref

    def test_signature(self):
        gateway = FakeGateway("card")
        assert gateway.verify_signature({"X-Gateway-Signature": "test-signature"}, b"{}")
        assert not gateway.verify_signature({"X-Gateway-Signature": "nope"}, b"{}")
        assert not gateway.verify_signature({}, b"{}")

    def test_parse_event(self):
        gateway = FakeGateway("card")
        body = FakeGateway.event_body("payment.refunded", "fake_pay_1", event_id="evt_1", amount=5.0)

        event = gateway.parse_event(body)

        assert event.event_id == "evt_1"
        assert event.external_ref == "fake_pay_1"
        assert event.status == "refunded"
        assert event.amount == 5.0

    def test_malformed_body(self):
        with pytest.raises(GatewayError):
            FakeGateway("card").parse_event(b"not json")

    def test_refund_status_is_configurable(self):
        gateway = FakeGateway("card")
        gateway.configure(refund_status="pending")
        assert gateway.refund("fake_pay_1", 5.0, "USD").status == "pending"


class TestRegistry:
    def test_fake_outside_live_mode(self):
        assert isinstance(get_gateway(CARD), FakeGateway)
        assert get_gateway(WALLET).name == WALLET

    def test_same_instance_until_reset(self):
        first = get_gateway(CARD)
        assert get_gateway(CARD) is first
        reset_gateways()
        assert get_gateway(CARD) is not first

    def test_override(self):
        custom = FakeGateway("card")
        set_gateway(CARD, custom)
        assert get_gateway(CARD) is custom

    def test_unknown_name(self):
        from protean.exceptions import ValidationError

        with pytest.raises(ValidationError):
            get_gateway("cash")
