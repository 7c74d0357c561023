"""
Tests for RefundService: Stripe refund creation mirrored into the ledger.
"""

from unittest.mock import patch

import pytest
import stripe

from keyledger.core.errors import ProviderCallFailure
from keyledger.models.payment import PaymentRecord
from keyledger.services.payment_ledger import PaymentLedger
from keyledger.services.refund_service import RefundService, refund_record_status
from keyledger.services.stripe_gateway import StripeGateway


@pytest.fixture
def ledger():
    return PaymentLedger()


@pytest.fixture
def charge(ledger):
    return ledger.upsert(
        PaymentRecord(
            subscriber_id="u1",
            payment_intent_ref="pi_1",
            subscription_ref="sub_1",
            customer_ref="cus_1",
            amount=1000,
            currency="EUR",
            status="succeeded",
            kind="initial charge",
        )
    )


@pytest.fixture
def service(ledger, gateway):
    return RefundService(ledger=ledger, gateway=gateway)


class TestRefundRecordStatus:
    def test_full(self):
        assert refund_record_status("succeeded", 1000, 1000) == "refunded"

    def test_partial(self):
        assert refund_record_status("succeeded", 400, 1000) == "partially_refunded"

    def test_unknown_charge_is_full(self):
        assert refund_record_status("succeeded", 400, None) == "refunded"

    def test_pending_states(self):
        assert refund_record_status("pending", 1000, 1000) == "pending"
        assert refund_record_status("requires_action", 1000, 1000) == "pending"

    def test_failed(self):
        assert refund_record_status("failed", 1000, 1000) == "failed"


class TestRefund:
    @pytest.mark.asyncio
    async def test_full_refund_recorded(self, service, gateway, ledger, charge):
        gateway.create_refund.return_value = {
            "id": "re_1",
            "amount": 1000,
            "currency": "eur",
            "status": "succeeded",
        }

        result = await service.refund("pi_1", idempotency_key="refund-pi_1")

        gateway.create_refund.assert_awaited_once_with("pi_1", None, "refund-pi_1")
        assert result.refund_id == "re_1"
        assert result.status == "refunded"
        assert result.amount == 1000
        assert result.currency == "EUR"

        refund_row = ledger.find_by_external_ref("refund", "re_1")
        assert refund_row.id == result.payment_record_id
        assert refund_row.kind == "refund"
        assert refund_row.subscriber_id == "u1"
        assert refund_row.subscription_ref == "sub_1"
        assert refund_row.metadata_json["payment_intent"] == "pi_1"
        assert refund_row.metadata_json["original_payment_record_id"] == charge.id

        annotated = ledger.get(charge.id)
        assert annotated.metadata_json["refund_id"] == "re_1"
        assert annotated.metadata_json["refund_status"] == "refunded"
        assert annotated.status == "succeeded"

    @pytest.mark.asyncio
    async def test_partial_refund(self, service, gateway, charge):
        gateway.create_refund.return_value = {"id": "re_2", "amount": 300, "currency": "eur", "status": "succeeded"}

        result = await service.refund("pi_1", amount=300)

        gateway.create_refund.assert_awaited_once_with("pi_1", 300, None)
        assert result.status == "partially_refunded"
        assert result.amount == 300

    @pytest.mark.asyncio
    async def test_repeated_refund_keeps_one_row(self, service, gateway, ledger, charge):
        gateway.create_refund.return_value = {"id": "re_1", "amount": 1000, "currency": "eur", "status": "succeeded"}

        first = await service.refund("pi_1", idempotency_key="k")
        second = await service.refund("pi_1", idempotency_key="k")

        assert first.payment_record_id == second.payment_record_id
        assert [r.kind for r in ledger.list_for_subscriber("u1")].count("refund") == 1

    @pytest.mark.asyncio
    async def test_sdk_refund_object_is_recorded(self, ledger, charge):
        sdk_refund = stripe.Refund.construct_from(
            {"id": "re_sdk", "object": "refund", "amount": 1000, "currency": "eur", "status": "succeeded"},
            "sk_test_dummy",
        )
        service = RefundService(ledger=ledger, gateway=StripeGateway())

        with patch("stripe.Refund.create", return_value=sdk_refund):
            result = await service.refund("pi_1")

        assert result.refund_id == "re_sdk"
        assert result.status == "refunded"
        assert ledger.find_by_external_ref("refund", "re_sdk").id == result.payment_record_id

    @pytest.mark.asyncio
    async def test_provider_failure_propagates(self, service, gateway, ledger, charge):
        gateway.create_refund.side_effect = ProviderCallFailure(detail="card_declined")

        with pytest.raises(ProviderCallFailure):
            await service.refund("pi_1")

        assert ledger.get(charge.id).metadata_json.get("refund_id") is None
        assert len(ledger.list_for_subscriber("u1")) == 1
