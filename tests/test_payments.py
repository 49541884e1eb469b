import uuid

import pytest
from httpx import AsyncClient

from fulfillment.core.exceptions import InvalidRequestError, PaymentProcessorUnavailableError
from fulfillment.models.order import GenerationState, PaymentStatus
from fulfillment.services.coordinator import GENERATE_REPORT
from fulfillment.services.payment_gateway import CheckoutVerdict, parse_order_ids
from fulfillment.services.payment_verifier import PaymentVerifier


@pytest.fixture
def verifier(session_maker, gateway, orchestrator):
    return PaymentVerifier(session_maker, gateway, orchestrator, bypass_enabled=True, max_batch_size=10)


@pytest.mark.asyncio
async def test_verify_paid_checkout_dispatches_batch(client: AsyncClient, gateway, make_order, load_order, outbox_rows):
    batch_id = str(uuid.uuid4())
    first = await make_order(checkout_batch_id=batch_id, pet_name="Mochi")
    second = await make_order(checkout_batch_id=batch_id, pet_name="Pepper")
    gateway.verdicts["cs_test_paid"] = CheckoutVerdict(True, "paid", [first.id, second.id])

    response = await client.post("/payments/verify", json={
        "checkout_reference": "cs_test_paid",
        "order_id": first.id
    })

    assert response.status_code == 200
    data = response.json()
    assert data["paid"] is True
    assert data["processor_status"] == "paid"
    assert data["order"]["id"] == first.id
    assert data["order"]["status"] == "processing"
    assert {o["id"] for o in data["batch"]} == {first.id, second.id}

    for order in (first, second):
        stored = await load_order(order.id)
        assert stored.payment_status == PaymentStatus.PAID.value
        assert stored.checkout_reference == "cs_test_paid"
    assert {row.aggregate_id for row in await outbox_rows(GENERATE_REPORT)} == {first.id, second.id}


@pytest.mark.asyncio
async def test_verify_unpaid_checkout_changes_nothing(client: AsyncClient, gateway, make_order, load_order, outbox_rows):
    order = await make_order()
    gateway.verdicts["cs_test_open"] = CheckoutVerdict(False, "unpaid", [order.id])

    response = await client.post("/payments/verify", json={
        "checkout_reference": "cs_test_open",
        "order_id": order.id
    })

    assert response.status_code == 200
    data = response.json()
    assert data["paid"] is False
    assert data["processor_status"] == "unpaid"
    assert data["order"]["status"] == "awaiting_payment"
    assert (await load_order(order.id)).payment_status == PaymentStatus.PENDING.value
    assert await outbox_rows() == []


@pytest.mark.asyncio
async def test_paid_order_stays_paid(verifier, gateway, make_order, load_order, outbox_rows):
    order = await make_order()
    gateway.verdicts["cs_test_1"] = CheckoutVerdict(True, "paid", [order.id])
    await verifier.verify("cs_test_1", order.id)

    gateway.verdicts["cs_test_1"] = CheckoutVerdict(False, "unpaid", [order.id])
    result = await verifier.verify("cs_test_1", order.id)

    assert result.paid is False
    stored = await load_order(order.id)
    assert stored.payment_status == PaymentStatus.PAID.value
    assert len(await outbox_rows(GENERATE_REPORT, order.id)) == 1


@pytest.mark.asyncio
async def test_repeated_verification_is_idempotent(verifier, gateway, make_order, outbox_rows):
    order = await make_order()
    gateway.verdicts["cs_test_1"] = CheckoutVerdict(True, "paid", [order.id])

    await verifier.verify("cs_test_1", order.id)
    result = await verifier.verify("cs_test_1", order.id)

    assert result.paid is True
    assert len(await outbox_rows(GENERATE_REPORT, order.id)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("reference, order_id", [("", "some-order"), ("   ", "some-order"), ("cs_test_1", ""), (None, None)])
async def test_verify_rejects_missing_fields(verifier, gateway, reference, order_id):
    with pytest.raises(InvalidRequestError):
        await verifier.verify(reference, order_id)
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_verify_missing_fields_over_http(client: AsyncClient):
    response = await client.post("/payments/verify", json={"checkout_reference": "", "order_id": "x"})
    assert response.status_code == 422

    response = await client.post("/payments/verify", json={"checkout_reference": "   ", "order_id": "x"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid request"


@pytest.mark.asyncio
async def test_verify_unknown_order(client: AsyncClient):
    response = await client.post("/payments/verify", json={
        "checkout_reference": "cs_test_1",
        "order_id": "missing-order"
    })

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_processor_unavailable(client: AsyncClient, gateway, make_order, load_order):
    order = await make_order()
    gateway.verdicts["cs_test_1"] = PaymentProcessorUnavailableError("Payment processor unavailable")

    response = await client.post("/payments/verify", json={
        "checkout_reference": "cs_test_1",
        "order_id": order.id
    })

    assert response.status_code == 503
    assert response.json()["detail"] == "Service temporarily unavailable"
    assert (await load_order(order.id)).payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_rejected_reference(client: AsyncClient, make_order):
    order = await make_order()

    response = await client.post("/payments/verify", json={
        "checkout_reference": "cs_unknown",
        "order_id": order.id
    })

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_order_not_covered_by_checkout(verifier, gateway, make_order, load_order):
    order = await make_order()
    other = await make_order()
    gateway.verdicts["cs_test_1"] = CheckoutVerdict(True, "paid", [other.id])

    with pytest.raises(InvalidRequestError):
        await verifier.verify("cs_test_1", order.id)

    assert (await load_order(other.id)).payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_checkout_over_batch_limit(session_maker, gateway, orchestrator, make_order, load_order):
    verifier = PaymentVerifier(session_maker, gateway, orchestrator, max_batch_size=2)
    orders = [await make_order() for _ in range(3)]
    gateway.verdicts["cs_test_1"] = CheckoutVerdict(True, "paid", [o.id for o in orders])

    with pytest.raises(InvalidRequestError):
        await verifier.verify("cs_test_1", orders[0].id)

    assert (await load_order(orders[0].id)).payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_bypass_reference_marks_batch_paid(verifier, gateway, make_order, load_order):
    batch_id = str(uuid.uuid4())
    first = await make_order(checkout_batch_id=batch_id)
    second = await make_order(checkout_batch_id=batch_id)

    result = await verifier.verify("dev_test_checkout", first.id)

    assert result.paid is True
    assert gateway.calls == []
    assert {o.id for o in result.batch} == {first.id, second.id}
    assert (await load_order(second.id)).payment_status == PaymentStatus.PAID.value


@pytest.mark.asyncio
async def test_bypass_reference_rejected_when_disabled(session_maker, gateway, orchestrator, make_order, load_order):
    verifier = PaymentVerifier(session_maker, gateway, orchestrator, bypass_enabled=False)
    order = await make_order()

    with pytest.raises(InvalidRequestError):
        await verifier.verify("dev_test_checkout", order.id)

    assert (await load_order(order.id)).payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_verify_can_wait_for_generation(session_maker, gateway, orchestrator, generator, make_order):
    verifier = PaymentVerifier(session_maker, gateway, orchestrator, await_generation=True)
    order = await make_order()
    gateway.verdicts["cs_test_1"] = CheckoutVerdict(True, "paid", [order.id])

    result = await verifier.verify("cs_test_1", order.id)

    assert result.order.generation_state == GenerationState.GENERATED.value
    assert generator.calls_for(order.id) == 1


def test_parse_order_ids():
    assert parse_order_ids(None) == []
    assert parse_order_ids("") == []
    assert parse_order_ids("a, b,,c ") == ["a", "b", "c"]
