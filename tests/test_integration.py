import pytest
from sqlalchemy import select

from app import store
from app.domain import CanonicalPaymentEvent, Outcome, PaymentProvider
from app.models import Customer, EmailLog, Order, PaymentLog

CONSULTATION_PAYMENT = {
    "amount": 799,
    "currency": "usd",
    "customerEmail": "jane@example.com",
    "customerName": "Jane Doe",
    "orderType": "consultation",
    "metadata": {"consultationType": "comprehensive"},
}

BIRTH_DETAILS = {
    "consultationType": "comprehensive",
    "birthDate": "1990-05-17",
    "birthTime": "14:30",
    "birthPlace": "Lisbon",
    "questions": "How should I arrange my home office for focus?",
}


def _succeeded(intent_id, order_id, event_id="evt_succeeded"):
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": intent_id, "metadata": {"order_id": order_id}}},
    }


def _email_logs(db):
    return list(db.execute(select(EmailLog)).scalars().all())


def test_full_stripe_consultation_lifecycle_integration(client, mocker, mailer, session_factory):
    """
    Test the full lifecycle:
    1. Create payment intent (API -> DB + Stripe Mocked)
    2. Submit birth details before payment clears
    3. Webhook success (Stripe -> API -> DB -> consultation + email)
    4. Redelivered webhook changes nothing
    """

    # --- 1. CREATE PAYMENT ---
    mock_pi = mocker.Mock()
    mock_pi.id = "pi_integration_test_123"
    mock_pi.client_secret = "secret_test_456"
    mocker.patch("stripe.PaymentIntent.create", return_value=mock_pi)

    response = client.post("/api/payments/stripe/create-intent", json=CONSULTATION_PAYMENT)

    assert response.status_code == 200
    created = response.json()
    assert created["clientSecret"] == "secret_test_456"
    order_id, customer_id = created["orderId"], created["customerId"]

    db = session_factory()
    order = store.get_order(db, order_id)
    assert order.status == "pending"
    assert order.order_metadata["consultation_type"] == "comprehensive"
    db.close()

    # --- 2. SUBMIT CONSULTATION ---
    response = client.post(
        "/api/consultations/generate",
        json=dict(BIRTH_DETAILS, orderId=order_id, customerId=customer_id),
    )

    assert response.status_code == 200
    submitted = response.json()
    assert submitted["status"] == "pending"
    assert submitted["result"] is None
    consultation_id = submitted["consultationId"]

    # --- 3. WEBHOOK SUCCESS ---
    mocker.patch(
        "stripe.Webhook.construct_event",
        return_value=_succeeded("pi_integration_test_123", order_id),
    )

    webhook_response = client.post(
        "/api/webhooks/stripe",
        content="raw_stripe_payload",
        headers={"stripe-signature": "test_signature"}
    )

    assert webhook_response.status_code == 200
    assert webhook_response.json() == {"received": True}

    db = session_factory()
    assert store.get_order(db, order_id).status == "completed"
    consultation = store.get_consultation_by_id(db, consultation_id)
    assert consultation.status == "completed"
    assert consultation.ai_result
    assert consultation.email_sent_at is not None
    assert [log.status for log in _email_logs(db)] == ["sent"]
    db.close()

    assert len(mailer.outbox) == 1
    assert mailer.outbox[0]["To"] == "jane@example.com"

    response = client.get(f"/api/consultations/{consultation_id}")
    assert response.json()["consultation"]["status"] == "completed"

    # --- 4. REDELIVERY ---
    webhook_response = client.post(
        "/api/webhooks/stripe",
        content="raw_stripe_payload",
        headers={"stripe-signature": "test_signature"}
    )

    assert webhook_response.status_code == 200
    assert len(mailer.outbox) == 1

    db = session_factory()
    statuses = sorted(
        log.status for log in db.execute(select(PaymentLog).filter_by(order_id=order_id)).scalars()
    )
    assert statuses == ["applied", "created", "duplicate"]
    assert len(_email_logs(db)) == 1
    db.close()


def test_paypal_capture_then_consultation_submission(client, mocker, services, mailer, session_factory):
    mocker.patch.object(services.paypal, "create_order", return_value={
        "id": "PAYPAL-ORDER-1",
        "approval_url": "https://www.sandbox.paypal.com/checkoutnow?token=PAYPAL-ORDER-1",
        "raw": {"id": "PAYPAL-ORDER-1"},
    })
    created = client.post("/api/payments/paypal/create-order", json=CONSULTATION_PAYMENT).json()
    order_id, customer_id = created["orderId"], created["customerId"]

    mocker.patch.object(services.paypal, "capture_order", return_value=CanonicalPaymentEvent(
        provider=PaymentProvider.PAYPAL,
        outcome=Outcome.SUCCEEDED,
        event_type="paypal.order.captured",
        provider_ref="PAYPAL-ORDER-1",
        correlation_id=order_id,
        capture_id="CAPTURE-1",
    ))

    response = client.post("/api/payments/paypal/capture/PAYPAL-ORDER-1")

    assert response.status_code == 200
    captured = response.json()
    assert captured["status"] == "completed"
    assert captured["captureId"] == "CAPTURE-1"
    # Nothing to generate until the birth details arrive
    assert mailer.outbox == []

    response = client.post(
        "/api/consultations/generate",
        json=dict(BIRTH_DETAILS, orderId=order_id, customerId=customer_id),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["result"]
    assert len(mailer.outbox) == 1

    # The capture webhook arriving afterwards is a no-op
    mocker.patch.object(services.paypal, "verify_webhook", return_value=None)
    webhook_response = client.post("/api/webhooks/paypal", json={
        "id": "WH-CAPTURE-1",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAPTURE-1",
            "custom_id": order_id,
            "supplementary_data": {"related_ids": {"order_id": "PAYPAL-ORDER-1"}},
        },
    })

    assert webhook_response.status_code == 200
    assert len(mailer.outbox) == 1

    # A second submission returns the stored consultation
    again = client.post(
        "/api/consultations/generate",
        json=dict(BIRTH_DETAILS, orderId=order_id, customerId=customer_id),
    ).json()
    assert again["consultationId"] == body["consultationId"]
    assert len(mailer.outbox) == 1


def test_stripe_confirm_completes_order(client, mocker, make_order, session_factory):
    order = make_order(order_type="product", ref="pi_confirm")
    mocker.patch("stripe.PaymentIntent.retrieve", return_value={
        "id": "pi_confirm",
        "status": "succeeded",
        "metadata": {"order_id": order.id},
    })

    response = client.post("/api/payments/stripe/confirm", json={"paymentIntentId": "pi_confirm"})

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    db = session_factory()
    assert store.get_order(db, order.id).status == "completed"
    db.close()


def test_stripe_confirm_while_buyer_is_still_paying(client, mocker, make_order):
    make_order(ref="pi_waiting")
    mocker.patch("stripe.PaymentIntent.retrieve", return_value={
        "id": "pi_waiting",
        "status": "requires_payment_method",
    })

    response = client.post("/api/payments/stripe/confirm", json={"paymentIntentId": "pi_waiting"})

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert response.json()["success"] is False


def test_email_failure_still_completes_consultation(client, mocker, mailer, make_order, session_factory):
    mailer.fail = True
    order = make_order(ref="pi_mail")
    customer_id = order.customer_id

    client.post(
        "/api/consultations/generate",
        json=dict(BIRTH_DETAILS, orderId=order.id, customerId=customer_id),
    )
    mocker.patch("stripe.Webhook.construct_event", return_value=_succeeded("pi_mail", order.id))
    client.post("/api/webhooks/stripe", headers={"stripe-signature": "sig"})

    db = session_factory()
    consultation = store.get_consultation_by_order(db, order.id)
    assert consultation.status == "completed"
    assert consultation.ai_result
    assert [log.status for log in _email_logs(db)] == ["failed"]
    db.close()


def test_consultation_for_someone_elses_order_is_rejected(client, make_order):
    order = make_order(status="completed")

    response = client.post(
        "/api/consultations/generate",
        json=dict(BIRTH_DETAILS, orderId=order.id, customerId="5e7d9f10-6a2b-4c3d-8e4f-1a2b3c4d5e6f"),
    )

    assert response.status_code == 400


def test_consultation_for_unknown_order(client):
    response = client.post(
        "/api/consultations/generate",
        json=dict(
            BIRTH_DETAILS,
            orderId="0b8a3c52-2f4e-4c1a-9d0e-7a1f3b6c5d21",
            customerId="5e7d9f10-6a2b-4c3d-8e4f-1a2b3c4d5e6f",
        ),
    )

    assert response.status_code == 404


def test_create_payment_database_integrity_on_stripe_error(client, mocker, session_factory):
    """If Stripe fails, it should return an error and not leave an order in the database."""
    mocker.patch("stripe.PaymentIntent.create",
                 side_effect=Exception("Stripe Service Unavailable"))

    with pytest.raises(Exception):
        client.post("/api/payments/stripe/create-intent", json=CONSULTATION_PAYMENT)

    db = session_factory()
    assert db.execute(select(Order)).first() is None
    assert db.execute(select(PaymentLog)).first() is None
    db.close()


def test_stripe_outage_returns_503(client, mocker, session_factory):
    import stripe
    mocker.patch("stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("timed out"))

    response = client.post("/api/payments/stripe/create-intent", json=CONSULTATION_PAYMENT)

    assert response.status_code == 503
    db = session_factory()
    assert db.execute(select(Order)).first() is None
    db.close()


def test_customer_is_committed_before_stripe_is_called(client, mocker, session_factory):
    seen = {}

    def create_intent(**kwargs):
        # A separate connection must already see the customer and be able to write.
        other = session_factory()
        seen["customer_ids"] = [c.id for c in other.execute(select(Customer)).scalars()]
        store.get_or_create_customer(other, "someone.else@example.com", "Someone Else")
        store.commit(other)
        other.close()
        intent = mocker.Mock()
        intent.id = "pi_lock_free"
        intent.client_secret = "secret_lock_free"
        return intent

    mocker.patch("stripe.PaymentIntent.create", side_effect=create_intent)

    response = client.post("/api/payments/stripe/create-intent", json=CONSULTATION_PAYMENT)

    assert response.status_code == 200
    assert seen["customer_ids"] == [response.json()["customerId"]]


def test_consultation_type_must_match_what_was_paid(client, make_order, session_factory):
    order = make_order(status="completed", amount=299, consultation_type="basic")

    response = client.post(
        "/api/consultations/generate",
        json=dict(BIRTH_DETAILS, orderId=order.id, customerId=order.customer_id),
    )

    assert response.status_code == 400
    assert "basic" in response.json()["message"]
    db = session_factory()
    assert store.get_consultation_by_order(db, order.id) is None
    db.close()


def test_generation_failure_marks_consultation_failed(db, mocker, services, mailer, make_order):
    from app import fulfilment

    order = make_order(status="completed")
    consultation = store.create_consultation(
        db,
        order_id=order.id,
        customer_id=order.customer_id,
        consultation_type="comprehensive",
        birth_date="1990-05-17",
        birth_time="14:30",
        birth_place="Lisbon",
        questions="How should I arrange my home office for focus?",
    )
    store.commit(db)
    consultation_id = consultation.id

    mocker.patch.object(services.generator, "generate", side_effect=RuntimeError("model crashed"))

    with pytest.raises(RuntimeError):
        fulfilment.fulfil_order(db, services, order.id)

    db.expire_all()
    assert store.get_consultation_by_id(db, consultation_id).status == "failed"
    assert mailer.outbox == []
    assert _email_logs(db) == []


def test_paypal_capture_bad_request_leaves_order_pending(client, mocker, services, make_order, session_factory):
    order = make_order(payment_method="paypal", ref="PAYPAL-ORDER-BAD")
    mocker.patch.object(services.paypal.client, "request", return_value=mocker.Mock(
        status_code=400, json=lambda: {"details": [{"issue": "INVALID_PARAMETER_VALUE"}]}
    ))

    response = client.post("/api/payments/paypal/capture/PAYPAL-ORDER-BAD")

    assert response.status_code == 502
    db = session_factory()
    assert store.get_order(db, order.id).status == "pending"
    assert db.execute(select(PaymentLog).filter_by(status="applied")).first() is None
    db.close()
