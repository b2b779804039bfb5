"""
Webhook fulfillment tests.

Verifies:
- Signature failures are rejected with no side effects
- One order per payment, however many times or ways it is delivered
- Ticket rows match purchased quantities; sold counts never exceed capacity
- Refund notifications from Stripe only ever move refund totals forward
"""


import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from eventpay.models import Order, OrderStatus, Ticket, TicketStatus, TicketType
from eventpay.models.event import legacy_event_id
from eventpay.schemas.webhook import PaymentIntentObject
from eventpay.services import fulfillment, payment
from eventpay.services.orders import OrderStore
from eventpay.services.payment import PaymentService
from tests.conftest import build_envelope, payment_intent, purchase_metadata, sign_payload


def ticket_type_named(event, name):
    return next(tt for tt in event.ticket_types if tt.name == name)


@pytest.fixture
def gala(event_factory):
    return event_factory(ticket_types=(("General Admission", 2500, 100), ("VIP", 7500, 10)))


@pytest.fixture
def gala_purchase(gala):
    """Two GA and one VIP, paid in full."""
    ga = ticket_type_named(gala, "General Admission")
    vip = ticket_type_named(gala, "VIP")
    metadata = purchase_metadata("spring-gala", [
        {"ticket_type_id": ga.id, "quantity": 2, "unit_price": 2500},
        {"ticket_type_id": vip.id, "quantity": 1, "unit_price": 7500},
    ])
    return payment_intent("pi_gala_1", 12500, metadata)


# =============================================================================
# SIGNATURE VERIFICATION
# =============================================================================


class TestSignatureVerification:
    def test_missing_signature_is_rejected(self, client, db_session, gala_purchase):
        payload = build_envelope("payment_intent.succeeded", gala_purchase)
        resp = client.post("/webhooks/stripe", content=payload)
        assert resp.status_code == 401
        assert resp.json()["code"] == "INVALID_SIGNATURE"
        assert db_session.query(Order).count() == 0

    def test_wrong_secret_is_rejected(self, client, db_session, gala_purchase):
        payload = build_envelope("payment_intent.succeeded", gala_purchase)
        resp = client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": sign_payload(payload, secret="whsec_other")}
        )
        assert resp.status_code == 401
        assert db_session.query(Order).count() == 0

    def test_modified_body_is_rejected(self, client, db_session, gala_purchase):
        payload = build_envelope("payment_intent.succeeded", gala_purchase)
        signature = sign_payload(payload)
        tampered = payload.replace(b'"amount": 12500', b'"amount": 1')
        resp = client.post("/webhooks/stripe", content=tampered, headers={"stripe-signature": signature})
        assert resp.status_code == 401
        assert db_session.query(Order).count() == 0

    def test_missing_webhook_secret_is_a_server_error(self, client, monkeypatch, gala_purchase):
        monkeypatch.setattr(payment.settings, "stripe_webhook_secret", "")
        payload = build_envelope("payment_intent.succeeded", gala_purchase)
        resp = client.post("/webhooks/stripe", content=payload, headers={"stripe-signature": sign_payload(payload)})
        assert resp.status_code == 500
        assert resp.json()["code"] == "NOT_CONFIGURED"

    def test_signed_garbage_is_malformed(self, client):
        payload = b'{"not": "an event"}'
        resp = client.post("/webhooks/stripe", content=payload, headers={"stripe-signature": sign_payload(payload)})
        assert resp.status_code == 400
        assert resp.json()["code"] == "MALFORMED_PAYLOAD"


# =============================================================================
# FULFILLMENT
# =============================================================================


class TestFulfillment:
    def test_creates_order_and_one_ticket_per_unit(self, post_webhook, db_session, gala, gala_purchase,
                                                    sent_notifications):
        resp = post_webhook("payment_intent.succeeded", gala_purchase)
        assert resp.status_code == 200
        body = resp.json()
        assert body["received"] is True
        assert body["tickets_created"] == 3
        assert body["webhook_id"].startswith("wh_")
        assert "processing_time_ms" in body

        order = db_session.query(Order).one()
        assert order.id == body["order_id"]
        assert order.status == OrderStatus.COMPLETED
        assert order.total_amount == 12500
        assert order.guest_email == "buyer@example.com"
        assert order.user_id is None

        tickets = db_session.query(Ticket).filter(Ticket.order_id == order.id).all()
        assert len(tickets) == 3
        assert all(t.quantity == 1 for t in tickets)
        assert len({t.confirmation_code for t in tickets}) == 3
        assert all(t.confirmation_code.startswith("TKT-") for t in tickets)

    def test_increments_sold_counts(self, post_webhook, db_session, gala, gala_purchase):
        post_webhook("payment_intent.succeeded", gala_purchase)
        db_session.expire_all()
        assert ticket_type_named(gala, "General Admission").sold_count == 2
        assert ticket_type_named(gala, "VIP").sold_count == 1
        assert gala.tickets_sold == 3

    def test_queues_grouped_confirmation(self, post_webhook, gala, gala_purchase, sent_notifications):
        post_webhook("payment_intent.succeeded", gala_purchase)
        assert len(sent_notifications) == 1
        message = sent_notifications[0]
        assert message.to == "buyer@example.com"
        assert message.event_title == "Spring Gala"
        assert {(line.ticket_type, line.quantity, line.total_paid) for line in message.tickets} == {
            ("General Admission", 2, 5000),
            ("VIP", 1, 7500),
        }
        assert len(message.confirmation_codes) == 3

    def test_member_purchase_records_user(self, post_webhook, db_session, gala):
        ga = ticket_type_named(gala, "General Admission")
        metadata = purchase_metadata(gala.id, [{"ticket_type_id": ga.id, "quantity": 1, "unit_price": 2500}],
                                     user_id="user-42")
        resp = post_webhook("payment_intent.succeeded", payment_intent("pi_member", 2500, metadata))
        assert resp.status_code == 200
        order = db_session.query(Order).one()
        assert order.user_id == "user-42"
        assert order.guest_email is None

    def test_resolves_legacy_numeric_event_id(self, post_webhook, db_session, event_factory):
        event = event_factory(slug="legacy-show", event_id=legacy_event_id(42))
        tt = event.ticket_types[0]
        metadata = purchase_metadata("42", [{"ticket_type_id": tt.id, "quantity": 1, "unit_price": 2500}])
        resp = post_webhook("payment_intent.succeeded", payment_intent("pi_legacy", 2500, metadata))
        assert resp.status_code == 200
        assert db_session.query(Order).one().event_id == legacy_event_id(42)

    def test_missing_ticket_items_creates_nothing(self, post_webhook, db_session, gala):
        metadata = {"event_id": "spring-gala", "user_id": "guest", "customer_email": "buyer@example.com"}
        resp = post_webhook("payment_intent.succeeded", payment_intent("pi_bad", 2500, metadata))
        assert resp.status_code == 400
        assert resp.json()["code"] == "MISSING_METADATA"
        assert resp.json()["missing_fields"] == ["ticket_items"]
        assert db_session.query(Order).count() == 0

    def test_unknown_event_is_not_found(self, post_webhook, db_session, gala):
        ga = ticket_type_named(gala, "General Admission")
        metadata = purchase_metadata("no-such-event", [{"ticket_type_id": ga.id, "quantity": 1, "unit_price": 2500}])
        resp = post_webhook("payment_intent.succeeded", payment_intent("pi_lost", 2500, metadata))
        assert resp.status_code == 404
        assert resp.json()["code"] == "UNRESOLVABLE_EVENT"
        assert db_session.query(Order).count() == 0

    def test_line_items_cannot_exceed_amount_paid(self, post_webhook, db_session, gala):
        ga = ticket_type_named(gala, "General Admission")
        metadata = purchase_metadata("spring-gala", [{"ticket_type_id": ga.id, "quantity": 4, "unit_price": 2500}])
        resp = post_webhook("payment_intent.succeeded", payment_intent("pi_under", 2500, metadata))
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_METADATA"
        assert db_session.query(Order).count() == 0

    def test_ticket_type_must_belong_to_event(self, post_webhook, db_session, gala, event_factory):
        other = event_factory(slug="other-show")
        foreign = other.ticket_types[0]
        metadata = purchase_metadata("spring-gala", [{"ticket_type_id": foreign.id, "quantity": 1, "unit_price": 2500}])
        resp = post_webhook("payment_intent.succeeded", payment_intent("pi_foreign", 2500, metadata))
        assert resp.status_code == 400
        assert db_session.query(Order).count() == 0

    def test_ticket_type_lookup_failure_is_reported(self, post_webhook, monkeypatch, db_session, gala,
                                                     gala_purchase):
        original_query = Session.query

        def failing_query(self, *entities, **kwargs):
            if entities and entities[0] is TicketType:
                raise OperationalError("SELECT ticket_types", {}, Exception("database is locked"))
            return original_query(self, *entities, **kwargs)

        monkeypatch.setattr(Session, "query", failing_query)
        resp = post_webhook("payment_intent.succeeded", gala_purchase)
        monkeypatch.undo()

        assert resp.status_code == 500
        body = resp.json()
        assert body["code"] == "DATASTORE_UNAVAILABLE"
        assert body["webhook_id"]
        assert db_session.query(Order).count() == 0

    def test_failed_ticket_insert_keeps_order_for_staff(self, post_webhook, monkeypatch, db_session, gala,
                                                         gala_purchase):
        def failing_add_all(self, instances):
            raise OperationalError("INSERT INTO tickets", {}, Exception("disk I/O error"))

        monkeypatch.setattr(Session, "add_all", failing_add_all)
        resp = post_webhook("payment_intent.succeeded", gala_purchase)
        assert resp.status_code == 500
        body = resp.json()
        assert body["code"] == "PARTIAL_FULFILLMENT"

        order = db_session.query(Order).one()
        assert body["order_id"] == order.id
        assert db_session.query(Ticket).count() == 0
        db_session.expire_all()
        assert ticket_type_named(gala, "General Admission").sold_count == 0

        monkeypatch.undo()
        retry = post_webhook("payment_intent.succeeded", gala_purchase, event_id="evt_test_2")
        assert retry.status_code == 200
        assert retry.json()["order_id"] == order.id
        assert retry.json()["duplicate"] is True
        assert retry.json()["tickets_created"] == 0
        assert db_session.query(Order).count() == 1


# =============================================================================
# IDEMPOTENCY
# =============================================================================


class TestIdempotency:
    def test_redelivery_returns_same_order(self, post_webhook, db_session, gala, gala_purchase):
        first = post_webhook("payment_intent.succeeded", gala_purchase).json()
        second = post_webhook("payment_intent.succeeded", gala_purchase, event_id="evt_test_2").json()

        assert second["order_id"] == first["order_id"]
        assert second["duplicate"] is True
        assert second["tickets_created"] == 3
        assert db_session.query(Order).count() == 1
        assert db_session.query(Ticket).count() == 3

        db_session.expire_all()
        assert ticket_type_named(gala, "General Admission").sold_count == 2

    def test_charge_succeeded_converges_on_same_order(self, post_webhook, monkeypatch, db_session, gala,
                                                       gala_purchase):
        monkeypatch.setattr(
            PaymentService,
            "retrieve_payment_intent",
            staticmethod(lambda pi_id: PaymentIntentObject.model_validate(gala_purchase))
        )
        charge = {"id": "ch_1", "object": "charge", "payment_intent": "pi_gala_1", "amount": 12500}

        by_charge = post_webhook("charge.succeeded", charge).json()
        by_intent = post_webhook("payment_intent.succeeded", gala_purchase, event_id="evt_test_2").json()

        assert by_charge["order_id"] == by_intent["order_id"]
        assert db_session.query(Order).count() == 1
        assert db_session.query(Ticket).count() == 3

    def test_losing_a_concurrent_insert_returns_the_winner(self, post_webhook, monkeypatch, db_session,
                                                            gala, gala_purchase):
        winner = post_webhook("payment_intent.succeeded", gala_purchase).json()

        original = OrderStore.find_by_payment_reference
        calls = []

        def miss_first_lookup(db, payment_intent_id):
            calls.append(payment_intent_id)
            if len(calls) == 1:
                return None
            return original(db, payment_intent_id)

        monkeypatch.setattr(OrderStore, "find_by_payment_reference", staticmethod(miss_first_lookup))

        resp = post_webhook("payment_intent.succeeded", gala_purchase, event_id="evt_test_2")
        assert resp.status_code == 200
        body = resp.json()
        assert body["order_id"] == winner["order_id"]
        assert body["duplicate"] is True
        assert body["message"] == "Order created by concurrent webhook"
        assert db_session.query(Order).count() == 1
        assert db_session.query(Ticket).count() == 3


# =============================================================================
# CAPACITY
# =============================================================================


class TestCapacity:
    def test_over_capacity_records_order_without_tickets(self, post_webhook, client, auth_headers,
                                                          db_session, event_factory):
        event = event_factory(slug="tiny-room", ticket_types=(("Seat", 1000, 2),))
        seat = event.ticket_types[0]
        metadata = purchase_metadata("tiny-room", [{"ticket_type_id": seat.id, "quantity": 3, "unit_price": 1000}])

        resp = post_webhook("payment_intent.succeeded", payment_intent("pi_over", 3000, metadata))
        assert resp.status_code == 409
        assert resp.json()["code"] == "CAPACITY_EXCEEDED"

        order = db_session.query(Order).one()
        assert resp.json()["order_id"] == order.id
        assert db_session.query(Ticket).count() == 0
        db_session.expire_all()
        assert db_session.get(TicketType, seat.id).sold_count == 0

        staff = client.get("/admin/orders/needs-attention", headers=auth_headers(user_id="ops-1", is_staff=True))
        assert [o["id"] for o in staff.json()] == [order.id]

    def test_event_capacity_applies_across_ticket_types(self, post_webhook, db_session, event_factory):
        event = event_factory(slug="capped", capacity=2, ticket_types=(("A", 1000, 10), ("B", 1000, 10)))
        a, b = sorted(event.ticket_types, key=lambda tt: tt.name)
        metadata = purchase_metadata("capped", [
            {"ticket_type_id": a.id, "quantity": 2, "unit_price": 1000},
            {"ticket_type_id": b.id, "quantity": 1, "unit_price": 1000},
        ])
        resp = post_webhook("payment_intent.succeeded", payment_intent("pi_capped", 3000, metadata))
        assert resp.status_code == 409
        db_session.expire_all()
        assert db_session.get(TicketType, a.id).sold_count == 0

    def test_capacity_is_checked_before_tickets_are_built(self, post_webhook, monkeypatch, db_session,
                                                          event_factory):
        event = event_factory(slug="tiny-room", ticket_types=(("Seat", 1000, 2),))
        seat = event.ticket_types[0]
        issued = []
        monkeypatch.setattr(fulfillment, "generate_confirmation_code", lambda: issued.append(1) or "UNUSED")
        metadata = purchase_metadata("tiny-room", [{"ticket_type_id": seat.id, "quantity": 100, "unit_price": 0}])

        resp = post_webhook("payment_intent.succeeded", payment_intent("pi_bulk", 0, metadata))
        assert resp.status_code == 409
        assert issued == []
        assert db_session.query(Ticket).count() == 0


# =============================================================================
# PAYMENT FAILURES AND REFUNDS FROM STRIPE
# =============================================================================


class TestPaymentFailed:
    def test_marks_pending_order_failed(self, post_webhook, db_session, event_factory, order_factory):
        event = event_factory()
        order = order_factory(event, status=OrderStatus.PENDING, payment_intent_id="pi_pending")
        resp = post_webhook("payment_intent.payment_failed", payment_intent("pi_pending", order.total_amount, {}))
        assert resp.status_code == 200
        db_session.expire_all()
        assert db_session.get(Order, order.id).status == OrderStatus.FAILED

    def test_leaves_completed_order_alone(self, post_webhook, db_session, event_factory, order_factory):
        event = event_factory()
        order = order_factory(event, payment_intent_id="pi_done")
        post_webhook("payment_intent.payment_failed", payment_intent("pi_done", order.total_amount, {}))
        db_session.expire_all()
        assert db_session.get(Order, order.id).status == OrderStatus.COMPLETED

    def test_unknown_payment_is_acknowledged(self, post_webhook):
        resp = post_webhook("payment_intent.payment_failed", payment_intent("pi_nobody", 100, {}))
        assert resp.status_code == 200


class TestChargeRefunded:
    def charge(self, amount_refunded, payment_intent_id="pi_paid_1"):
        return {"id": "ch_1", "object": "charge", "payment_intent": payment_intent_id,
                "amount": 5000, "amount_refunded": amount_refunded}

    def test_partial_refund(self, post_webhook, db_session, event_factory, order_factory, sent_notifications):
        order = order_factory(event_factory())
        resp = post_webhook("charge.refunded", self.charge(2000))
        assert resp.status_code == 200
        db_session.expire_all()
        order = db_session.get(Order, order.id)
        assert order.refund_amount == 2000
        assert order.status == OrderStatus.PARTIALLY_REFUNDED
        assert order.refunded_at is not None
        assert len(sent_notifications) == 1
        assert sent_notifications[0].total_refund_amount == 2000

    def test_refund_total_never_decreases(self, post_webhook, db_session, event_factory, order_factory,
                                          sent_notifications):
        order = order_factory(event_factory())
        post_webhook("charge.refunded", self.charge(3000))
        resp = post_webhook("charge.refunded", self.charge(1000), event_id="evt_test_2")
        assert resp.status_code == 200
        db_session.expire_all()
        assert db_session.get(Order, order.id).refund_amount == 3000
        assert len(sent_notifications) == 1

    def test_full_refund_cancels_tickets(self, post_webhook, db_session, event_factory, order_factory):
        order = order_factory(event_factory())
        post_webhook("charge.refunded", self.charge(5000))
        db_session.expire_all()
        order = db_session.get(Order, order.id)
        assert order.status == OrderStatus.REFUNDED
        assert order.refund_amount == order.total_amount
        assert all(t.status == TicketStatus.CANCELLED for t in order.tickets)

    def test_refund_beyond_total_is_capped(self, post_webhook, db_session, event_factory, order_factory):
        order = order_factory(event_factory())
        post_webhook("charge.refunded", self.charge(9000))
        db_session.expire_all()
        assert db_session.get(Order, order.id).refund_amount == 5000

    def test_unknown_order_is_not_found(self, post_webhook):
        resp = post_webhook("charge.refunded", self.charge(1000, payment_intent_id="pi_unknown"))
        assert resp.status_code == 404
        assert resp.json()["code"] == "ORDER_NOT_FOUND"

    def test_sold_counts_are_kept_after_refund(self, post_webhook, db_session, gala, gala_purchase):
        post_webhook("payment_intent.succeeded", gala_purchase)
        charge = {"id": "ch_2", "object": "charge", "payment_intent": "pi_gala_1",
                  "amount": 12500, "amount_refunded": 12500}
        post_webhook("charge.refunded", charge, event_id="evt_test_2")
        db_session.expire_all()
        assert ticket_type_named(gala, "General Admission").sold_count == 2


class TestAcknowledgedKinds:
    @pytest.mark.parametrize("kind,obj", [
        ("customer.created", {"id": "cus_1"}),
        ("refund.created", {"id": "re_1", "payment_intent": "pi_1", "amount": 100, "status": "succeeded"}),
        ("refund.failed", {"id": "re_2", "payment_intent": "pi_1", "amount": 100, "status": "failed",
                           "failure_reason": "expired_or_canceled_card"}),
    ])
    def test_acknowledged_without_side_effects(self, post_webhook, db_session, kind, obj):
        resp = post_webhook(kind, obj)
        assert resp.status_code == 200
        assert resp.json()["received"] is True
        assert db_session.query(Order).count() == 0

    def test_refund_failure_is_flagged_for_staff(self, post_webhook, caplog):
        obj = {"id": "re_2", "payment_intent": "pi_1", "amount": 100, "status": "failed"}
        post_webhook("refund.failed", obj)
        assert any("STAFF ACTION REQUIRED" in r.message for r in caplog.records)
