"""Tests for subscription lifecycle webhooks end to end.

WHAT: Signed deliveries through /api/webhooks/stripe against a real schema
WHY: Stripe delivers out of order and more than once; every transition must
     converge and fan out to all businesses atomically

REFERENCES:
  - waveorder/services/billing/state_reconciler.py
  - waveorder/services/billing/webhook_processor.py
"""

from datetime import datetime, timedelta, timezone

import pytest

from waveorder.models import (
    BusinessStatusEnum,
    PlanEnum,
    Subscription,
    StripeWebhookEvent,
    SystemLog,
    User,
)
from waveorder.services.billing import state_reconciler
from waveorder.services.billing.state_reconciler import grace_period_end

from conftest import (
    FIXED_NOW,
    TRIAL_END,
    as_utc,
    businesses_of,
    make_event,
    make_subscription,
    make_user,
)


def _user(db, email="owner@example.com") -> User:
    return db.query(User).filter(User.email == email).one()


class TestSubscriptionCreated:

    def test_duplicate_delivery_creates_one_row(self, deliver, test_db_session, notifier):
        make_user(test_db_session, businesses=2)
        event = make_event("customer.subscription.created", make_subscription())

        first = deliver(event)
        second = deliver(event)

        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json() == {
            "received": True,
            "event_type": "customer.subscription.created",
            "action": "processed",
        }
        subscriptions = test_db_session.query(Subscription).all()
        assert len(subscriptions) == 1
        user = _user(test_db_session)
        assert user.subscription_id == subscriptions[0].id
        assert user.plan == PlanEnum.pro
        for business in businesses_of(test_db_session, user):
            assert business.subscription_plan == PlanEnum.pro
            assert business.subscription_status == BusinessStatusEnum.active
        # Redelivery finds nothing changed and stays quiet
        assert notifier.change_types == ["upgraded"]

    def test_every_delivery_is_journaled(self, deliver, test_db_session):
        make_user(test_db_session)
        event = make_event("customer.subscription.created", make_subscription(), event_id="evt_dup")

        deliver(event)
        deliver(event)

        entries = test_db_session.query(StripeWebhookEvent).all()
        assert len(entries) == 2
        assert all(e.event_id == "evt_dup" for e in entries)
        assert all(e.processed for e in entries)
        assert all(e.stripe_object_id == "sub_123" for e in entries)
        assert entries[0].payload_json["type"] == "customer.subscription.created"

    def test_same_tier_first_subscription_sends_created(self, deliver, test_db_session, notifier):
        make_user(test_db_session)

        deliver(make_event("customer.subscription.created", make_subscription(price="price_starter_monthly")))

        assert notifier.change_types == ["created"]
        email = notifier.change_emails[0]
        assert email["to"] == "owner@example.com"
        assert email["new_plan"] == PlanEnum.starter
        assert email["amount"] == 19
        assert email["billing_interval"] == "monthly"

    def test_trialing_subscription_sends_nothing(self, deliver, test_db_session, notifier):
        make_user(test_db_session)

        deliver(make_event("customer.subscription.created", make_subscription(status="trialing", trial_end=TRIAL_END)))

        user = _user(test_db_session)
        assert user.plan == PlanEnum.pro
        assert as_utc(user.trial_ends_at) == datetime.fromtimestamp(TRIAL_END, tz=timezone.utc)
        assert notifier.change_types == []

    def test_audit_row_written(self, deliver, test_db_session):
        make_user(test_db_session)

        deliver(make_event("customer.subscription.created", make_subscription()))

        log = test_db_session.query(SystemLog).filter(SystemLog.log_type == "subscription_changed").one()
        assert log.endpoint == "/api/webhooks/stripe"
        assert log.status_code == 200
        assert log.metadata_json["new_plan"] == "PRO"
        assert log.metadata_json["old_plan"] == "STARTER"
        assert log.metadata_json["change_type"] == "upgraded"

    def test_unknown_customer_returns_500_and_marks_journal(self, deliver, test_db_session):
        make_user(test_db_session)

        response = deliver(make_event("customer.subscription.created", make_subscription(customer="cus_ghost")))

        assert response.status_code == 500
        assert response.json()["detail"] == "Webhook handler failed"
        entry = test_db_session.query(StripeWebhookEvent).one()
        assert entry.processed is False
        assert entry.error_message.startswith("OrphanedCustomerError")
        assert test_db_session.query(Subscription).count() == 0

    def test_email_failure_does_not_fail_delivery(self, deliver, test_db_session, notifier):
        make_user(test_db_session)
        notifier.fail = True

        response = deliver(make_event("customer.subscription.created", make_subscription()))

        assert response.status_code == 200
        assert _user(test_db_session).plan == PlanEnum.pro


class TestSubscriptionUpdated:

    def test_update_before_create_populates_row(self, deliver, test_db_session):
        make_user(test_db_session)

        response = deliver(make_event("customer.subscription.updated", make_subscription(price="price_business_annual")))

        assert response.status_code == 200
        subscription = test_db_session.query(Subscription).one()
        assert subscription.stripe_id == "sub_123"
        assert subscription.plan == PlanEnum.business
        assert subscription.price_id == "price_business_annual"
        assert as_utc(subscription.current_period_end) == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert _user(test_db_session).subscription_id == subscription.id

        # The late created event converges on the same row
        deliver(make_event("customer.subscription.created", make_subscription(price="price_business_annual")))
        assert test_db_session.query(Subscription).count() == 1

    def test_fans_out_to_all_businesses(self, deliver, test_db_session):
        make_user(test_db_session, businesses=3)

        deliver(make_event("customer.subscription.updated", make_subscription(price="price_business_monthly")))

        businesses = businesses_of(test_db_session, _user(test_db_session))
        assert len(businesses) == 3
        assert {b.subscription_plan for b in businesses} == {PlanEnum.business}
        assert {b.subscription_status for b in businesses} == {BusinessStatusEnum.active}

    def test_past_due_marks_businesses_inactive(self, deliver, test_db_session):
        make_user(test_db_session, businesses=2)
        deliver(make_event("customer.subscription.created", make_subscription()))

        deliver(make_event("customer.subscription.updated", make_subscription(status="past_due")))

        user = _user(test_db_session)
        assert user.plan == PlanEnum.pro
        assert test_db_session.query(Subscription).one().status == "past_due"
        assert {b.subscription_status for b in businesses_of(test_db_session, user)} == {BusinessStatusEnum.inactive}

    def test_cancel_at_period_end_notifies_once(self, deliver, test_db_session, notifier):
        make_user(test_db_session)
        deliver(make_event("customer.subscription.created", make_subscription()))

        event = make_event("customer.subscription.updated", make_subscription(cancel_at_period_end=True))
        deliver(event)
        deliver(event)

        assert test_db_session.query(Subscription).one().cancel_at_period_end is True
        assert notifier.change_types == ["upgraded", "canceled"]

    def test_fan_out_is_all_or_nothing(self, deliver, test_db_session, monkeypatch):
        make_user(test_db_session, businesses=3)
        original = state_reconciler._sync_business
        calls = []

        def fail_on_last_business(business, **values):
            calls.append(business.id)
            if len(calls) == 3:
                raise RuntimeError("database connection lost")
            original(business, **values)

        monkeypatch.setattr(state_reconciler, "_sync_business", fail_on_last_business)

        response = deliver(make_event("customer.subscription.updated", make_subscription(price="price_business_monthly")))

        assert response.status_code == 500
        assert len(calls) == 3
        test_db_session.expire_all()
        user = _user(test_db_session)
        assert user.plan == PlanEnum.starter
        assert user.subscription_id is None
        assert test_db_session.query(Subscription).count() == 0
        businesses = businesses_of(test_db_session, user)
        assert {b.subscription_plan for b in businesses} == {PlanEnum.starter}
        entry = test_db_session.query(StripeWebhookEvent).one()
        assert entry.error_message == "RuntimeError: database connection lost"


class TestSubscriptionDeleted:

    def test_cancels_and_downgrades_everything(self, deliver, test_db_session, notifier):
        make_user(test_db_session, businesses=2)
        deliver(make_event("customer.subscription.created", make_subscription(price="price_business_monthly")))

        response = deliver(make_event("customer.subscription.deleted", make_subscription(status="canceled")))

        assert response.json()["action"] == "processed"
        subscription = test_db_session.query(Subscription).one()
        assert subscription.status == "canceled"
        assert as_utc(subscription.canceled_at) == FIXED_NOW
        user = _user(test_db_session)
        assert user.plan == PlanEnum.starter
        assert user.trial_ends_at is None
        assert user.grace_ends_at is None
        for business in businesses_of(test_db_session, user):
            assert business.subscription_plan == PlanEnum.starter
            assert business.subscription_status == BusinessStatusEnum.cancelled
        assert notifier.change_types == ["upgraded", "canceled"]

    def test_late_canceled_update_keeps_canceled_at(self, deliver, test_db_session, notifier):
        make_user(test_db_session)
        deliver(make_event("customer.subscription.created", make_subscription()))
        deliver(make_event("customer.subscription.deleted", make_subscription(status="canceled")))

        response = deliver(make_event("customer.subscription.updated", make_subscription(status="canceled")))

        assert response.status_code == 200
        subscription = test_db_session.query(Subscription).one()
        assert subscription.status == "canceled"
        assert as_utc(subscription.canceled_at) == FIXED_NOW
        assert _user(test_db_session).plan == PlanEnum.starter

    def test_canceled_at_taken_from_stripe(self, deliver, test_db_session):
        make_user(test_db_session)
        deliver(make_event("customer.subscription.created", make_subscription()))
        canceled_at = 1767312000  # 2026-01-02 00:00 UTC

        deliver(make_event(
            "customer.subscription.updated",
            make_subscription(status="canceled", canceled_at=canceled_at),
        ))

        subscription = test_db_session.query(Subscription).one()
        assert as_utc(subscription.canceled_at) == datetime(2026, 1, 2, tzinfo=timezone.utc)

    def test_redelivery_is_quiet(self, deliver, test_db_session, notifier):
        make_user(test_db_session)
        deliver(make_event("customer.subscription.created", make_subscription()))
        event = make_event("customer.subscription.deleted", make_subscription(status="canceled"))

        deliver(event)
        deliver(event)

        assert notifier.change_types.count("canceled") == 1
        assert test_db_session.query(Subscription).count() == 1

    def test_scheduled_cancellation_already_notified(self, deliver, test_db_session, notifier):
        make_user(test_db_session)
        deliver(make_event("customer.subscription.created", make_subscription()))
        deliver(make_event("customer.subscription.updated", make_subscription(cancel_at_period_end=True)))

        deliver(make_event("customer.subscription.deleted", make_subscription(status="canceled", cancel_at_period_end=True)))

        assert notifier.change_types == ["upgraded", "canceled"]

    def test_unknown_subscription_is_a_no_op(self, deliver, test_db_session, notifier):
        make_user(test_db_session)

        response = deliver(make_event("customer.subscription.deleted", make_subscription(sub_id="sub_gone")))

        assert response.status_code == 200
        assert response.json()["action"] == "not_found"
        assert test_db_session.query(Subscription).count() == 0
        assert notifier.change_types == []


class TestSubscriptionPaused:

    def test_grace_period_crosses_year_boundary(self, deliver, test_db_session, notifier):
        make_user(test_db_session, businesses=2)
        deliver(make_event("customer.subscription.created", make_subscription(status="trialing", trial_end=TRIAL_END)))

        deliver(make_event("customer.subscription.paused", make_subscription(status="paused")))

        expected = datetime(2026, 1, 4, 15, 30, tzinfo=timezone.utc)
        user = _user(test_db_session)
        assert user.plan == PlanEnum.starter
        assert as_utc(user.grace_ends_at) == expected
        assert test_db_session.query(Subscription).one().status == "paused"
        for business in businesses_of(test_db_session, user):
            assert business.subscription_plan == PlanEnum.starter
            assert business.subscription_status == BusinessStatusEnum.trial_expired
            assert as_utc(business.grace_ends_at) == expected
        assert notifier.change_types == ["trial_expired"]

    def test_redelivery_keeps_original_deadline(self, deliver, test_db_session, notifier, clock):
        make_user(test_db_session)
        event = make_event("customer.subscription.paused", make_subscription(status="paused"))
        deliver(event)

        clock.now = FIXED_NOW + timedelta(days=2)
        deliver(event)

        assert as_utc(_user(test_db_session).grace_ends_at) == FIXED_NOW + timedelta(days=7)
        assert notifier.change_types == ["trial_expired"]

    def test_updated_with_paused_status_is_a_pause(self, deliver, test_db_session):
        make_user(test_db_session)

        deliver(make_event("customer.subscription.updated", make_subscription(status="paused")))

        user = _user(test_db_session)
        assert user.plan == PlanEnum.starter
        assert user.grace_ends_at is not None

    @pytest.mark.parametrize(
        "now,expected",
        [
            (datetime(2025, 12, 28, 15, 30, tzinfo=timezone.utc), datetime(2026, 1, 4, 15, 30, tzinfo=timezone.utc)),
            (datetime(2025, 1, 28, 9, 0, tzinfo=timezone.utc), datetime(2025, 2, 4, 9, 0, tzinfo=timezone.utc)),
            (datetime(2024, 2, 25, 0, 0, tzinfo=timezone.utc), datetime(2024, 3, 3, 0, 0, tzinfo=timezone.utc)),
            (datetime(2025, 2, 25, 0, 0, tzinfo=timezone.utc), datetime(2025, 3, 4, 0, 0, tzinfo=timezone.utc)),
        ],
    )
    def test_grace_period_end(self, now, expected):
        assert grace_period_end(now) == expected
        assert grace_period_end(now) - now == timedelta(days=7)


class TestSubscriptionResumed:

    def test_unknown_price_resumes_as_pro(self, deliver, test_db_session, notifier):
        make_user(test_db_session, businesses=2)
        deliver(make_event("customer.subscription.paused", make_subscription(status="paused")))

        deliver(make_event("customer.subscription.resumed", make_subscription(price="price_legacy")))

        user = _user(test_db_session)
        assert user.plan == PlanEnum.pro
        assert user.grace_ends_at is None
        assert user.trial_ends_at is None
        subscription = test_db_session.query(Subscription).one()
        assert subscription.plan == PlanEnum.pro
        assert subscription.cancel_at_period_end is False
        for business in businesses_of(test_db_session, user):
            assert business.subscription_plan == PlanEnum.pro
            assert business.subscription_status == BusinessStatusEnum.active
            assert business.grace_ends_at is None
        assert notifier.change_types == ["trial_expired", "resumed"]

    def test_known_price_sets_that_plan(self, deliver, test_db_session):
        make_user(test_db_session)
        deliver(make_event("customer.subscription.paused", make_subscription(status="paused")))

        deliver(make_event("customer.subscription.resumed", make_subscription(price="price_business_monthly")))

        assert _user(test_db_session).plan == PlanEnum.business


class TestTrialWillEnd:

    def test_sends_reminder_with_portal_link(self, deliver, test_db_session, notifier, fake_gateway):
        make_user(test_db_session)

        response = deliver(make_event(
            "customer.subscription.trial_will_end",
            make_subscription(status="trialing", trial_end=TRIAL_END),
        ))

        assert response.json()["action"] == "notified"
        assert notifier.change_types == ["trial_ending"]
        email = notifier.change_emails[0]
        assert email["update_payment_url"] == "https://billing.stripe.com/p/session/cus_123"
        assert email["next_billing_date"] == datetime.fromtimestamp(TRIAL_END, tz=timezone.utc)
        assert fake_gateway.portal_calls[0][1] == "https://app.waveorder.test/admin/settings/billing"

    def test_portal_failure_falls_back_to_billing_page(self, deliver, test_db_session, notifier, fake_gateway):
        make_user(test_db_session)
        fake_gateway.fail_portal = True

        response = deliver(make_event("customer.subscription.trial_will_end", make_subscription(status="trialing")))

        assert response.status_code == 200
        assert notifier.change_emails[0]["update_payment_url"] == "https://app.waveorder.test/admin/settings/billing"

    def test_unknown_customer_is_not_fatal(self, deliver, test_db_session, notifier):
        response = deliver(make_event(
            "customer.subscription.trial_will_end",
            make_subscription(customer="cus_ghost", status="trialing"),
        ))

        assert response.status_code == 200
        assert response.json()["action"] == "not_found"
        assert notifier.change_types == []


def test_unhandled_event_type_is_acknowledged(deliver, test_db_session):
    response = deliver(make_event("customer.created", {"id": "cus_123", "object": "customer"}))

    assert response.status_code == 200
    assert response.json()["action"] == "ignored"
    entry = test_db_session.query(StripeWebhookEvent).one()
    assert entry.event_type == "customer.created"
    assert entry.stripe_object_id == "cus_123"
    assert entry.processed is True
