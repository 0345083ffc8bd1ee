import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from fulfillment_service.errors import (
    InvalidStateError,
    NotFoundError,
    PaymentProcessingError,
    PermissionDeniedError,
    ValidationError,
)
from fulfillment_service.extensions import db
from fulfillment_service.models import (
    AccessToken,
    Dispute,
    GroupMember,
    Notification,
    Offer,
    PaymentActivity,
    PurchaseRecord,
    PurchaseStep,
    Transaction,
)
from fulfillment_service.services.payment_service import SagaStep
from fulfillment_service.services.slot_allocator import SlotResult
from fulfillment_service.timeutils import as_utc, utcnow
from tests.base import FulfillmentTestCase, token_from_url

ALL_STEPS = {step.value for step in SagaStep}


class PaymentTestCase(FulfillmentTestCase):
    def reload(self):
        db.session.expire_all()
        return db.session.get(PurchaseRecord, self.purchase.id), db.session.get(Offer, self.offer.id)

    def notification_types(self, user):
        return sorted(db.session.execute(
            db.select(Notification.type).where(Notification.user_id == user.id)
        ).scalars())

    def activity(self, action_type):
        return db.session.execute(
            db.select(PaymentActivity).where(PaymentActivity.action_type == action_type)
        ).scalars().all()

    def count(self, model):
        return db.session.execute(db.select(db.func.count()).select_from(model)).scalar_one()

    def pay(self):
        return self.payments.process_payment(self.purchase.id, "blik", self.buyer.id)


class TestProcessPayment(PaymentTestCase):
    def test_happy_path_runs_every_step(self):
        result = self.pay()

        self.assertTrue(result.success)
        self.assertFalse(result.recovered)
        self.assertTrue(result.access_url.startswith(f"https://app.test/access?id={self.purchase.id}&token="))

        purchase, offer = self.reload()
        self.assertEqual(purchase.status, "completed")
        self.assertTrue(purchase.access_provided)
        self.assertTrue(purchase.slots_decremented)
        self.assertEqual(offer.slots_available, 1)
        self.assertEqual(self.payments.completed_steps(purchase.id), ALL_STEPS)

        transaction = db.session.get(Transaction, uuid.UUID(result.transaction_id))
        self.assertEqual(transaction.status, "completed")
        self.assertEqual(transaction.amount, Decimal("29.99"))
        self.assertEqual(transaction.platform_fee, Decimal("1.50"))
        self.assertEqual(transaction.seller_amount, Decimal("28.49"))
        self.assertTrue(transaction.payment_id.startswith("pmt_"))

        member = db.session.execute(
            db.select(GroupMember).where(GroupMember.user_id == self.buyer.id)
        ).scalar_one()
        self.assertEqual(member.status, "active")

        self.assertEqual(self.notification_types(self.buyer), ["purchase_completed"])
        self.assertEqual(self.notification_types(self.seller), ["sale_completed"])
        self.assertEqual(self.count(AccessToken), 1)
        self.assertFalse(db.session.execute(db.select(AccessToken)).scalar_one().used)
        self.assertEqual(len(self.activity("payment_processed")), 1)

    def test_last_slot_is_sold(self):
        self.offer.slots_available = 1
        db.session.commit()

        result = self.pay()

        self.assertTrue(result.success)
        purchase, offer = self.reload()
        self.assertEqual(purchase.status, "completed")
        self.assertTrue(purchase.slots_decremented)
        self.assertEqual(offer.slots_available, 0)
        self.assertFalse(db.session.execute(db.select(AccessToken)).scalar_one().used)

    def test_issued_token_redeems(self):
        result = self.pay()

        token = token_from_url(result.access_url)
        self.assertEqual(self.tokens.redeem(token, self.purchase.id), self.purchase.id)

    def test_inactive_member_is_reactivated(self):
        db.session.add(GroupMember(group_id=self.group.id, user_id=self.buyer.id, status="inactive"))
        db.session.commit()

        self.pay()

        members = db.session.execute(
            db.select(GroupMember).where(GroupMember.user_id == self.buyer.id)
        ).scalars().all()
        self.assertEqual([m.status for m in members], ["active"])

    def test_null_slots_default_to_total(self):
        self.offer.slots_available = None
        db.session.commit()

        self.pay()

        _, offer = self.reload()
        self.assertEqual(offer.slots_available, 3)

    def test_other_users_purchase_is_rejected(self):
        with self.assertRaises(PermissionDeniedError):
            self.payments.process_payment(self.purchase.id, "blik", self.seller.id)

        purchase, _ = self.reload()
        self.assertEqual(purchase.status, "pending_payment")

    def test_missing_purchase(self):
        with self.assertRaises(NotFoundError):
            self.payments.process_payment(uuid.uuid4(), "blik", self.buyer.id)

    def test_inactive_offer_is_rejected(self):
        self.offer.status = "paused"
        db.session.commit()

        with self.assertRaises(InvalidStateError):
            self.pay()
        self.assertEqual(self.count(Transaction), 0)

    def test_sold_out_offer_is_rejected(self):
        self.offer.slots_available = 0
        db.session.commit()

        with self.assertRaises(InvalidStateError):
            self.pay()

        purchase, _ = self.reload()
        self.assertEqual(purchase.status, "pending_payment")
        self.assertEqual(self.count(Transaction), 0)

    def test_second_call_is_rejected_without_side_effects(self):
        self.pay()

        with self.assertRaises(InvalidStateError):
            self.pay()

        _, offer = self.reload()
        self.assertEqual(offer.slots_available, 1)
        self.assertEqual(self.count(Transaction), 1)
        self.assertEqual(self.count(AccessToken), 1)

    def test_claim_lost_to_overlapping_call(self):
        # The other call flips the status between our validation and our claim
        real_execute = db.session().execute

        def claim_first(statement, *args, **kwargs):
            if getattr(statement, "is_update", False):
                real_execute(
                    db.update(PurchaseRecord).values(status="payment_processing"),
                    execution_options={"synchronize_session": False},
                )
            return real_execute(statement, *args, **kwargs)

        session = db.session()
        session.execute = claim_first
        try:
            with self.assertRaises(InvalidStateError):
                self.pay()
        finally:
            del session.execute
        self.assertEqual(self.count(Transaction), 0)

    def test_gateway_failure_marks_purchase_failed(self):
        with patch.object(self.payments.gateway, "charge", side_effect=RuntimeError("card declined")):
            with self.assertRaises(PaymentProcessingError) as ctx:
                self.pay()

        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        purchase, offer = self.reload()
        self.assertEqual(purchase.status, "failed")
        self.assertFalse(purchase.access_provided)
        self.assertEqual(offer.slots_available, 2)

        transaction = db.session.execute(db.select(Transaction)).scalar_one()
        self.assertEqual(transaction.status, "failed")

        failure = db.session.execute(
            db.select(Notification).where(Notification.user_id == self.buyer.id)
        ).scalar_one()
        self.assertEqual(failure.type, "purchase_failed")
        self.assertEqual(failure.priority, "high")
        self.assertEqual(self.notification_types(self.seller), [])
        self.assertEqual(self.activity("payment_failed")[0].status, "failure")

    def test_transaction_failure_marks_purchase_failed(self):
        with patch.object(self.payments, "_create_transaction", side_effect=RuntimeError("insert failed")):
            with self.assertRaises(PaymentProcessingError):
                self.pay()

        purchase, _ = self.reload()
        self.assertEqual(purchase.status, "failed")
        self.assertEqual(self.notification_types(self.buyer), ["purchase_failed"])

    def test_token_issuer_failure_uses_fallback(self):
        with patch.object(self.tokens, "issue", side_effect=RuntimeError("issuer down")):
            result = self.pay()

        self.assertTrue(result.success)
        self.assertFalse(result.recovered)
        self.assertIsNotNone(result.access_url)
        self.assertEqual(len(self.activity("token_generated_fallback")), 1)
        self.assertEqual(self.tokens.redeem(token_from_url(result.access_url)), self.purchase.id)

    def test_access_failure_after_payment_is_recovered_later(self):
        with patch.object(self.tokens, "issue", side_effect=RuntimeError("issuer down")), \
                patch.object(self.payments, "_issue_token_fallback", side_effect=RuntimeError("store down")):
            result = self.pay()

        self.assertTrue(result.success)
        self.assertTrue(result.recovered)
        self.assertIsNone(result.access_url)
        purchase, offer = self.reload()
        self.assertEqual(purchase.status, "completed")
        self.assertEqual(offer.slots_available, 1)
        steps = self.payments.completed_steps(purchase.id)
        self.assertNotIn(SagaStep.ACCESS_GRANTED.value, steps)
        self.assertEqual(self.count(AccessToken), 0)

        resumed = self.payments.resume_fulfillment(self.purchase.id, self.buyer.id)

        self.assertTrue(resumed.recovered)
        self.assertIsNotNone(resumed.access_url)
        self.assertEqual(self.payments.completed_steps(purchase.id), ALL_STEPS)
        _, offer = self.reload()
        self.assertEqual(offer.slots_available, 1)
        self.assertEqual(self.notification_types(self.buyer), ["purchase_completed"])

    def test_best_effort_failures_do_not_abort(self):
        with patch.object(self.payments, "_resolve_group_membership", side_effect=RuntimeError("groups down")), \
                patch.object(self.notifications, "create_transaction_notifications", side_effect=RuntimeError("boom")):
            result = self.pay()

        self.assertTrue(result.success)
        self.assertIsNotNone(result.access_url)
        self.assertEqual(self.payments.completed_steps(self.purchase.id), ALL_STEPS)

    def test_failed_decrement_releases_slot_claim(self):
        with patch(
            "fulfillment_service.services.payment_service.decrement_available_slots",
            return_value=SlotResult(ok=False),
        ):
            result = self.pay()

        self.assertTrue(result.success)
        purchase, offer = self.reload()
        self.assertFalse(purchase.slots_decremented)
        self.assertEqual(offer.slots_available, 2)


class TestResumeFulfillment(PaymentTestCase):
    def test_complete_purchase_is_noop(self):
        self.pay()

        result = self.payments.resume_fulfillment(self.purchase.id)

        self.assertTrue(result.success)
        self.assertFalse(result.recovered)
        self.assertIsNone(result.access_url)
        self.assertEqual(self.count(AccessToken), 1)

    def test_unpaid_purchase_cannot_resume(self):
        with self.assertRaises(InvalidStateError):
            self.payments.resume_fulfillment(self.purchase.id)

    def test_slot_is_never_decremented_twice(self):
        self.pay()
        db.session.execute(db.delete(PurchaseStep).where(PurchaseStep.step == SagaStep.SLOTS_RESOLVED.value))
        db.session.commit()

        result = self.payments.resume_fulfillment(self.purchase.id)

        self.assertTrue(result.recovered)
        _, offer = self.reload()
        self.assertEqual(offer.slots_available, 1)

    def test_resume_from_completed_transaction_without_step_log(self):
        transaction = self.make_transaction(status="completed")

        result = self.payments.resume_fulfillment(self.purchase.id)

        self.assertTrue(result.recovered)
        self.assertEqual(result.transaction_id, str(transaction.id))
        purchase, offer = self.reload()
        self.assertEqual(purchase.status, "completed")
        self.assertEqual(offer.slots_available, 1)

    def test_other_user_cannot_resume(self):
        self.pay()
        with self.assertRaises(PermissionDeniedError):
            self.payments.resume_fulfillment(self.purchase.id, self.seller.id)

    def test_refunded_purchase_cannot_resume(self):
        with patch.object(self.tokens, "issue", side_effect=RuntimeError("issuer down")), \
                patch.object(self.payments, "_issue_token_fallback", side_effect=RuntimeError("store down")):
            self.pay()
        self.payments.refund_purchase(self.purchase.id)

        with self.assertRaises(InvalidStateError):
            self.payments.resume_fulfillment(self.purchase.id, self.buyer.id)

        purchase, _ = self.reload()
        self.assertEqual(purchase.status, "refunded")
        self.assertEqual(self.count(AccessToken), 0)
        self.assertEqual(self.notification_types(self.buyer), ["purchase_completed", "purchase_refunded"])


class TestPaymentWebhook(PaymentTestCase):
    def test_completed_runs_fulfillment_once(self):
        transaction = self.make_transaction()

        first = self.payments.handle_payment_webhook(transaction.id, "completed", "pi_123")
        second = self.payments.handle_payment_webhook(transaction.id, "completed", "pi_123")

        self.assertTrue(first["processed"])
        self.assertTrue(second["processed"])
        purchase, offer = self.reload()
        self.assertEqual(purchase.status, "completed")
        self.assertEqual(offer.slots_available, 1)
        self.assertEqual(self.count(AccessToken), 1)
        self.assertEqual(db.session.get(Transaction, transaction.id).payment_id, "pi_123")
        self.assertEqual(self.notification_types(self.buyer), ["purchase_completed"])

    def test_failed_marks_purchase_failed(self):
        transaction = self.make_transaction()

        result = self.payments.handle_payment_webhook(transaction.id, "failed")

        self.assertEqual(result["status"], "failed")
        purchase, offer = self.reload()
        self.assertEqual(purchase.status, "failed")
        self.assertEqual(offer.slots_available, 2)
        self.assertEqual(db.session.get(Transaction, transaction.id).status, "failed")
        self.assertEqual(self.notification_types(self.buyer), ["purchase_failed"])

    def test_failure_after_completion_is_ignored(self):
        transaction = self.make_transaction()
        self.payments.handle_payment_webhook(transaction.id, "completed")

        result = self.payments.handle_payment_webhook(transaction.id, "failed")

        self.assertFalse(result["processed"])
        purchase, _ = self.reload()
        self.assertEqual(purchase.status, "completed")
        self.assertEqual(db.session.get(Transaction, transaction.id).status, "completed")

    def test_late_completion_wins_over_failure(self):
        transaction = self.make_transaction()
        self.payments.handle_payment_webhook(transaction.id, "failed")

        self.payments.handle_payment_webhook(transaction.id, "completed")

        purchase, _ = self.reload()
        self.assertEqual(purchase.status, "completed")
        self.assertTrue(purchase.access_provided)

    def test_unknown_status_and_transaction(self):
        transaction = self.make_transaction()
        with self.assertRaises(ValidationError):
            self.payments.handle_payment_webhook(transaction.id, "pending")
        with self.assertRaises(NotFoundError):
            self.payments.handle_payment_webhook(uuid.uuid4(), "completed")

    def test_access_failure_after_completion_is_recovered(self):
        transaction = self.make_transaction()

        with patch.object(self.tokens, "issue", side_effect=RuntimeError("issuer down")), \
                patch.object(self.payments, "_issue_token_fallback", side_effect=RuntimeError("store down")):
            result = self.payments.handle_payment_webhook(transaction.id, "completed")

        self.assertTrue(result["processed"])
        self.assertTrue(result["recovered"])
        self.assertFalse(result["access_granted"])
        purchase, offer = self.reload()
        self.assertEqual(purchase.status, "completed")
        self.assertEqual(offer.slots_available, 1)
        self.assertEqual(self.count(AccessToken), 0)
        self.assertEqual(self.notification_types(self.buyer), ["purchase_completed"])
        self.assertEqual(self.notification_types(self.seller), ["sale_completed"])
        self.assertEqual(len(self.activity("payment_recovered")), 1)


class TestConfirmAccess(PaymentTestCase):
    def test_working_access_is_confirmed(self):
        self.pay()

        result = self.payments.confirm_access(self.purchase.id, True, self.buyer.id)

        self.assertEqual(result, {"confirmed": True, "dispute_created": False, "dispute_id": None})
        purchase, _ = self.reload()
        self.assertTrue(purchase.access_confirmed)
        self.assertIsNotNone(purchase.access_confirmed_at)
        self.assertEqual(self.count(Dispute), 0)
        self.assertEqual(len(self.activity("access_confirmation")), 1)

    def test_broken_access_opens_one_dispute(self):
        self.pay()

        first = self.payments.confirm_access(self.purchase.id, False, self.buyer.id)
        second = self.payments.confirm_access(self.purchase.id, False, self.buyer.id)

        self.assertTrue(first["dispute_created"])
        self.assertEqual(first["dispute_id"], second["dispute_id"])
        dispute = db.session.execute(db.select(Dispute)).scalar_one()
        self.assertEqual(dispute.status, "open")
        self.assertEqual(dispute.reported_entity_type, "subscription")
        self.assertEqual(dispute.reported_entity_id, self.offer.id)
        self.assertTrue(dispute.evidence_required)
        deadline = as_utc(dispute.resolution_deadline)
        self.assertAlmostEqual((deadline - utcnow()).total_seconds(), timedelta(days=3).total_seconds(), delta=60)

        self.assertIn("dispute_created", self.notification_types(self.buyer))
        self.assertIn("dispute_filed", self.notification_types(self.seller))
        filed = db.session.execute(
            db.select(Notification).where(Notification.type == "dispute_filed")
        ).scalar_one()
        self.assertEqual(filed.priority, "high")

    def test_requires_provided_access(self):
        with self.assertRaises(InvalidStateError):
            self.payments.confirm_access(self.purchase.id, True, self.buyer.id)

    def test_requires_owner(self):
        self.pay()
        with self.assertRaises(PermissionDeniedError):
            self.payments.confirm_access(self.purchase.id, True, self.seller.id)

    def test_failed_dispute_leaves_access_unconfirmed(self):
        self.pay()
        db.session.execute(db.delete(Transaction))
        db.session.commit()

        with self.assertRaises(NotFoundError):
            self.payments.confirm_access(self.purchase.id, False, self.buyer.id)

        purchase, _ = self.reload()
        self.assertFalse(purchase.access_confirmed)
        self.assertIsNone(purchase.access_confirmed_at)
        self.assertEqual(self.count(Dispute), 0)


class TestRegenerateAccessToken(PaymentTestCase):
    def test_issues_sixty_minute_token(self):
        self.pay()
        before = utcnow()

        issued = self.payments.regenerate_access_token(self.purchase.id, self.buyer.id)

        stored = db.session.get(AccessToken, uuid.UUID(issued.token_id))
        self.assertGreaterEqual(as_utc(stored.expires_at), before + timedelta(minutes=60))
        self.assertEqual(self.count(AccessToken), 2)
        self.assertEqual(self.tokens.redeem(issued.token, self.purchase.id), self.purchase.id)
        self.assertEqual(len(self.activity("token_regenerated")), 1)

    def test_requires_provided_access(self):
        with self.assertRaises(InvalidStateError):
            self.payments.regenerate_access_token(self.purchase.id, self.buyer.id)


class TestRefundPurchase(PaymentTestCase):
    def test_refund_restores_slot_once(self):
        self.pay()

        self.payments.refund_purchase(self.purchase.id)

        purchase, offer = self.reload()
        self.assertEqual(purchase.status, "refunded")
        self.assertFalse(purchase.access_provided)
        self.assertFalse(purchase.slots_decremented)
        self.assertEqual(offer.slots_available, 2)
        self.assertIn("purchase_refunded", self.notification_types(self.buyer))
        self.assertEqual(len(self.activity("purchase_refunded")), 1)

        with self.assertRaises(InvalidStateError):
            self.payments.refund_purchase(self.purchase.id)
        _, offer = self.reload()
        self.assertEqual(offer.slots_available, 2)

    def test_pending_purchase_cannot_be_refunded(self):
        with self.assertRaises(InvalidStateError):
            self.payments.refund_purchase(self.purchase.id)
