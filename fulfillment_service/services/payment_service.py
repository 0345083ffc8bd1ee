"""
Payment Service: purchase fulfillment saga

Flow for one purchase:
    claim (pending_payment -> payment_processing)
    transaction_created -> payment_processed -> purchase_updated
    -> slots_resolved -> group_membership_resolved -> access_granted
    -> notifications_sent

Every finished step is written to purchase_saga_steps. Recovery (resume,
webhook, retried calls) is a lookup against that log: steps already there
are skipped, everything else runs again.

A failure before purchase_updated marks the purchase failed and raises
PaymentProcessingError. After purchase_updated the buyer has paid, so a
failure there never surfaces as an error; the missing steps are re-run
and the result is flagged recovered.
"""

import logging
import secrets
from dataclasses import asdict, dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

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
    GroupMember,
    PaymentActivity,
    PurchaseRecord,
    PurchaseStep,
    Transaction,
)
from fulfillment_service.services.slot_allocator import (
    decrement_available_slots,
    restore_available_slot,
)
from fulfillment_service.services.token_service import (
    IssuedToken,
    build_access_url,
    generate_token,
    hash_token,
)
from fulfillment_service.timeutils import utcnow

logger = logging.getLogger(__name__)


class SagaStep(str, Enum):
    TRANSACTION_CREATED = "transaction_created"
    PAYMENT_PROCESSED = "payment_processed"
    PURCHASE_UPDATED = "purchase_updated"
    SLOTS_RESOLVED = "slots_resolved"
    GROUP_MEMBERSHIP_RESOLVED = "group_membership_resolved"
    ACCESS_GRANTED = "access_granted"
    NOTIFICATIONS_SENT = "notifications_sent"


class StepPolicy(Enum):
    CRITICAL = "critical"
    BEST_EFFORT = "best_effort"


STEP_POLICIES = {
    SagaStep.TRANSACTION_CREATED: StepPolicy.CRITICAL,
    SagaStep.PAYMENT_PROCESSED: StepPolicy.CRITICAL,
    SagaStep.PURCHASE_UPDATED: StepPolicy.CRITICAL,
    SagaStep.SLOTS_RESOLVED: StepPolicy.BEST_EFFORT,
    SagaStep.GROUP_MEMBERSHIP_RESOLVED: StepPolicy.BEST_EFFORT,
    SagaStep.ACCESS_GRANTED: StepPolicy.CRITICAL,
    SagaStep.NOTIFICATIONS_SENT: StepPolicy.BEST_EFFORT,
}

POST_PAYMENT_STEPS = (
    SagaStep.PURCHASE_UPDATED,
    SagaStep.SLOTS_RESOLVED,
    SagaStep.GROUP_MEMBERSHIP_RESOLVED,
    SagaStep.ACCESS_GRANTED,
    SagaStep.NOTIFICATIONS_SENT,
)

VALID_TRANSITIONS = {
    "pending_payment": {"payment_processing", "completed", "failed"},
    "payment_processing": {"completed", "failed"},
    "completed": {"refunded"},
    # Late gateway confirmation
    "failed": {"completed"},
    "refunded": set(),
}

WEBHOOK_STATUSES = ("completed", "failed")


@dataclass
class PaymentResult:
    success: bool
    purchase_id: str
    transaction_id: Optional[str] = None
    access_url: Optional[str] = None
    recovered: bool = False

    def to_dict(self):
        return asdict(self)


class SimulatedPaymentGateway:
    """Stands in for the card processor; every charge succeeds."""

    provider = "simulated"

    def charge(self, transaction, payment_method):
        logger.info(
            "Charging %s %s for transaction %s with %s",
            transaction.amount, transaction.currency, transaction.id, payment_method
        )
        return transaction.payment_id


class PaymentService:
    def __init__(
        self,
        notifications,
        tokens,
        disputes,
        gateway=None,
        platform_fee_percent=0.05,
        access_token_ttl_minutes=30,
        regenerated_token_ttl_minutes=60,
    ):
        self.notifications = notifications
        self.tokens = tokens
        self.disputes = disputes
        self.gateway = gateway or SimulatedPaymentGateway()
        self.platform_fee_percent = Decimal(str(platform_fee_percent))
        self.access_token_ttl_minutes = access_token_ttl_minutes
        self.regenerated_token_ttl_minutes = regenerated_token_ttl_minutes

    # --- Lookups ----------------------------------------------------------

    def _get_purchase(self, purchase_id, user_id=None):
        purchase = db.session.get(PurchaseRecord, purchase_id)
        if purchase is None:
            raise NotFoundError("Purchase not found")
        if user_id is not None and purchase.user_id != user_id:
            raise PermissionDeniedError("You do not have permission to access this purchase")
        return purchase

    def _find_transaction(self, purchase_id):
        return db.session.execute(
            db.select(Transaction)
            .where(Transaction.purchase_id == purchase_id)
            .order_by(Transaction.created_at.desc())
        ).scalars().first()

    # --- Step log ---------------------------------------------------------

    def completed_steps(self, purchase_id):
        return set(db.session.execute(
            db.select(PurchaseStep.step).where(PurchaseStep.purchase_id == purchase_id)
        ).scalars())

    def _record_step(self, purchase_id, step):
        db.session.add(PurchaseStep(purchase_id=purchase_id, step=step.value, completed_at=utcnow()))
        try:
            db.session.commit()
        except IntegrityError:
            # An overlapping request recorded the same step first
            db.session.rollback()

    def _run_step(self, purchase_id, step, action, done):
        if step.value in done:
            logger.info("[purchase=%s] STEP %s already done, skipping", purchase_id, step.value)
            return None

        logger.info("[purchase=%s] STEP %s", purchase_id, step.value)
        try:
            result = action()
        except Exception as e:
            db.session.rollback()
            if STEP_POLICIES[step] is StepPolicy.CRITICAL:
                logger.error("[purchase=%s] STEP %s FAILED: %s", purchase_id, step.value, e, exc_info=True)
                raise
            logger.warning("[purchase=%s] STEP %s FAILED, continuing: %s", purchase_id, step.value, e)
            result = None
        else:
            logger.info("[purchase=%s] STEP %s OK", purchase_id, step.value)

        self._record_step(purchase_id, step)
        done.add(step.value)
        return result

    # --- Steps ------------------------------------------------------------

    def _transition(self, purchase, new_status):
        if purchase.status == new_status:
            return
        allowed = VALID_TRANSITIONS.get(purchase.status, set())
        if new_status not in allowed:
            raise InvalidStateError(f"Cannot transition purchase from {purchase.status} to {new_status}")
        purchase.status = new_status
        purchase.updated_at = utcnow()

    def _create_transaction(self, purchase, offer, payment_method):
        amount = Decimal(str(offer.price_per_slot))
        platform_fee = (amount * self.platform_fee_percent).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        transaction = Transaction(
            buyer_id=purchase.user_id,
            seller_id=offer.owner_id,
            offer_id=offer.id,
            purchase_id=purchase.id,
            amount=amount,
            platform_fee=platform_fee,
            seller_amount=amount - platform_fee,
            currency=offer.currency,
            payment_method=payment_method,
            payment_provider=self.gateway.provider,
            payment_id=f"pmt_{secrets.token_hex(6)}",
            status="pending",
            created_at=utcnow(),
        )
        db.session.add(transaction)
        db.session.commit()
        return transaction

    def _charge(self, transaction, payment_method):
        payment_id = self.gateway.charge(transaction, payment_method)
        if payment_id:
            transaction.payment_id = payment_id
        transaction.status = "completed"
        transaction.completed_at = utcnow()
        db.session.commit()

    def _complete_purchase(self, purchase_id):
        purchase = db.session.get(PurchaseRecord, purchase_id)
        self._transition(purchase, "completed")
        if not purchase.access_provided:
            purchase.access_provided = True
            purchase.access_provided_at = utcnow()
        db.session.commit()

    def _resolve_slots(self, purchase_id):
        purchase = db.session.get(PurchaseRecord, purchase_id)
        if purchase.slots_decremented:
            logger.info("[purchase=%s] slot already taken, skipping decrement", purchase_id)
            return

        claim = db.session.execute(
            db.update(PurchaseRecord)
            .where(PurchaseRecord.id == purchase_id, PurchaseRecord.slots_decremented.is_(False))
            .values(slots_decremented=True)
        )
        if claim.rowcount != 1:
            db.session.rollback()
            logger.info("[purchase=%s] slot claimed by another request, skipping decrement", purchase_id)
            return
        db.session.commit()

        result = decrement_available_slots(purchase.offer_id)
        if not result.ok:
            db.session.execute(
                db.update(PurchaseRecord)
                .where(PurchaseRecord.id == purchase_id)
                .values(slots_decremented=False)
            )
            db.session.commit()
            logger.warning("[purchase=%s] could not decrement slots for offer %s", purchase_id, purchase.offer_id)

    def _resolve_group_membership(self, purchase):
        offer = purchase.offer
        if offer is None or offer.group_id is None:
            logger.info("[purchase=%s] offer has no group, skipping membership", purchase.id)
            return

        member = db.session.execute(
            db.select(GroupMember).where(
                GroupMember.group_id == offer.group_id,
                GroupMember.user_id == purchase.user_id,
            )
        ).scalar_one_or_none()

        now = utcnow()
        if member is None:
            db.session.add(GroupMember(
                group_id=offer.group_id,
                user_id=purchase.user_id,
                role="member",
                status="active",
                joined_at=now,
                updated_at=now,
            ))
        elif member.status != "active":
            member.status = "active"
            member.updated_at = now
        else:
            return
        db.session.commit()

    def _grant_access(self, purchase):
        try:
            return self.tokens.issue(purchase.id, purchase.user_id, self.access_token_ttl_minutes)
        except Exception as e:
            db.session.rollback()
            logger.warning("[purchase=%s] token issuer failed, using fallback: %s", purchase.id, e)
            return self._issue_token_fallback(purchase)

    def _issue_token_fallback(self, purchase):
        token = generate_token()
        access_token = AccessToken(
            purchase_id=purchase.id,
            token_hash=hash_token(token, self.tokens.salt),
            expires_at=utcnow() + timedelta(minutes=self.access_token_ttl_minutes),
            used=False,
            created_by=purchase.user_id,
        )
        db.session.add(access_token)
        db.session.commit()

        self._log_activity(purchase.user_id, "token_generated_fallback", purchase.id, {
            "token_id": str(access_token.id),
        })
        return IssuedToken(
            token=token,
            token_id=str(access_token.id),
            access_url=build_access_url(self.tokens.base_url, purchase.id, token),
        )

    def _send_notifications(self, purchase_id):
        transaction = self._find_transaction(purchase_id)
        if transaction is None:
            logger.warning("[purchase=%s] no transaction found, skipping notifications", purchase_id)
            return
        self.notifications.create_transaction_notifications(transaction, "completed")

    def _run_post_payment(self, purchase_id, done):
        """Run every post-payment step missing from the log. Returns the access URL if a token was issued."""
        purchase = db.session.get(PurchaseRecord, purchase_id)

        self._run_step(purchase_id, SagaStep.PURCHASE_UPDATED, lambda: self._complete_purchase(purchase_id), done)
        self._run_step(purchase_id, SagaStep.SLOTS_RESOLVED, lambda: self._resolve_slots(purchase_id), done)
        self._run_step(
            purchase_id,
            SagaStep.GROUP_MEMBERSHIP_RESOLVED,
            lambda: self._resolve_group_membership(purchase),
            done,
        )
        try:
            issued = self._run_step(purchase_id, SagaStep.ACCESS_GRANTED, lambda: self._grant_access(purchase), done)
        finally:
            # The buyer has paid, so they hear about it even when no token could be issued
            self._run_step(
                purchase_id,
                SagaStep.NOTIFICATIONS_SENT,
                lambda: self._send_notifications(purchase_id),
                done,
            )

        return issued.access_url if issued else None

    def _fail_purchase(self, purchase_id, transaction_id, error):
        db.session.rollback()
        try:
            db.session.execute(
                db.update(PurchaseRecord)
                .where(
                    PurchaseRecord.id == purchase_id,
                    PurchaseRecord.status.in_(("pending_payment", "payment_processing")),
                )
                .values(status="failed", updated_at=utcnow())
            )
            if transaction_id is not None:
                db.session.execute(
                    db.update(Transaction)
                    .where(Transaction.id == transaction_id)
                    .values(status="failed", updated_at=utcnow())
                )
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("[purchase=%s] could not mark purchase as failed: %s", purchase_id, e)

        transaction = db.session.get(Transaction, transaction_id) if transaction_id else None
        if transaction is not None:
            self.notifications.create_transaction_notifications(transaction, "failed", send_to_seller=False)
        else:
            purchase = db.session.get(PurchaseRecord, purchase_id)
            self.notifications.create_notification(
                purchase.user_id,
                "purchase_failed",
                "Problem with your purchase",
                "Something went wrong while processing your payment. You have not been charged twice; please try again.",
                "purchase_record",
                purchase_id,
                "high",
                skip_duplicate_check=True,
            )

        purchase = db.session.get(PurchaseRecord, purchase_id)
        self._log_activity(purchase.user_id, "payment_failed", purchase_id, {"error": str(error)})

    # --- Activity log -----------------------------------------------------

    def _log_activity(self, user_id, action_type, resource_id, details=None, resource_type="purchase_record"):
        status = "failure" if action_type.endswith("_failed") else "success"
        try:
            db.session.add(PaymentActivity(
                user_id=user_id,
                action_type=action_type,
                resource_type=resource_type,
                resource_id=str(resource_id),
                status=status,
                details=details or {},
                created_at=utcnow(),
            ))
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.warning("Could not log %s activity for %s: %s", action_type, resource_id, e)

    # --- Operations -------------------------------------------------------

    def process_payment(self, purchase_id, payment_method, user_id):
        purchase = self._get_purchase(purchase_id, user_id)
        if purchase.status != "pending_payment":
            raise InvalidStateError(f"Purchase is not pending payment (status: {purchase.status})")

        offer = purchase.offer
        if offer is None:
            raise InvalidStateError("Offer for this purchase no longer exists")
        if offer.status != "active":
            raise InvalidStateError(f"Offer is not active (status: {offer.status})")
        if not purchase.slots_decremented:
            available = offer.slots_available if offer.slots_available is not None else offer.slots_total
            if (available or 0) <= 0:
                raise InvalidStateError("No available slots for this offer")

        claim = db.session.execute(
            db.update(PurchaseRecord)
            .where(PurchaseRecord.id == purchase.id, PurchaseRecord.status == "pending_payment")
            .values(status="payment_processing", updated_at=utcnow())
        )
        if claim.rowcount != 1:
            db.session.rollback()
            raise InvalidStateError("Purchase is already being processed")
        db.session.commit()

        purchase_id = purchase.id
        logger.info("[purchase=%s] SAGA START user=%s offer=%s", purchase_id, user_id, offer.id)
        done = self.completed_steps(purchase_id)

        transaction_id = None
        try:
            transaction = self._run_step(
                purchase_id,
                SagaStep.TRANSACTION_CREATED,
                lambda: self._create_transaction(purchase, offer, payment_method),
                done,
            ) or self._find_transaction(purchase_id)
            transaction_id = transaction.id
            self._run_step(
                purchase_id,
                SagaStep.PAYMENT_PROCESSED,
                lambda: self._charge(transaction, payment_method),
                done,
            )
            self._run_step(
                purchase_id,
                SagaStep.PURCHASE_UPDATED,
                lambda: self._complete_purchase(purchase_id),
                done,
            )
        except Exception as e:
            logger.error("[purchase=%s] SAGA FAILED before payment completed: %s", purchase_id, e)
            self._fail_purchase(purchase_id, transaction_id, e)
            raise PaymentProcessingError("Payment processing failed") from e

        try:
            access_url = self._run_post_payment(purchase_id, done)
        except Exception as e:
            logger.error("[purchase=%s] post-payment step failed, recovering: %s", purchase_id, e)
            return self.resume_fulfillment(purchase_id)

        self._log_activity(user_id, "payment_processed", purchase_id, {
            "transaction_id": str(transaction_id),
            "payment_method": payment_method,
        })
        logger.info("[purchase=%s] SAGA OK", purchase_id)
        return PaymentResult(
            success=True,
            purchase_id=str(purchase_id),
            transaction_id=str(transaction_id),
            access_url=access_url,
        )

    def resume_fulfillment(self, purchase_id, user_id=None):
        """Re-run the post-payment steps missing from the step log."""
        purchase = self._get_purchase(purchase_id, user_id)
        if purchase.status == "refunded":
            raise InvalidStateError("Purchase has been refunded")
        purchase_id = purchase.id
        done = self.completed_steps(purchase_id)
        transaction = self._find_transaction(purchase_id)

        if SagaStep.PAYMENT_PROCESSED.value not in done:
            if transaction is None or transaction.status != "completed":
                raise InvalidStateError("Payment has not been processed for this purchase")
            self._record_step(purchase_id, SagaStep.PAYMENT_PROCESSED)
            done.add(SagaStep.PAYMENT_PROCESSED.value)

        transaction_id = str(transaction.id) if transaction else None
        missing = [step.value for step in POST_PAYMENT_STEPS if step.value not in done]
        if not missing:
            return PaymentResult(success=True, purchase_id=str(purchase_id), transaction_id=transaction_id)

        logger.info("[purchase=%s] SAGA RESUME missing=%s", purchase_id, ",".join(missing))
        try:
            access_url = self._run_post_payment(purchase_id, done)
        except Exception as e:
            # The buyer has paid; they can still regenerate a token later
            logger.error("[purchase=%s] recovery could not grant access: %s", purchase_id, e, exc_info=True)
            access_url = None

        self._log_activity(purchase.user_id, "payment_recovered", purchase_id, {
            "steps": missing,
            "access_granted": access_url is not None,
        })
        return PaymentResult(
            success=True,
            purchase_id=str(purchase_id),
            transaction_id=transaction_id,
            access_url=access_url,
            recovered=True,
        )

    def handle_payment_webhook(self, transaction_id, status, payment_id=None):
        if status not in WEBHOOK_STATUSES:
            raise ValidationError(f"Unsupported payment status: {status}")

        transaction = db.session.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction not found")
        purchase = self._get_purchase(transaction.purchase_id)
        purchase_id = purchase.id
        logger.info("[purchase=%s] webhook %s for transaction %s", purchase_id, status, transaction_id)

        if status == "completed":
            if purchase.status == "refunded":
                logger.warning("[purchase=%s] completion webhook for refunded purchase ignored", purchase_id)
                return {"processed": False, "purchase_id": str(purchase_id), "status": purchase.status}

            transaction.status = "completed"
            if payment_id:
                transaction.payment_id = payment_id
            if transaction.completed_at is None:
                transaction.completed_at = utcnow()
            db.session.commit()

            done = self.completed_steps(purchase_id)
            if SagaStep.PAYMENT_PROCESSED.value not in done:
                self._record_step(purchase_id, SagaStep.PAYMENT_PROCESSED)
                done.add(SagaStep.PAYMENT_PROCESSED.value)
            try:
                self._run_post_payment(purchase_id, done)
            except Exception as e:
                logger.error("[purchase=%s] post-payment step failed after webhook, recovering: %s", purchase_id, e)
                result = self.resume_fulfillment(purchase_id)
                return {
                    "processed": True,
                    "recovered": True,
                    "purchase_id": str(purchase_id),
                    "status": "completed",
                    "access_granted": result.access_url is not None,
                }
            return {"processed": True, "purchase_id": str(purchase_id), "status": "completed"}

        if purchase.status in ("completed", "refunded"):
            logger.info("[purchase=%s] failure webhook for %s purchase ignored", purchase_id, purchase.status)
            return {"processed": False, "purchase_id": str(purchase_id), "status": purchase.status}

        transaction.status = "failed"
        transaction.updated_at = utcnow()
        self._transition(purchase, "failed")
        db.session.commit()

        self.notifications.create_transaction_notifications(transaction, "failed", send_to_seller=False)
        self._log_activity(purchase.user_id, "payment_failed", purchase_id, {
            "transaction_id": str(transaction.id),
            "source": "webhook",
        })
        return {"processed": True, "purchase_id": str(purchase_id), "status": "failed"}

    def confirm_access(self, purchase_id, is_working, user_id):
        purchase = self._get_purchase(purchase_id, user_id)
        if not purchase.access_provided:
            raise InvalidStateError("Access has not been provided for this purchase")

        result = {"confirmed": True, "dispute_created": False, "dispute_id": None}
        if not is_working:
            dispute = self.disputes.open_access_dispute(purchase, user_id)
            result["dispute_created"] = True
            result["dispute_id"] = str(dispute.id)

        purchase.access_confirmed = True
        purchase.access_confirmed_at = utcnow()
        db.session.commit()

        self._log_activity(user_id, "access_confirmation", purchase.id, {
            "is_working": bool(is_working),
            "dispute_id": result["dispute_id"],
        })
        return result

    def regenerate_access_token(self, purchase_id, user_id):
        purchase = self._get_purchase(purchase_id, user_id)
        if not purchase.access_provided:
            raise InvalidStateError("Access has not been provided for this purchase")

        issued = self.tokens.issue(purchase.id, user_id, self.regenerated_token_ttl_minutes)
        self._log_activity(user_id, "token_regenerated", purchase.id, {"token_id": issued.token_id})
        return issued

    def refund_purchase(self, purchase_id, user_id=None):
        purchase = self._get_purchase(purchase_id, user_id)
        if purchase.status != "completed":
            raise InvalidStateError(f"Only completed purchases can be refunded (status: {purchase.status})")

        self._transition(purchase, "refunded")
        purchase.access_provided = False
        db.session.commit()

        release = db.session.execute(
            db.update(PurchaseRecord)
            .where(PurchaseRecord.id == purchase.id, PurchaseRecord.slots_decremented.is_(True))
            .values(slots_decremented=False)
        )
        db.session.commit()
        if release.rowcount == 1:
            result = restore_available_slot(purchase.offer_id)
            if not result.ok:
                logger.warning("[purchase=%s] slot could not be restored on refund", purchase.id)

        self.notifications.create_refund_notification(purchase)
        self._log_activity(purchase.user_id, "purchase_refunded", purchase.id)
        logger.info("[purchase=%s] refunded", purchase.id)
        return purchase
