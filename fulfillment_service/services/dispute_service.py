"""
Dispute Opener
Opens an access dispute when a buyer reports that the purchased access does not work.
"""

import logging
from datetime import timedelta

from fulfillment_service.errors import NotFoundError
from fulfillment_service.extensions import db
from fulfillment_service.models import Dispute, Transaction
from fulfillment_service.timeutils import utcnow

logger = logging.getLogger(__name__)

RESOLUTION_DAYS = 3


class DisputeOpener:
    def __init__(self, notifications):
        self.notifications = notifications

    def open_access_dispute(self, purchase, reporter_id, description=None):
        transaction = db.session.execute(
            db.select(Transaction)
            .where(Transaction.purchase_id == purchase.id)
            .order_by(Transaction.created_at.desc())
        ).scalars().first()
        if transaction is None:
            raise NotFoundError("Transaction not found for this purchase")

        existing = db.session.execute(
            db.select(Dispute).where(
                Dispute.transaction_id == transaction.id,
                Dispute.dispute_type == "access",
                Dispute.status == "open",
            )
        ).scalars().first()
        if existing is not None:
            logger.info("Access dispute %s already open for purchase %s", existing.id, purchase.id)
            return existing

        now = utcnow()
        dispute = Dispute(
            reporter_id=reporter_id,
            reported_entity_type="subscription",
            reported_entity_id=purchase.offer_id,
            transaction_id=transaction.id,
            dispute_type="access",
            description=description or "Access instructions do not work",
            status="open",
            evidence_required=True,
            resolution_deadline=now + timedelta(days=RESOLUTION_DAYS),
            created_at=now,
        )
        db.session.add(dispute)
        db.session.commit()
        logger.info("Opened access dispute %s for purchase %s", dispute.id, purchase.id)

        self.notifications.create_dispute_notifications(
            dispute, reporter_id, transaction.seller_id, "access"
        )
        return dispute
