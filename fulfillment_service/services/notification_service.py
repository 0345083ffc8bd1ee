"""
Notification Engine
Creates, deduplicates and serves user-facing notification rows.

Delivery is best effort: nothing in here raises to the caller on the write
path, because a notification must never abort the payment (or message, or
dispute) that triggered it. Existence checks fail open for the same reason.
"""

import logging
import math
import time
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from fulfillment_service.extensions import db
from fulfillment_service.models import (
    Dispute,
    Group,
    Notification,
    Offer,
    PurchaseRecord,
    Transaction,
    UserProfile,
)
from fulfillment_service.models.notification import NOTIFICATION_TYPES, PRIORITIES
from fulfillment_service.timeutils import utcnow

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.8
MAX_PAGE_SIZE = 100

ENTITY_MODELS = {
    "group": Group,
    "group_sub": Offer,
    "offer": Offer,
    "purchase": PurchaseRecord,
    "purchase_record": PurchaseRecord,
    "transaction": Transaction,
    "dispute": Dispute,
}


def normalize_title(value):
    return " ".join((value or "").lower().split())


def levenshtein(a, b):
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, 1):
        current = [i]
        for j, char_b in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b),
            ))
        previous = current
    return previous[-1]


def calculate_string_similarity(a, b):
    """1.0 for identical titles (ignoring case and whitespace), 0.0 for nothing in common."""
    a, b = normalize_title(a), normalize_title(b)
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


class NotificationEngine:
    def __init__(
        self,
        existence_cache=None,
        publisher=None,
        dedup_window_minutes=30,
        max_attempts=3,
        retry_base_seconds=0.1,
        sleep=time.sleep,
    ):
        self.cache = existence_cache
        self.publisher = publisher
        self.dedup_window_minutes = dedup_window_minutes
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self._sleep = sleep

    # --- Creation ---------------------------------------------------------

    def create_notification(
        self,
        user_id,
        type,
        title,
        content,
        related_entity_type=None,
        related_entity_id=None,
        priority="normal",
        skip_duplicate_check=False,
    ):
        """
        Create one notification. Returns the row, or None when the input is
        invalid, the recipient/entity is missing, a near-duplicate exists or
        every insert attempt failed.
        """
        if not user_id or not type or not title or not content:
            logger.warning("Notification for user %s is missing required fields, skipping", user_id)
            return None
        if type not in NOTIFICATION_TYPES:
            logger.warning("Unknown notification type %r, skipping", type)
            return None
        if priority not in PRIORITIES:
            logger.warning("Unknown notification priority %r, skipping", priority)
            return None

        if not self.verify_user_exists(user_id):
            logger.warning("User %s does not exist. Skipping notification.", user_id)
            return None

        has_entity = bool(related_entity_type and related_entity_id)
        if has_entity and not skip_duplicate_check:
            if not self.verify_entity_exists(related_entity_type, related_entity_id):
                logger.warning(
                    "Entity %s:%s does not exist. Skipping notification.",
                    related_entity_type, related_entity_id
                )
                return None
            if self.check_for_duplicate(user_id, type, related_entity_type, related_entity_id, title):
                logger.info(
                    "Skipping duplicate notification: %s for %s:%s",
                    type, related_entity_type, related_entity_id
                )
                return None

        notification = self._insert_with_retry(
            {
                "user_id": user_id,
                "type": type,
                "title": title,
                "content": content,
                "related_entity_type": related_entity_type,
                "related_entity_id": related_entity_id,
                "priority": priority,
                "is_read": False,
            },
            priority,
        )
        if notification is not None and self.publisher is not None:
            self.publisher.publish(notification)
        return notification

    def _insert_with_retry(self, fields, priority):
        attempts = self.max_attempts if priority == "high" else 1
        for attempt in range(1, attempts + 1):
            try:
                return self._insert(fields)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.warning("Notification insertion failed (attempt %d/%d): %s", attempt, attempts, e)
                if attempt < attempts:
                    self._sleep(self.retry_base_seconds * (2 ** attempt))

        logger.error("Giving up on %s notification for user %s", fields["type"], fields["user_id"])
        return None

    def _insert(self, fields):
        notification = Notification(created_at=utcnow(), **fields)
        db.session.add(notification)
        db.session.commit()
        return notification

    # --- Existence checks -------------------------------------------------

    def _cached_exists(self, key, lookup):
        if self.cache is not None and self.cache.get(key):
            return True
        try:
            exists = lookup()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Error verifying %s, assuming it exists: %s", key, e)
            return True
        # Misses are not cached: the row may be created a moment later
        if exists and self.cache is not None:
            self.cache.set(key, True)
        return exists

    def verify_user_exists(self, user_id):
        return self._cached_exists(
            f"user:{user_id}",
            lambda: db.session.execute(
                db.select(UserProfile.id).where(UserProfile.id == user_id)
            ).first() is not None,
        )

    def verify_entity_exists(self, entity_type, entity_id):
        model = ENTITY_MODELS.get(entity_type)
        if model is None:
            logger.warning("Unknown entity type: %s", entity_type)
            return False
        return self._cached_exists(
            f"{entity_type}:{entity_id}",
            lambda: db.session.execute(
                db.select(model.id).where(model.id == entity_id)
            ).first() is not None,
        )

    # --- Duplicate suppression --------------------------------------------

    def check_for_duplicate(self, user_id, type, entity_type, entity_id, title, window_minutes=None):
        if window_minutes is None:
            window_minutes = self.dedup_window_minutes
        cutoff = utcnow() - timedelta(minutes=window_minutes)

        try:
            recent_titles = db.session.execute(
                db.select(Notification.title).where(
                    Notification.user_id == user_id,
                    Notification.type == type,
                    Notification.related_entity_type == entity_type,
                    Notification.related_entity_id == entity_id,
                    Notification.created_at >= cutoff,
                )
            ).scalars().all()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Error checking for duplicate notifications: %s", e)
            return False

        normalized = normalize_title(title)
        for existing in recent_titles:
            if normalize_title(existing) == normalized:
                return True
            if calculate_string_similarity(existing, title) > SIMILARITY_THRESHOLD:
                return True
        return False

    # --- Consolidated notifications ---------------------------------------

    def _display_name(self, user_id, fallback):
        profile = db.session.get(UserProfile, user_id) if user_id else None
        return (profile.display_name if profile else None) or fallback

    def create_transaction_notifications(self, transaction, status="completed", send_to_seller=True):
        """Notify the buyer (and on completion the seller) about a transaction."""
        platform = transaction.offer.platform_name if transaction.offer else "subscription"
        created = []

        if status == "completed":
            buyer = (
                "purchase_completed",
                f"Purchase of {platform} completed",
                f"Your {platform} subscription purchase is complete. You can now open the access instructions.",
                "high",
            )
        elif status == "failed":
            buyer = (
                "purchase_failed",
                f"Problem with your {platform} purchase",
                f"Something went wrong with your {platform} subscription purchase. Check the payment details.",
                "high",
            )
        else:
            buyer = (
                "purchase_update",
                f"Update on your {platform} purchase",
                f"The status of your {platform} subscription purchase has changed.",
                "normal",
            )

        buyer_type, buyer_title, buyer_content, buyer_priority = buyer
        notification = self.create_notification(
            transaction.buyer_id,
            buyer_type,
            buyer_title,
            buyer_content,
            "transaction",
            transaction.id,
            buyer_priority,
            skip_duplicate_check=True,
        )
        if notification:
            created.append(notification)

        if send_to_seller and status == "completed" and transaction.seller_id:
            buyer_name = self._display_name(transaction.buyer_id, "Someone")
            notification = self.create_notification(
                transaction.seller_id,
                "sale_completed",
                "Sale completed",
                f"{buyer_name} just bought a slot in your {platform} subscription.",
                "transaction",
                transaction.id,
                "normal",
                skip_duplicate_check=True,
            )
            if notification:
                created.append(notification)

        return created

    def create_dispute_notifications(self, dispute, reporter_id, reported_id, dispute_type="access"):
        subject = "access to the subscription" if dispute_type == "access" else "the service"
        created = []

        notification = self.create_notification(
            reporter_id,
            "dispute_created",
            "Your report has been registered",
            f"Your report about a problem with {subject} has been registered. We will contact you soon.",
            "dispute",
            dispute.id,
            "normal",
            skip_duplicate_check=True,
        )
        if notification:
            created.append(notification)

        if reported_id:
            notification = self.create_notification(
                reported_id,
                "dispute_filed",
                "A problem was reported with your offer",
                f"A buyer reported a problem with {subject}. Please look into it urgently.",
                "dispute",
                dispute.id,
                "high",
                skip_duplicate_check=True,
            )
            if notification:
                created.append(notification)

        return created

    def create_refund_notification(self, purchase):
        platform = purchase.offer.platform_name if purchase.offer else "subscription"
        return self.create_notification(
            purchase.user_id,
            "purchase_refunded",
            f"Refund for {platform}",
            f"Your payment for the {platform} subscription has been refunded.",
            "purchase_record",
            purchase.id,
            "high",
            skip_duplicate_check=True,
        )

    # --- Read path --------------------------------------------------------

    def get_user_notifications(
        self,
        user_id,
        type=None,
        read=None,
        priority=None,
        related_entity_type=None,
        related_entity_id=None,
        page=1,
        page_size=10,
    ):
        page = max(int(page if page is not None else 1), 1)
        page_size = min(max(int(page_size if page_size is not None else 10), 1), MAX_PAGE_SIZE)

        query = db.select(Notification).where(Notification.user_id == user_id)
        if type:
            query = query.where(Notification.type == type)
        if read is not None:
            query = query.where(Notification.is_read.is_(bool(read)))
        if priority:
            query = query.where(Notification.priority == priority)
        if related_entity_type:
            query = query.where(Notification.related_entity_type == related_entity_type)
        if related_entity_id:
            query = query.where(Notification.related_entity_id == related_entity_id)

        total = db.session.execute(
            db.select(db.func.count()).select_from(query.subquery())
        ).scalar_one()
        notifications = db.session.execute(
            query.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars().all()

        return {
            "notifications": notifications,
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_pages": math.ceil(total / page_size),
            },
        }

    def get_notification(self, notification_id, user_id):
        return db.session.execute(
            db.select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
            )
        ).scalar_one_or_none()

    def get_unread_count(self, user_id):
        try:
            return db.session.execute(
                db.select(db.func.count(Notification.id)).where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
            ).scalar_one()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Error counting unread notifications: %s", e)
            return 0

    # --- Mutations --------------------------------------------------------

    def _apply(self, statement, description):
        try:
            db.session.execute(statement)
            db.session.commit()
            return True
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Error %s: %s", description, e)
            return False

    def mark_as_read(self, notification_ids, user_id):
        if not notification_ids:
            return True
        return self._apply(
            db.update(Notification)
            .where(Notification.id.in_(list(notification_ids)), Notification.user_id == user_id)
            .values(is_read=True),
            "marking notifications as read",
        )

    def mark_all_as_read(self, user_id):
        return self._apply(
            db.update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True),
            "marking all notifications as read",
        )

    def mark_entity_as_read(self, user_id, entity_type, entity_id):
        return self._apply(
            db.update(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.related_entity_type == entity_type,
                Notification.related_entity_id == entity_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True),
            "marking entity notifications as read",
        )

    def set_read_state(self, notification_id, user_id, is_read):
        notification = self.get_notification(notification_id, user_id)
        if notification is None:
            return None
        notification.is_read = bool(is_read)
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Error updating notification %s: %s", notification_id, e)
            return None
        return notification

    def delete_notification(self, notification_id, user_id):
        return self.delete_notifications([notification_id], user_id)

    def delete_notifications(self, notification_ids, user_id):
        if not notification_ids:
            return True
        return self._apply(
            db.delete(Notification).where(
                Notification.id.in_(list(notification_ids)),
                Notification.user_id == user_id,
            ),
            "deleting notifications",
        )

    def delete_all(self, user_id):
        return self._apply(
            db.delete(Notification).where(Notification.user_id == user_id),
            "deleting all notifications",
        )

    def delete_read(self, user_id):
        return self._apply(
            db.delete(Notification).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(True),
            ),
            "deleting read notifications",
        )
