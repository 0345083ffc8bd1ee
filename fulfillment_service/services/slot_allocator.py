"""
Slot Allocator
Owns Offer.slots_available. Every write is a compare-and-swap against the
value that was read, so concurrent purchases of the same offer cannot push
the counter below zero or overwrite each other's decrement.

Neither function raises: running out of slots (or losing a race for the last
one) is a normal outcome the caller decides how to treat.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from fulfillment_service.extensions import db
from fulfillment_service.models import Offer
from fulfillment_service.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SlotResult:
    ok: bool
    remaining: Optional[int] = None


def _coerce_slots(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _read_slots(offer_id):
    row = db.session.execute(
        db.select(Offer.slots_available, Offer.slots_total).where(Offer.id == offer_id)
    ).first()
    return row


def decrement_available_slots(offer_id):
    """
    Take one slot from the offer.
    A null slots_available is read as slots_total.
    """
    try:
        row = _read_slots(offer_id)
        if row is None:
            logger.error("Offer %s not found, cannot decrement slots", offer_id)
            return SlotResult(ok=False)

        stored, total = row.slots_available, row.slots_total
        logger.info("Offer %s current slots: %s/%s", offer_id, stored, total)

        if stored is None:
            # TODO: track down writers that leave slots_available null and backfill them
            logger.warning("Offer %s has null slots_available, using slots_total", offer_id)
            available = _coerce_slots(total or 0)
            guard = Offer.slots_available.is_(None)
        else:
            available = _coerce_slots(stored)
            guard = Offer.slots_available == stored

        if available is None or available <= 0:
            logger.warning("No available slots for offer %s: %s. Cannot decrement.", offer_id, available)
            return SlotResult(ok=False, remaining=available)

        result = db.session.execute(
            db.update(Offer)
            .where(Offer.id == offer_id, guard)
            .values(slots_available=available - 1, updated_at=utcnow())
        )
        if result.rowcount != 1:
            db.session.rollback()
            logger.warning("Offer %s slots changed concurrently, decrement skipped", offer_id)
            return SlotResult(ok=False)

        db.session.commit()
        logger.info("Decremented slots for offer %s from %s to %s", offer_id, available, available - 1)
        return SlotResult(ok=True, remaining=available - 1)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Error decrementing slots for offer %s: %s", offer_id, e)
        return SlotResult(ok=False)


def restore_available_slot(offer_id):
    """Give one slot back, never above slots_total."""
    try:
        row = _read_slots(offer_id)
        if row is None:
            logger.error("Offer %s not found, cannot restore slot", offer_id)
            return SlotResult(ok=False)

        total = _coerce_slots(row.slots_total) or 0
        if row.slots_available is None:
            logger.warning("Offer %s has null slots_available, nothing to restore", offer_id)
            return SlotResult(ok=False, remaining=total)

        available = _coerce_slots(row.slots_available)
        if available is None or available >= total:
            logger.warning("Offer %s already at full capacity (%s/%s)", offer_id, available, total)
            return SlotResult(ok=False, remaining=available)

        result = db.session.execute(
            db.update(Offer)
            .where(Offer.id == offer_id, Offer.slots_available == row.slots_available)
            .values(slots_available=available + 1, updated_at=utcnow())
        )
        if result.rowcount != 1:
            db.session.rollback()
            logger.warning("Offer %s slots changed concurrently, restore skipped", offer_id)
            return SlotResult(ok=False)

        db.session.commit()
        logger.info("Restored slot for offer %s, now %s/%s", offer_id, available + 1, total)
        return SlotResult(ok=True, remaining=available + 1)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Error restoring slot for offer %s: %s", offer_id, e)
        return SlotResult(ok=False)
