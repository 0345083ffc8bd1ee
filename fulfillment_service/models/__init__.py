from fulfillment_service.models.user import UserProfile
from fulfillment_service.models.offer import Group, GroupMember, Offer
from fulfillment_service.models.purchase import PurchaseRecord, PurchaseStep, Transaction
from fulfillment_service.models.access_token import AccessToken
from fulfillment_service.models.notification import Notification
from fulfillment_service.models.dispute import Dispute
from fulfillment_service.models.activity import PaymentActivity

__all__ = [
    "UserProfile",
    "Group",
    "GroupMember",
    "Offer",
    "PurchaseRecord",
    "PurchaseStep",
    "Transaction",
    "AccessToken",
    "Notification",
    "Dispute",
    "PaymentActivity",
]
