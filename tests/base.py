import unittest
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

from flask_jwt_extended import create_access_token

from fulfillment_service.app import create_app
from fulfillment_service.extensions import db
from fulfillment_service.models import Group, Offer, PurchaseRecord, Transaction, UserProfile

TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "JWT_SECRET_KEY": "test-secret-key-with-enough-length",
    "TOKEN_SALT": "test-salt",
    "APP_BASE_URL": "https://app.test",
    "PAYMENT_WEBHOOK_SECRET": "whsec_test",
    "NOTIFICATION_RETRY_BASE_SECONDS": 0,
    "REALTIME_PUBLISH_URL": None,
}


def token_from_url(access_url):
    return parse_qs(urlparse(access_url).query)["token"][0]


class FulfillmentTestCase(unittest.TestCase):
    """App on in-memory SQLite, seeded with a buyer, a seller, a group, an offer and a pending purchase."""

    config_overrides = {}

    def setUp(self):
        self.app = create_app({**TEST_CONFIG, **self.config_overrides})
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()
        self.client = self.app.test_client()

        self.buyer = UserProfile(display_name="Anna", email="anna@example.com")
        self.seller = UserProfile(display_name="Marek", email="marek@example.com")
        self.group = Group(name="Family plan", owner_id=None)
        db.session.add_all([self.buyer, self.seller])
        db.session.flush()

        self.group.owner_id = self.seller.id
        self.offer = Offer(
            group=self.group,
            owner_id=self.seller.id,
            platform_name="Netflix",
            slots_total=4,
            slots_available=2,
            status="active",
            price_per_slot=Decimal("29.99"),
            currency="PLN",
        )
        self.purchase = PurchaseRecord(user_id=self.buyer.id, offer=self.offer, status="pending_payment")
        db.session.add_all([self.group, self.offer, self.purchase])
        db.session.commit()

        self.payments = self.app.extensions["payment_service"]
        self.notifications = self.app.extensions["notification_engine"]
        self.tokens = self.app.extensions["token_issuer"]

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def make_user(self, name):
        user = UserProfile(display_name=name, email=f"{name.lower()}@example.com")
        db.session.add(user)
        db.session.commit()
        return user

    def make_transaction(self, status="pending"):
        """A transaction as left behind by a payment still waiting on the gateway."""
        self.purchase.status = "payment_processing"
        transaction = Transaction(
            buyer_id=self.buyer.id,
            seller_id=self.seller.id,
            offer_id=self.offer.id,
            purchase_id=self.purchase.id,
            amount=Decimal("29.99"),
            platform_fee=Decimal("1.50"),
            seller_amount=Decimal("28.49"),
            currency="PLN",
            payment_method="blik",
            payment_provider="simulated",
            payment_id="pmt_pending",
            status=status,
        )
        db.session.add(transaction)
        db.session.commit()
        return transaction

    def auth_headers(self, user):
        return {"Authorization": f"Bearer {create_access_token(identity=str(user.id))}"}
