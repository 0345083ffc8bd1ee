"""
Access Token Issuer
Mints single-use, time-boxed access credentials bound to a purchase.
Only a salted SHA-256 digest of each token is persisted.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from fulfillment_service.errors import TokenAlreadyUsed, TokenExpired, TokenNotFound
from fulfillment_service.extensions import db
from fulfillment_service.models import AccessToken
from fulfillment_service.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


@dataclass
class IssuedToken:
    token: str
    token_id: str
    access_url: str


def generate_token():
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(token, salt=""):
    return hashlib.sha256((token + (salt or "")).encode("utf-8")).hexdigest()


def build_access_url(base_url, purchase_id, token):
    return f"{base_url.rstrip('/')}/access?id={purchase_id}&token={token}"


class AccessTokenIssuer:
    def __init__(self, salt="", base_url=""):
        self.salt = salt
        self.base_url = base_url

    def issue(self, purchase_id, user_id=None, ttl_minutes=30):
        token = generate_token()
        access_token = AccessToken(
            purchase_id=purchase_id,
            token_hash=hash_token(token, self.salt),
            expires_at=utcnow() + timedelta(minutes=ttl_minutes),
            used=False,
            created_by=user_id,
        )
        db.session.add(access_token)
        db.session.commit()

        logger.info("Issued access token %s for purchase %s (ttl=%sm)", access_token.id, purchase_id, ttl_minutes)
        return IssuedToken(
            token=token,
            token_id=str(access_token.id),
            access_url=build_access_url(self.base_url, purchase_id, token),
        )

    def redeem(self, token, purchase_id=None):
        """
        Consume a raw token and return the purchase id it grants access to.
        Raises TokenNotFound, TokenExpired or TokenAlreadyUsed. Store errors
        propagate unchanged.
        """
        if not token:
            raise TokenNotFound("Access token is missing")

        query = db.select(AccessToken).where(AccessToken.token_hash == hash_token(token, self.salt))
        if purchase_id is not None:
            query = query.where(AccessToken.purchase_id == purchase_id)
        access_token = db.session.execute(query).scalar_one_or_none()

        if access_token is None:
            raise TokenNotFound("Access token not found")
        if access_token.used:
            raise TokenAlreadyUsed("Access token has already been used")
        if as_utc(access_token.expires_at) <= utcnow():
            raise TokenExpired("Access token has expired")

        result = db.session.execute(
            db.update(AccessToken)
            .where(AccessToken.id == access_token.id, AccessToken.used.is_(False))
            .values(used=True, used_at=utcnow())
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise TokenAlreadyUsed("Access token has already been used")
        db.session.commit()

        logger.info("Access token %s redeemed for purchase %s", access_token.id, access_token.purchase_id)
        return access_token.purchase_id
