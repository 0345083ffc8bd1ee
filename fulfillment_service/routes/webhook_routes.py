import hashlib
import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from fulfillment_service.routes import parse_uuid
from fulfillment_service.services import get_payment_service

logger = logging.getLogger(__name__)

webhook_bp = Blueprint('webhooks', __name__)

SIGNATURE_HEADER = 'X-Payment-Signature'


def compute_signature(payload, secret):
    if isinstance(payload, str):
        payload = payload.encode('utf-8')
    return hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()


def verify_signature(payload, signature, secret):
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(payload, secret), signature)


@webhook_bp.route('/payment-gateway/webhook', methods=['POST'])
def payment_webhook():
    """
    Handle payment gateway callbacks
    ---
    tags:
      - Webhooks
    parameters:
      - name: X-Payment-Signature
        in: header
        type: string
        required: true
        description: hex HMAC-SHA256 of the raw body
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - transactionId
            - status
          properties:
            transactionId:
              type: string
            status:
              type: string
              enum: [completed, failed]
            paymentId:
              type: string
    responses:
      200:
        description: Event processed
      400:
        description: Invalid payload
      401:
        description: Missing or invalid signature
      404:
        description: Transaction not found
      503:
        description: Webhook secret not configured
    """
    secret = current_app.config.get('PAYMENT_WEBHOOK_SECRET')
    if not secret:
        logger.error("PAYMENT_WEBHOOK_SECRET is not configured, rejecting webhook")
        return jsonify({
            "success": False,
            "error_code": "WEBHOOK_NOT_CONFIGURED",
            "message": "Webhook verification is not configured."
        }), 503

    payload = request.get_data()
    if not verify_signature(payload, request.headers.get(SIGNATURE_HEADER), secret):
        logger.warning("Rejected payment webhook with missing or invalid signature")
        return jsonify({
            "success": False,
            "error_code": "INVALID_SIGNATURE",
            "message": "Invalid webhook signature."
        }), 401

    data = request.get_json(silent=True) or {}
    transaction_id = parse_uuid(data.get('transactionId'), "transactionId")
    result = get_payment_service().handle_payment_webhook(
        transaction_id, data.get('status'), data.get('paymentId')
    )
    return jsonify({"success": True, "data": result}), 200
