from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from fulfillment_service.errors import NotFoundError, ValidationError
from fulfillment_service.extensions import db
from fulfillment_service.models import PurchaseRecord
from fulfillment_service.routes import current_user_id, parse_uuid
from fulfillment_service.services import get_payment_service, get_token_issuer

purchase_bp = Blueprint('purchases', __name__)


@purchase_bp.route('/purchases/<uuid:purchase_id>/payment', methods=['POST'])
@jwt_required()
def process_payment(purchase_id):
    """
    Pay for a pending purchase and fulfil it
    ---
    tags:
      - Purchases
    security:
      - Bearer: []
    parameters:
      - name: purchase_id
        in: path
        type: string
        required: true
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - payment_method
          properties:
            payment_method:
              type: string
              example: blik
    responses:
      200:
        description: Payment processed, access URL returned once
      400:
        description: Missing payment method
      403:
        description: Purchase belongs to another user
      404:
        description: Purchase not found
      409:
        description: Purchase not pending, offer inactive or sold out
      502:
        description: Payment failed, purchase marked failed
    """
    data = request.get_json(silent=True) or {}
    payment_method = data.get('payment_method')
    if not payment_method:
        raise ValidationError("Missing field: payment_method")

    result = get_payment_service().process_payment(purchase_id, payment_method, current_user_id())
    return jsonify({"success": True, "data": result.to_dict()}), 200


@purchase_bp.route('/purchases/<uuid:purchase_id>/resume', methods=['POST'])
@jwt_required()
def resume_fulfillment(purchase_id):
    """
    Re-run fulfillment steps missing after a paid purchase
    ---
    tags:
      - Purchases
    security:
      - Bearer: []
    parameters:
      - name: purchase_id
        in: path
        type: string
        required: true
    responses:
      200:
        description: Fulfillment complete (recovered tells whether anything ran)
      409:
        description: Payment has not been processed, or the purchase was refunded
    """
    result = get_payment_service().resume_fulfillment(purchase_id, current_user_id())
    return jsonify({"success": True, "data": result.to_dict()}), 200


@purchase_bp.route('/purchases/<uuid:purchase_id>/confirm-access', methods=['POST'])
@jwt_required()
def confirm_access(purchase_id):
    """
    Confirm whether the purchased access works
    ---
    tags:
      - Purchases
    security:
      - Bearer: []
    parameters:
      - name: purchase_id
        in: path
        type: string
        required: true
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - is_working
          properties:
            is_working:
              type: boolean
    responses:
      200:
        description: Confirmation stored, dispute opened when access does not work
      409:
        description: Access has not been provided yet
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get('is_working'), bool):
        raise ValidationError("Field is_working must be a boolean")

    result = get_payment_service().confirm_access(purchase_id, data['is_working'], current_user_id())
    return jsonify({"success": True, "data": result}), 200


@purchase_bp.route('/purchases/<uuid:purchase_id>/regenerate-token', methods=['POST'])
@jwt_required()
def regenerate_token(purchase_id):
    """
    Issue a fresh access link for a purchase
    ---
    tags:
      - Purchases
    security:
      - Bearer: []
    parameters:
      - name: purchase_id
        in: path
        type: string
        required: true
    responses:
      200:
        description: New access URL, valid for 60 minutes
      409:
        description: Access has not been provided yet
    """
    issued = get_payment_service().regenerate_access_token(purchase_id, current_user_id())
    return jsonify({
        "success": True,
        "data": {"access_url": issued.access_url, "token_id": issued.token_id},
    }), 200


@purchase_bp.route('/access', methods=['GET'])
def redeem_access():
    """
    Redeem a single-use access link
    ---
    tags:
      - Access
    parameters:
      - name: id
        in: query
        type: string
        required: true
      - name: token
        in: query
        type: string
        required: true
    responses:
      200:
        description: Token consumed, purchase and offer returned
      404:
        description: Token not found
      409:
        description: Token already used
      410:
        description: Token expired
    """
    token = request.args.get('token')
    if not token or not request.args.get('id'):
        raise ValidationError("Query parameters id and token are required")
    purchase_id = parse_uuid(request.args.get('id'), "purchase id")

    redeemed_id = get_token_issuer().redeem(token, purchase_id)
    purchase = db.session.get(PurchaseRecord, redeemed_id)
    if purchase is None:
        raise NotFoundError("Purchase not found")

    return jsonify({
        "success": True,
        "data": {
            "purchase": purchase.to_dict(),
            "offer": purchase.offer.to_dict() if purchase.offer else None,
        },
    }), 200
