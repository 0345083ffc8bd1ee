from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from fulfillment_service.errors import NotFoundError, ValidationError
from fulfillment_service.routes import current_user_id, parse_uuid
from fulfillment_service.services import get_notification_engine

notification_bp = Blueprint('notifications', __name__)


def _parse_bool(value):
    if value is None:
        return None
    return str(value).lower() in ('true', '1', 'yes')


def _parse_ids(data):
    ids = data.get('ids')
    if not isinstance(ids, list):
        return None
    return [parse_uuid(i, "notification id") for i in ids]


def _mutation_response(ok):
    if not ok:
        return jsonify({
            "success": False,
            "error_code": "NOTIFICATION_UPDATE_FAILED",
            "message": "Could not update notifications."
        }), 500
    return jsonify({"success": True}), 200


@notification_bp.route('/notifications', methods=['GET'])
@jwt_required()
def list_notifications():
    """
    List the current user's notifications
    ---
    tags:
      - Notifications
    security:
      - Bearer: []
    parameters:
      - name: type
        in: query
        type: string
      - name: read
        in: query
        type: boolean
      - name: priority
        in: query
        type: string
        enum: [high, normal, low]
      - name: relatedEntityType
        in: query
        type: string
      - name: relatedEntityId
        in: query
        type: string
      - name: page
        in: query
        type: integer
        default: 1
      - name: pageSize
        in: query
        type: integer
        default: 10
    responses:
      200:
        description: Page of notifications, newest first
    """
    related_entity_id = request.args.get('relatedEntityId')
    result = get_notification_engine().get_user_notifications(
        current_user_id(),
        type=request.args.get('type'),
        read=_parse_bool(request.args.get('read')),
        priority=request.args.get('priority'),
        related_entity_type=request.args.get('relatedEntityType'),
        related_entity_id=parse_uuid(related_entity_id, "relatedEntityId") if related_entity_id else None,
        page=request.args.get('page', 1, type=int),
        page_size=request.args.get('pageSize', 10, type=int),
    )
    return jsonify({
        "success": True,
        "data": [n.to_dict() for n in result['notifications']],
        "pagination": result['pagination']
    }), 200


@notification_bp.route('/notifications', methods=['PATCH'])
@jwt_required()
def mark_notifications():
    """
    Mark notifications as read
    ---
    tags:
      - Notifications
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        description: one of {ids}, {all: true} or {entityType, entityId}
        schema:
          type: object
          properties:
            ids:
              type: array
              items:
                type: string
            all:
              type: boolean
            entityType:
              type: string
            entityId:
              type: string
    responses:
      200:
        description: Notifications marked as read
      400:
        description: No selector given
    """
    data = request.get_json(silent=True) or {}
    engine = get_notification_engine()
    user_id = current_user_id()

    ids = _parse_ids(data)
    if ids is not None:
        return _mutation_response(engine.mark_as_read(ids, user_id))
    if data.get('all') is True:
        return _mutation_response(engine.mark_all_as_read(user_id))
    if data.get('entityType') and data.get('entityId'):
        entity_id = parse_uuid(data['entityId'], "entityId")
        return _mutation_response(engine.mark_entity_as_read(user_id, data['entityType'], entity_id))

    raise ValidationError("Provide ids, all or entityType with entityId")


@notification_bp.route('/notifications', methods=['DELETE'])
@jwt_required()
def delete_notifications():
    """
    Delete notifications
    ---
    tags:
      - Notifications
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        description: one of {ids}, {all: true} or {read: true}
        schema:
          type: object
          properties:
            ids:
              type: array
              items:
                type: string
            all:
              type: boolean
            read:
              type: boolean
    responses:
      200:
        description: Notifications deleted
      400:
        description: No selector given
    """
    data = request.get_json(silent=True) or {}
    engine = get_notification_engine()
    user_id = current_user_id()

    ids = _parse_ids(data)
    if ids is not None:
        return _mutation_response(engine.delete_notifications(ids, user_id))
    if data.get('all') is True:
        return _mutation_response(engine.delete_all(user_id))
    if data.get('read') is True:
        return _mutation_response(engine.delete_read(user_id))

    raise ValidationError("Provide ids, all or read")


@notification_bp.route('/notifications/count', methods=['GET'])
@jwt_required()
def unread_count():
    """
    Count unread notifications
    ---
    tags:
      - Notifications
    security:
      - Bearer: []
    responses:
      200:
        description: Unread count
    """
    count = get_notification_engine().get_unread_count(current_user_id())
    return jsonify({"success": True, "data": {"count": count}}), 200


@notification_bp.route('/notifications/<uuid:notification_id>', methods=['GET'])
@jwt_required()
def get_notification(notification_id):
    """
    Get a single notification
    ---
    tags:
      - Notifications
    security:
      - Bearer: []
    parameters:
      - name: notification_id
        in: path
        type: string
        required: true
    responses:
      200:
        description: Notification details
      404:
        description: Notification not found
    """
    notification = get_notification_engine().get_notification(notification_id, current_user_id())
    if notification is None:
        raise NotFoundError("Notification not found")
    return jsonify({"success": True, "data": notification.to_dict()}), 200


@notification_bp.route('/notifications/<uuid:notification_id>', methods=['PATCH'])
@jwt_required()
def update_notification(notification_id):
    """
    Set the read state of a single notification
    ---
    tags:
      - Notifications
    security:
      - Bearer: []
    parameters:
      - name: notification_id
        in: path
        type: string
        required: true
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - is_read
          properties:
            is_read:
              type: boolean
    responses:
      200:
        description: Notification updated
      400:
        description: is_read missing
      404:
        description: Notification not found
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get('is_read'), bool):
        raise ValidationError("Field is_read must be a boolean")

    notification = get_notification_engine().set_read_state(
        notification_id, current_user_id(), data['is_read']
    )
    if notification is None:
        raise NotFoundError("Notification not found")
    return jsonify({"success": True, "data": notification.to_dict()}), 200


@notification_bp.route('/notifications/<uuid:notification_id>', methods=['DELETE'])
@jwt_required()
def delete_notification(notification_id):
    """
    Delete a single notification
    ---
    tags:
      - Notifications
    security:
      - Bearer: []
    parameters:
      - name: notification_id
        in: path
        type: string
        required: true
    responses:
      200:
        description: Notification deleted
      404:
        description: Notification not found
    """
    engine = get_notification_engine()
    user_id = current_user_id()
    if engine.get_notification(notification_id, user_id) is None:
        raise NotFoundError("Notification not found")
    return _mutation_response(engine.delete_notification(notification_id, user_id))
