from flask import current_app


def get_payment_service():
    return current_app.extensions["payment_service"]


def get_notification_engine():
    return current_app.extensions["notification_engine"]


def get_token_issuer():
    return current_app.extensions["token_issuer"]
