import logging

from flask import Blueprint, current_app, jsonify, request

from estate_billing.webhooks.processor import parse_ipn_args

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


def _processor():
    return current_app.extensions["billing"].processor


@webhooks_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    """
    Stripe event delivery.

    The raw body is verified before it is parsed. An invalid signature is
    refused with 401; everything after verification is acknowledged.
    """
    raw_body = request.get_data(cache=False)
    result = _processor().handle_stripe(request.headers, raw_body)
    return jsonify(result), 200


@webhooks_bp.route("/mercadopago", methods=["POST"])
def mercadopago_webhook():
    raw_body = request.get_data(cache=False)
    result = _processor().handle_mercadopago(request.headers, raw_body, request.args)
    return jsonify(result), 200


@webhooks_bp.route("/mercadopago", methods=["GET"])
def mercadopago_ipn():
    """Legacy IPN notification: ``?topic=payment&id=<payment id>``."""
    topic, resource_id = parse_ipn_args(request.args)
    result = _processor().handle_mercadopago_ipn(topic, resource_id)
    return jsonify(result), 200
