import logging

from flask import Blueprint, current_app, jsonify, request

from estate_billing.enforcement import tenant_id_from_request
from estate_billing.errors import ValidationError

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/api")


def _billing():
    return current_app.extensions["billing"]


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _required(body: dict, field: str):
    value = body.get(field)
    if value in (None, ""):
        raise ValidationError(f"{field} is required", details={"field": field})
    return value


# ---- subscription ----

@billing_bp.route("/billing/subscription", methods=["GET"])
def get_subscription():
    tenant_id = tenant_id_from_request()
    return jsonify(_billing().subscriptions.get_subscription(tenant_id))


@billing_bp.route("/billing/subscription", methods=["POST"])
def start_subscription():
    """
    Start a provider subscription for the tenant.

    Body: ``{"plan_id": str, "trial_days": int?}``
    """
    tenant_id = tenant_id_from_request()
    body = _json_body()

    trial_days = body.get("trial_days")
    if trial_days is not None and (not isinstance(trial_days, int) or trial_days < 0):
        raise ValidationError("trial_days must be a non-negative integer", details={"field": "trial_days"})

    result = _billing().subscriptions.start_subscription(
        tenant_id, _required(body, "plan_id"), trial_days=trial_days
    )
    return jsonify({"subscription": result.to_dict()}), 201


@billing_bp.route("/billing/subscription", methods=["PUT"])
def change_plan():
    tenant_id = tenant_id_from_request()
    body = _json_body()
    result = _billing().subscriptions.change_plan(tenant_id, _required(body, "plan_id"))
    return jsonify({"subscription": result.to_dict()})


@billing_bp.route("/billing/subscription/cancel", methods=["POST"])
def cancel_subscription():
    tenant_id = tenant_id_from_request()
    body = _json_body()

    immediate = body.get("immediate", False)
    if not isinstance(immediate, bool):
        raise ValidationError("immediate must be a boolean", details={"field": "immediate"})

    result = _billing().subscriptions.cancel_subscription(tenant_id, immediate=immediate)
    return jsonify(result)


@billing_bp.route("/billing/usage", methods=["GET"])
def usage():
    tenant_id = tenant_id_from_request()
    return jsonify(_billing().enforcer.usage_summary(tenant_id))


@billing_bp.route("/billing/invoices", methods=["GET"])
def invoices():
    tenant_id = tenant_id_from_request()
    limit = request.args.get("limit", default=20, type=int)
    return jsonify({"invoices": _billing().subscriptions.list_invoices(tenant_id, limit=limit)})


@billing_bp.route("/billing/payment-method", methods=["PUT"])
def update_payment_method():
    """
    Replace the default card used for subscription invoices.

    Body: ``{"payment_method_id": str}``
    """
    tenant_id = tenant_id_from_request()
    body = _json_body()
    payment_method = _billing().subscriptions.update_payment_method(
        tenant_id, _required(body, "payment_method_id")
    )
    return jsonify({"payment_method": payment_method})


@billing_bp.route("/billing/payment-methods", methods=["GET"])
def list_payment_methods():
    tenant_id = tenant_id_from_request()
    return jsonify({"payment_methods": _billing().subscriptions.list_payment_methods(tenant_id)})


@billing_bp.route("/billing/payment-methods/<payment_method_id>", methods=["DELETE"])
def remove_payment_method(payment_method_id):
    tenant_id = tenant_id_from_request()
    _billing().subscriptions.remove_payment_method(tenant_id, payment_method_id)
    return "", 204


@billing_bp.route("/billing/checkout", methods=["POST"])
def create_checkout():
    """
    Hosted Mercado Pago checkout.

    Body: ``{"items": [{"title", "quantity", "unit_price"}], "payer"?, "back_urls"?}``
    """
    tenant_id = tenant_id_from_request()
    body = _json_body()
    preference = _billing().subscriptions.create_checkout(
        tenant_id,
        _required(body, "items"),
        payer=body.get("payer"),
        back_urls=body.get("back_urls"),
    )
    return jsonify({"checkout": preference}), 201


# ---- one-off payments ----

@billing_bp.route("/payments/<method>", methods=["POST"])
def create_payment(method):
    """
    Create a one-off PIX, Boleto or credit card payment.

    Body: ``{"amount": number, "description": str, "payer": {"email", "tax_id", ...}}``
    """
    tenant_id = tenant_id_from_request()
    body = _json_body()

    payer = body.get("payer") or {}
    if not isinstance(payer, dict):
        raise ValidationError("payer must be an object", details={"field": "payer"})

    payment = _billing().subscriptions.create_payment(
        tenant_id,
        method,
        _required(body, "amount"),
        body.get("description") or "",
        payer,
    )
    return jsonify({"payment": payment.to_dict()}), 201


@billing_bp.route("/payments/<payment_id>", methods=["GET"])
def get_payment(payment_id):
    tenant_id = tenant_id_from_request()
    payment = _billing().subscriptions.refresh_payment(tenant_id, payment_id)
    return jsonify({"payment": payment.to_dict()})


@billing_bp.route("/payments/<payment_id>/cancel", methods=["POST"])
def cancel_payment(payment_id):
    tenant_id = tenant_id_from_request()
    payment = _billing().subscriptions.cancel_payment(tenant_id, payment_id)
    return jsonify({"payment": payment.to_dict()})
