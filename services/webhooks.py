# services/webhooks.py
"""
Webhook PIX idempotente:
- Verifica a assinatura antes de qualquer escrita (401 se inválida).
- Nunca confia no corpo: busca o pagamento no provider pelo id.
- Localiza o pedido pela external_reference e, se não achar, pelo provider_reference.
- paid -> mark_paid; expired/canceled -> update condicional; pending -> nada.
Entregas repetidas são seguras porque todas as escritas são condicionais.
"""
import os
from typing import Any, Dict, Mapping, Optional, Tuple

from db.models import Order, get_order_for_provider, find_orders_by_provider_reference

SUPPORTED_PROVIDER = "mercadopago"


def _payment_id_from(query: Mapping[str, str], body: Dict[str, Any]) -> str:
    # Providers mandam o id ora na query, ora no corpo
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    from_body = data.get("id")
    from_query = query.get("data.id") or query.get("id")
    candidate = from_query or ("" if from_body is None else str(from_body))
    return (candidate or "").strip()


def _event_type_from(query: Mapping[str, str], body: Dict[str, Any]) -> str:
    return str(body.get("type") or body.get("topic") or query.get("type") or query.get("topic") or "").strip().lower()


def locate_order(payment, provider: str = SUPPORTED_PROVIDER) -> Optional[Order]:
    """
    1) pedido cujo id é a external_reference do pagamento;
    2) senão, pedido com provider_reference = id do pagamento.
    """
    if payment.external_reference:
        order = get_order_for_provider(payment.external_reference, provider)
        if order:
            return order
        print(f"[WEBHOOK][WARN] external_reference={payment.external_reference} sem pedido; tentando provider_reference.")

    matches = find_orders_by_provider_reference(provider, payment.provider_id)
    if len(matches) > 1:
        print(
            f"[WEBHOOK][WARN] provider_reference={payment.provider_id} casa com {len(matches)} pedidos; "
            f"usando o mais antigo ({matches[0].id})."
        )
    return matches[0] if matches else None


def handle_pix_webhook(
    lifecycle,
    headers: Mapping[str, str],
    query: Mapping[str, str],
    body: Optional[Dict[str, Any]],
) -> Tuple[int, Dict[str, Any]]:
    env = os.environ if lifecycle.env is None else lifecycle.env
    provider = (query.get("provider") or env.get("PIX_PROVIDER") or SUPPORTED_PROVIDER).strip().lower()
    if provider != SUPPORTED_PROVIDER:
        return 200, {"ok": True, "ignored": True, "reason": "unsupported_provider_router"}

    body = body if isinstance(body, dict) else {}
    event_type = _event_type_from(query, body)
    payment_id = _payment_id_from(query, body)
    if not payment_id:
        print("[WEBHOOK] id do pagamento ausente; rejeitando.")
        return 400, {"ok": False, "error": "Missing payment id"}

    config = lifecycle.load_config()
    if not config.webhook_secret:
        print("[WEBHOOK][ERR] MERCADOPAGO_WEBHOOK_SECRET não configurado.")
        return 500, {"ok": False, "error": "Missing MERCADOPAGO_WEBHOOK_SECRET"}

    gateway = lifecycle.gateway(SUPPORTED_PROVIDER, config)
    if not gateway.verify_webhook_signature(headers, config.webhook_secret, payment_id):
        print(f"[WEBHOOK] Assinatura inválida para payment_id={payment_id}.")
        return 401, {"ok": False, "error": "Invalid webhook signature"}

    if event_type and event_type != "payment":
        return 200, {"ok": True, "ignored": True, "reason": f"event:{event_type}"}

    if not config.mercadopago_access_token:
        print("[WEBHOOK][ERR] MERCADOPAGO_ACCESS_TOKEN não configurado.")
        return 500, {"ok": False, "error": "Missing MERCADOPAGO_ACCESS_TOKEN"}

    payment = gateway.get_payment(payment_id)
    mapped_status = gateway.map_status(payment.status)

    order = locate_order(payment)
    if order is None:
        print(f"[WEBHOOK] Nenhum pedido para payment_id={payment.provider_id}.")
        return 404, {"ok": False, "error": "Order not found for payment", "payment_id": payment.provider_id}

    outcome = lifecycle.apply_provider_status(order, mapped_status, payment)
    print(f"[WEBHOOK] payment_id={payment.provider_id} order_id={order.id} -> {outcome}")
    return 200, {
        "ok": True,
        "order_id": order.id,
        "payment_id": payment.provider_id,
        **outcome,
    }
