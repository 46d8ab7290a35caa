# services/entitlements.py
from db.models import Order, record_entitlement_grant


def apply_entitlement_effects(order: Order) -> bool:
    """
    Libera o produto comprado. Idempotente por pedido: uma segunda chamada
    para o mesmo order_id não concede nada de novo.
    Retorna True se esta chamada registrou a concessão.
    """
    granted = record_entitlement_grant(order)
    if granted:
        print(f"[ENTITLEMENTS] {order.product_key} liberado para client_id={order.client_id} (order_id={order.id}).")
    else:
        print(f"[ENTITLEMENTS] order_id={order.id} já tinha concessão registrada; ignorando duplicata.")
    return granted
