# services/manual_review.py
from typing import Any, Dict, List

from db.models import (
    ManualPixProof,
    get_order,
    get_proof,
    insert_proof,
    list_proofs_for_order,
    approve_proof,
    reject_proof,
    now_iso,
)
from services.errors import (
    ValidationError,
    ForbiddenError,
    OrderNotFound,
    ProofNotFound,
    ProviderNotManual,
    OrderStateError,
)

REVIEW_ACTIONS = ("approve", "reject")


def submit_proof(order_id: str, uploader_id: str, file_path: str) -> ManualPixProof:
    """
    Registra um comprovante enviado pelo cliente. O pedido continua em
    'manual_review' até um admin agir.
    """
    file_path = (file_path or "").strip()
    if not file_path:
        raise ValidationError("file_path é obrigatório.")

    order = get_order(order_id)
    if order is None:
        raise OrderNotFound("Pedido não encontrado.", order_id=order_id)
    if order.client_id != uploader_id:
        raise ForbiddenError("Pedido pertence a outro cliente.")
    if order.provider != "manual":
        raise ProviderNotManual("O provider do pedido não é manual.")
    if order.status == "paid":
        raise OrderStateError("Pedido já está pago.", order_id=order_id)

    proof = insert_proof(order_id, uploader_id, file_path)
    print(f"[MANUAL] Comprovante {proof.id} enviado para o pedido {order_id}.")
    return proof


def list_proofs(order_id: str, requester_id: str, is_admin: bool = False) -> List[ManualPixProof]:
    order = get_order(order_id)
    if order is None:
        raise OrderNotFound("Pedido não encontrado.", order_id=order_id)
    if order.client_id != requester_id and not is_admin:
        raise ForbiddenError("Pedido pertence a outro cliente.")
    return list_proofs_for_order(order_id)


def review_proof(lifecycle, proof_id: str, admin_id: str, action: str) -> Dict[str, Any]:
    """
    Aprovação/rejeição de comprovante por um admin (autorização checada antes).
    A aprovação passa por lifecycle.mark_paid, o mesmo caminho do webhook.
    """
    proof_id = (proof_id or "").strip()
    if not proof_id:
        raise ValidationError("proof_id é obrigatório.")
    if action not in REVIEW_ACTIONS:
        raise ValidationError("action deve ser approve ou reject.")

    proof = get_proof(proof_id)
    if proof is None:
        raise ProofNotFound("Comprovante não encontrado.", proof_id=proof_id)
    order = get_order(proof.order_id)
    if order is None:
        raise OrderNotFound("Pedido não encontrado.", order_id=proof.order_id)
    if order.provider != "manual":
        raise ProviderNotManual("O provider do pedido não é manual.")

    reviewed_at = now_iso()
    result: Dict[str, Any] = {"ok": True, "action": action, "proof_id": proof.id, "order_id": order.id}

    if action == "reject":
        reject_proof(proof.id, admin_id, reviewed_at)
        print(f"[MANUAL] Comprovante {proof.id} rejeitado por {admin_id}.")
        result["order_status"] = order.status
        if order.status == "paid":
            result["warning"] = "Order was already paid before proof rejection."
        return result

    if not approve_proof(proof.id, order.id, admin_id, reviewed_at):
        current = get_proof(proof.id)
        if current is None or current.status != "approved":
            raise OrderStateError("Outro comprovante deste pedido já foi aprovado.", order_id=order.id)

    print(f"[MANUAL] Comprovante {proof.id} aprovado por {admin_id}.")
    paid = lifecycle.mark_paid(order.id, reviewed_at)
    result.update({
        "order_status": paid.order.status,
        "paid_at": paid.order.paid_at,
        "applied": paid.transitioned,
    })
    return result
