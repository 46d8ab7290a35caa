# services/orders.py
"""
Ciclo de vida do pedido PIX.

Estados:
  pending (provider automatizado) -> paid | expired | canceled
  manual_review (provider manual)  -> paid

Toda transição é um UPDATE condicional no banco; 'paid' é terminal e só se
chega nele por mark_paid, usado pelo webhook, pelo refresh e pela aprovação manual.
"""
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Callable, Dict, Any, List

from db.models import (
    Order,
    new_id,
    now_iso,
    get_profile,
    get_order,
    insert_order,
    list_orders_for_client,
    list_pending_orders_with_expiry,
    store_provider_payment,
    mark_order_paid,
    claim_effects_application,
    release_effects_claim,
    update_order_status_guarded,
    get_provider_settings,
)
from payments import get_payment_gateway
from payments.config import PaymentConfig, load_payment_config
from payments.manual import ManualPixProvider
from services.entitlements import apply_entitlement_effects
from services.errors import (
    PaymentError,
    ValidationError,
    ForbiddenError,
    OrderNotFound,
    ProviderError,
    EffectsApplicationError,
)
from services.pricing import ResolvedPrice, resolve_price

DEFAULT_PAYER_EMAIL = "cliente@soufit.local"
DEFAULT_PAYER_NAME = "Cliente SouFit"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class MarkPaidResult:
    order: Order
    transitioned: bool
    effects_applied: bool


class OrderLifecycle:
    def __init__(
        self,
        gateway_factory: Optional[Callable[[str, PaymentConfig], Any]] = None,
        apply_effects: Optional[Callable[[Order], Any]] = None,
        settings_loader: Optional[Callable] = None,
        env: Optional[Dict[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.gateway_factory = gateway_factory or get_payment_gateway
        self.apply_effects = apply_effects or apply_entitlement_effects
        self.settings_loader = settings_loader or get_provider_settings
        self.env = env
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------
    # Configuração (snapshot por requisição)
    # ------------------------------------------------------
    def load_config(self) -> PaymentConfig:
        return load_payment_config(self.settings_loader(), self.env)

    def gateway(self, provider: str, config: PaymentConfig):
        return self.gateway_factory(provider, config)

    def _now_iso(self) -> str:
        return self.clock().isoformat()

    # ------------------------------------------------------
    # Criação
    # ------------------------------------------------------
    def create(self, client_id: str, product_key: str, professional_id: Optional[str] = None,
               config: Optional[PaymentConfig] = None) -> Dict[str, Any]:
        product_key = (product_key or "").strip()
        professional_id = (professional_id or "").strip() or None
        if not product_key:
            raise ValidationError("product_key é obrigatório.")
        if not client_id:
            raise ValidationError("client_id é obrigatório.")

        price = resolve_price(client_id, product_key, professional_id)
        config = config or self.load_config()

        if config.is_manual:
            return self._create_manual(client_id, product_key, professional_id, price, config)
        return self._create_automated(client_id, product_key, professional_id, price, config)

    def _create_manual(self, client_id, product_key, professional_id, price: ResolvedPrice,
                       config: PaymentConfig) -> Dict[str, Any]:
        checkout = ManualPixProvider().start_checkout(config)
        order = insert_order(Order(
            id=new_id(),
            client_id=client_id,
            professional_id=professional_id,
            product_key=product_key,
            amount_cents=price.price_cents,
            currency=price.currency,
            status="manual_review",
            provider="manual",
            pix_copy_paste=checkout["pix_copy_paste"],
            pricing_rule_id=price.pricing_rule_id,
        ))
        print(f"[ORDERS] Pedido manual {order.id} criado ({product_key}, {order.amount_cents} {order.currency}).")
        return self._creation_result(order, price, manual_pix=checkout["manual_pix"])

    def _create_automated(self, client_id, product_key, professional_id, price: ResolvedPrice,
                          config: PaymentConfig) -> Dict[str, Any]:
        # Mercado Pago aceita date_of_expiration com milissegundos (yyyy-MM-ddTHH:mm:ss.SSSz)
        expires_at = (self.clock() + timedelta(minutes=config.order_expiration_minutes)).isoformat(timespec="milliseconds")
        payer_email, payer_name = self._payer_identity(client_id)
        order = insert_order(Order(
            id=new_id(),
            client_id=client_id,
            professional_id=professional_id,
            product_key=product_key,
            amount_cents=price.price_cents,
            currency=price.currency,
            status="pending",
            provider=config.provider,
            expires_at=expires_at,
            pricing_rule_id=price.pricing_rule_id,
        ))

        try:
            payment = self.gateway(config.provider, config).create_pix_payment(
                amount_cents=order.amount_cents,
                currency=order.currency,
                description=f"SouFit - {product_key}",
                payer_email=payer_email,
                payer_name=payer_name,
                external_reference=order.id,
                idempotency_key=order.id,
                notification_url=config.notification_url,
                expires_at=expires_at,
            )
            if not payment.qr_code_text:
                raise ProviderError("Provider não retornou o código PIX copia-e-cola.")
            stored = store_provider_payment(
                order.id,
                payment.provider_id,
                payment.qr_code_text,
                payment.qr_code_image_base64,
                payment.expires_at or expires_at,
            )
        except Exception as e:
            self._rollback_creation(order.id, e)
            if isinstance(e, PaymentError):
                raise
            raise ProviderError(f"Falha ao criar pagamento PIX: {e}") from e

        if not stored:
            print(f"[ORDERS][WARN] Pedido {order.id} saiu de 'pending' antes de gravar o PIX.")
        order = get_order(order.id)
        print(f"[ORDERS] Pedido {order.id} criado no {order.provider} (payment_id={order.provider_reference}).")
        return self._creation_result(order, price)

    def _rollback_creation(self, order_id: str, error: Exception) -> None:
        # Nunca deixar 'pending' sem instrução de pagamento
        update_order_status_guarded(order_id, "canceled", only_from="pending")
        print(f"[ORDERS][ERR] Criação do pedido {order_id} falhou no provider; cancelado. Motivo: {error}")

    def _payer_identity(self, client_id: str):
        env = os.environ if self.env is None else self.env
        profile = get_profile(client_id)
        email = (profile.email if profile else None) or env.get("PAYER_FALLBACK_EMAIL") or DEFAULT_PAYER_EMAIL
        name = (profile.name if profile else None) or DEFAULT_PAYER_NAME
        return email, name

    @staticmethod
    def _creation_result(order: Order, price: ResolvedPrice, manual_pix: Optional[Dict] = None) -> Dict[str, Any]:
        return {
            "order_id": order.id,
            "status": order.status,
            "provider": order.provider,
            "amount_cents": order.amount_cents,
            "currency": order.currency,
            "pix_copy_paste": order.pix_copy_paste,
            "pix_qr_image_url": order.pix_qr_image_url,
            "expires_at": order.expires_at,
            "manual_pix": manual_pix,
            "pricing_source": price.to_source(),
        }

    # ------------------------------------------------------
    # Pagamento confirmado (ponto único)
    # ------------------------------------------------------
    def mark_paid(self, order_id: str, paid_at: Optional[str] = None) -> MarkPaidResult:
        """
        Marca o pedido como pago e aplica os efeitos de compra uma única vez.

        Pedido já pago é sucesso sem efeito colateral. Se os efeitos falharem,
        o pedido continua 'paid' e a próxima chamada tenta só os efeitos.
        """
        if get_order(order_id) is None:
            raise OrderNotFound("Pedido não encontrado.", order_id=order_id)

        transitioned = mark_order_paid(order_id, paid_at or self._now_iso())
        if transitioned:
            print(f"[ORDERS] Pedido {order_id} marcado como pago.")

        claimed_at = self._now_iso()
        effects_applied = False
        if claim_effects_application(order_id, claimed_at):
            order = get_order(order_id)
            try:
                self.apply_effects(order)
            except Exception as e:
                release_effects_claim(order_id, claimed_at)
                print(f"[ORDERS][ERR] Efeitos do pedido {order_id} falharam; pedido segue pago. Motivo: {e}")
                raise EffectsApplicationError("Falha ao aplicar os efeitos da compra.", order_id=order_id) from e
            effects_applied = True
        elif not transitioned:
            print(f"[ORDERS] Pedido {order_id} já estava pago; ignorando duplicata.")

        return MarkPaidResult(order=get_order(order_id), transitioned=transitioned, effects_applied=effects_applied)

    # ------------------------------------------------------
    # Reconciliação com o provider
    # ------------------------------------------------------
    def apply_provider_status(self, order: Order, mapped_status: str, payment) -> Dict[str, Any]:
        if mapped_status == "paid":
            result = self.mark_paid(order.id, payment.paid_at or self._now_iso())
            return {"status": "paid", "applied": result.transitioned}

        if mapped_status in ("expired", "canceled"):
            changed = update_order_status_guarded(order.id, mapped_status, provider_reference=payment.provider_id)
            if changed:
                print(f"[ORDERS] Pedido {order.id} -> {mapped_status}.")
            return {"status": mapped_status, "changed": changed}

        return {"status": "pending", "ignored": True}

    def refresh(self, order_id: str, requester_id: str, is_admin: bool = False) -> Dict[str, Any]:
        """
        Consulta o provider quando o webhook atrasa ou se perde.
        """
        order = self.get_for(order_id, requester_id, is_admin)
        if order.provider == "manual" or not order.provider_reference or order.status == "paid":
            return {"order": order.to_dict(), "refreshed": False}

        config = self.load_config()
        gateway = self.gateway(order.provider, config)
        payment = gateway.get_payment(order.provider_reference)
        outcome = self.apply_provider_status(order, gateway.map_status(payment.status), payment)
        return {"order": get_order(order_id).to_dict(), "refreshed": True, **outcome}

    # ------------------------------------------------------
    # Leitura e expiração passiva
    # ------------------------------------------------------
    def _expire_if_overdue(self, order: Order) -> Order:
        if order.status != "pending":
            return order
        expires = parse_timestamp(order.expires_at)
        if expires and expires <= self.clock():
            if update_order_status_guarded(order.id, "expired", only_from="pending"):
                print(f"[ORDERS] Pedido {order.id} expirado.")
            return get_order(order.id)
        return order

    def get_for(self, order_id: str, requester_id: str, is_admin: bool = False) -> Order:
        order = get_order(order_id)
        if order is None:
            raise OrderNotFound("Pedido não encontrado.", order_id=order_id)
        if order.client_id != requester_id and not is_admin:
            raise ForbiddenError("Pedido pertence a outro cliente.")
        return self._expire_if_overdue(order)

    def list_for_client(self, client_id: str) -> List[Order]:
        return [self._expire_if_overdue(o) for o in list_orders_for_client(client_id)]

    def expire_overdue(self) -> int:
        expired = 0
        now = self.clock()
        for order in list_pending_orders_with_expiry():
            expires = parse_timestamp(order.expires_at)
            if expires and expires <= now and update_order_status_guarded(order.id, "expired", only_from="pending"):
                expired += 1
        print(f"[ORDERS] Varredura de expiração: {expired} pedido(s) expirado(s).")
        return expired
