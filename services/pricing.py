# services/pricing.py
"""
Resolução de preço por precedência:
  client_override (cliente + produto [+ profissional]) > professional > global.

Sempre consulta o banco; preços mudam a qualquer momento e nunca se cobra valor velho.
"""
from dataclasses import dataclass, asdict
from typing import Optional

from db.models import (
    PRICING_SCOPES,
    PricingRule,
    get_active_pricing_rule,
    find_pricing_rule,
    insert_pricing_rule,
    update_pricing_rule,
    get_profile,
)
from services.errors import NoPricingRuleFound, ValidationError, ForbiddenError


@dataclass(frozen=True)
class ResolvedPrice:
    price_cents: int
    currency: str
    source_scope: str
    source_owner_id: Optional[str]
    source_client_id: Optional[str]
    pricing_rule_id: str

    @classmethod
    def from_rule(cls, rule: PricingRule) -> "ResolvedPrice":
        return cls(
            price_cents=rule.price_cents,
            currency=rule.currency or "BRL",
            source_scope=rule.scope,
            source_owner_id=rule.owner_id,
            source_client_id=rule.client_id,
            pricing_rule_id=rule.id,
        )

    def to_dict(self):
        return asdict(self)

    def to_source(self):
        return {
            "pricing_rule_id": self.pricing_rule_id,
            "scope": self.source_scope,
            "owner_id": self.source_owner_id,
            "client_id": self.source_client_id,
        }


def resolve_price(client_id: str, product_key: str, professional_id: Optional[str] = None) -> ResolvedPrice:
    product_key = (product_key or "").strip()
    if not product_key:
        raise ValidationError("product_key é obrigatório.")

    rule = get_active_pricing_rule(
        "client_override",
        product_key,
        owner_id=professional_id,
        client_id=client_id,
        any_owner=professional_id is None,
    )
    if rule is None and professional_id:
        rule = get_active_pricing_rule("professional", product_key, owner_id=professional_id)
    if rule is None:
        rule = get_active_pricing_rule("global", product_key)
    if rule is None:
        raise NoPricingRuleFound("Nenhuma regra de preço ativa encontrada.", product_key=product_key)
    return ResolvedPrice.from_rule(rule)


def _parse_price_cents(value) -> int:
    invalid = ValidationError("price_cents deve ser um inteiro >= 1.")
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise invalid
    try:
        cents = int(value)
    except (TypeError, ValueError):
        raise invalid
    if cents < 1:
        raise invalid
    return cents


def save_pricing_rule(
    actor_id: str,
    scope: str,
    product_key: str,
    price_cents,
    currency: str = "BRL",
    active: bool = True,
    client_id: Optional[str] = None,
) -> PricingRule:
    """
    Upsert pela tupla exata (scope, owner_id, client_id, product_key).
    Admin define 'global'; o profissional define as próprias regras
    'professional' e 'client_override' (owner_id = quem chama).
    """
    if scope not in PRICING_SCOPES:
        raise ValidationError(f"scope inválido: {scope}")
    product_key = (product_key or "").strip()
    if not product_key:
        raise ValidationError("product_key é obrigatório.")
    cents = _parse_price_cents(price_cents)
    currency = (currency or "BRL").strip().upper()

    if scope == "global":
        profile = get_profile(actor_id)
        if not profile or not profile.is_admin:
            raise ForbiddenError("Apenas admins definem preços globais.")
        owner_id, client_id = None, None
    elif scope == "professional":
        owner_id, client_id = actor_id, None
    else:
        client_id = (client_id or "").strip() or None
        if not client_id:
            raise ValidationError("client_id é obrigatório para client_override.")
        owner_id = actor_id

    existing = find_pricing_rule(scope, owner_id, client_id, product_key)
    if existing:
        update_pricing_rule(existing.id, cents, currency, bool(active))
        print(f"[PRICING] Regra {existing.id} atualizada ({scope}/{product_key}={cents} {currency}).")
        return find_pricing_rule(scope, owner_id, client_id, product_key)

    rule = insert_pricing_rule(scope, owner_id, client_id, product_key, cents, currency, bool(active))
    print(f"[PRICING] Regra {rule.id} criada ({scope}/{product_key}={cents} {currency}).")
    return rule
