import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, List, Any, Dict

from . import db_cursor, qp, is_integrity_error

ORDER_STATUSES = ("pending", "manual_review", "paid", "expired", "canceled")
PRICING_SCOPES = ("global", "professional", "client_override")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


# Helpers de domínio
@dataclass
class Profile:
    id: str
    name: Optional[str]
    email: Optional[str]
    is_admin: bool


@dataclass
class PricingRule:
    id: str
    scope: str
    owner_id: Optional[str]
    client_id: Optional[str]
    product_key: str
    price_cents: int
    currency: str
    active: bool
    updated_at: str


@dataclass
class Order:
    id: str
    client_id: str
    professional_id: Optional[str]
    product_key: str
    amount_cents: int
    currency: str
    status: str
    provider: str
    provider_reference: Optional[str] = None
    pix_copy_paste: Optional[str] = None
    pix_qr_image_url: Optional[str] = None
    expires_at: Optional[str] = None
    pricing_rule_id: Optional[str] = None
    created_at: Optional[str] = None
    paid_at: Optional[str] = None
    effects_applied_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("effects_applied_at")
        return data


@dataclass
class ManualPixProof:
    id: str
    order_id: str
    uploaded_by: str
    file_path: str
    status: str
    reviewed_by: Optional[str]
    reviewed_at: Optional[str]
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProviderSettings:
    active_provider: Optional[str] = None
    manual_pix_key: Optional[str] = None
    manual_pix_copy_paste: Optional[str] = None
    manual_pix_display_name: Optional[str] = None
    manual_pix_instructions: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------
# Profiles
# ---------------------------
def upsert_profile(profile_id: str, name: Optional[str], email: Optional[str], is_admin: bool = False):
    with db_cursor() as cur:
        cur.execute(
            qp(
                "INSERT INTO profiles (id, name, email, is_admin, created_at) VALUES (?,?,?,?,?) "
                "ON CONFLICT (id) DO UPDATE SET name = excluded.name, email = excluded.email, is_admin = excluded.is_admin"
            ),
            (profile_id, name, email, bool(is_admin), now_iso()),
        )

def get_profile(profile_id: str) -> Optional[Profile]:
    with db_cursor() as cur:
        cur.execute(qp("SELECT id, name, email, is_admin FROM profiles WHERE id = ?"), (profile_id,))
        r = cur.fetchone()
        if not r:
            return None
        return Profile(id=r["id"], name=r["name"], email=r["email"], is_admin=bool(r["is_admin"]))


# ---------------------------
# Pricing rules
# ---------------------------
_RULE_COLUMNS = "id, scope, owner_id, client_id, product_key, price_cents, currency, active, updated_at"

def _rule_from_row(r) -> PricingRule:
    return PricingRule(
        id=r["id"],
        scope=r["scope"],
        owner_id=r["owner_id"],
        client_id=r["client_id"],
        product_key=r["product_key"],
        price_cents=int(r["price_cents"]),
        currency=r["currency"],
        active=bool(r["active"]),
        updated_at=r["updated_at"],
    )

def _nullable_filter(column: str, value: Optional[str], params: list) -> str:
    if value is None:
        return f" AND {column} IS NULL"
    params.append(value)
    return f" AND {column} = ?"

def get_active_pricing_rule(
    scope: str,
    product_key: str,
    owner_id: Optional[str] = None,
    client_id: Optional[str] = None,
    any_owner: bool = False,
) -> Optional[PricingRule]:
    """
    Regra ativa para o escopo/produto. Com any_owner=True o dono não entra no filtro.
    Desempate pela atualização mais recente.
    """
    params: list = [scope, product_key]
    sql = f"SELECT {_RULE_COLUMNS} FROM pricing_rules WHERE active AND scope = ? AND product_key = ?"
    if not any_owner:
        sql += _nullable_filter("owner_id", owner_id, params)
    sql += _nullable_filter("client_id", client_id, params)
    sql += " ORDER BY updated_at DESC LIMIT 1"
    with db_cursor() as cur:
        cur.execute(qp(sql), tuple(params))
        r = cur.fetchone()
        return _rule_from_row(r) if r else None

def find_pricing_rule(scope: str, owner_id: Optional[str], client_id: Optional[str], product_key: str) -> Optional[PricingRule]:
    # Tupla exata, ativa ou não
    params: list = [scope, product_key]
    sql = f"SELECT {_RULE_COLUMNS} FROM pricing_rules WHERE scope = ? AND product_key = ?"
    sql += _nullable_filter("owner_id", owner_id, params)
    sql += _nullable_filter("client_id", client_id, params)
    sql += " ORDER BY active DESC, updated_at DESC LIMIT 1"
    with db_cursor() as cur:
        cur.execute(qp(sql), tuple(params))
        r = cur.fetchone()
        return _rule_from_row(r) if r else None

def insert_pricing_rule(
    scope: str,
    owner_id: Optional[str],
    client_id: Optional[str],
    product_key: str,
    price_cents: int,
    currency: str,
    active: bool,
) -> PricingRule:
    rule = PricingRule(
        id=new_id(),
        scope=scope,
        owner_id=owner_id,
        client_id=client_id,
        product_key=product_key,
        price_cents=price_cents,
        currency=currency,
        active=active,
        updated_at=now_iso(),
    )
    with db_cursor() as cur:
        cur.execute(
            qp(
                "INSERT INTO pricing_rules (id, scope, owner_id, client_id, product_key, price_cents, currency, active, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?,?,?,?)"
            ),
            (rule.id, scope, owner_id, client_id, product_key, price_cents, currency, active, rule.updated_at, rule.updated_at),
        )
    return rule

def update_pricing_rule(rule_id: str, price_cents: int, currency: str, active: bool) -> None:
    with db_cursor() as cur:
        cur.execute(
            qp("UPDATE pricing_rules SET price_cents = ?, currency = ?, active = ?, updated_at = ? WHERE id = ?"),
            (price_cents, currency, active, now_iso(), rule_id),
        )


# ---------------------------
# Orders
# ---------------------------
_ORDER_COLUMNS = (
    "id, client_id, professional_id, product_key, amount_cents, currency, status, provider, "
    "provider_reference, pix_copy_paste, pix_qr_image_url, expires_at, pricing_rule_id, "
    "created_at, paid_at, effects_applied_at"
)

def _order_from_row(r) -> Order:
    return Order(
        id=r["id"],
        client_id=r["client_id"],
        professional_id=r["professional_id"],
        product_key=r["product_key"],
        amount_cents=int(r["amount_cents"]),
        currency=r["currency"],
        status=r["status"],
        provider=r["provider"],
        provider_reference=r["provider_reference"],
        pix_copy_paste=r["pix_copy_paste"],
        pix_qr_image_url=r["pix_qr_image_url"],
        expires_at=r["expires_at"],
        pricing_rule_id=r["pricing_rule_id"],
        created_at=r["created_at"],
        paid_at=r["paid_at"],
        effects_applied_at=r["effects_applied_at"],
    )

def insert_order(order: Order) -> Order:
    order.created_at = order.created_at or now_iso()
    with db_cursor() as cur:
        cur.execute(
            qp(
                f"INSERT INTO orders ({_ORDER_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)"
            ),
            (
                order.id, order.client_id, order.professional_id, order.product_key,
                order.amount_cents, order.currency, order.status, order.provider,
                order.provider_reference, order.pix_copy_paste, order.pix_qr_image_url,
                order.expires_at, order.pricing_rule_id, order.created_at, order.paid_at,
                order.effects_applied_at,
            ),
        )
    return order

def get_order(order_id: str) -> Optional[Order]:
    with db_cursor() as cur:
        cur.execute(qp(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = ?"), (order_id,))
        r = cur.fetchone()
        return _order_from_row(r) if r else None

def get_order_for_provider(order_id: str, provider: str) -> Optional[Order]:
    with db_cursor() as cur:
        cur.execute(qp(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = ? AND provider = ?"), (order_id, provider))
        r = cur.fetchone()
        return _order_from_row(r) if r else None

def find_orders_by_provider_reference(provider: str, provider_reference: str) -> List[Order]:
    with db_cursor() as cur:
        cur.execute(
            qp(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE provider = ? AND provider_reference = ? ORDER BY created_at"),
            (provider, provider_reference),
        )
        return [_order_from_row(r) for r in cur.fetchall()]

def list_orders_for_client(client_id: str, limit: int = 50) -> List[Order]:
    with db_cursor() as cur:
        cur.execute(
            qp(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE client_id = ? ORDER BY created_at DESC LIMIT ?"),
            (client_id, limit),
        )
        return [_order_from_row(r) for r in cur.fetchall()]

def list_pending_orders_with_expiry() -> List[Order]:
    with db_cursor() as cur:
        cur.execute(qp(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE status = 'pending' AND expires_at IS NOT NULL"))
        return [_order_from_row(r) for r in cur.fetchall()]

def store_provider_payment(
    order_id: str,
    provider_reference: str,
    pix_copy_paste: Optional[str],
    pix_qr_image_url: Optional[str],
    expires_at: Optional[str],
) -> bool:
    with db_cursor() as cur:
        cur.execute(
            qp(
                "UPDATE orders SET provider_reference = ?, pix_copy_paste = ?, pix_qr_image_url = ?, expires_at = ? "
                "WHERE id = ? AND status = 'pending'"
            ),
            (provider_reference, pix_copy_paste, pix_qr_image_url, expires_at, order_id),
        )
        return cur.rowcount == 1

def mark_order_paid(order_id: str, paid_at: str) -> bool:
    """
    Check-and-set atômico: só uma chamada vence a transição para 'paid'.
    """
    with db_cursor() as cur:
        cur.execute(
            qp("UPDATE orders SET status = 'paid', paid_at = ? WHERE id = ? AND status <> 'paid'"),
            (paid_at, order_id),
        )
        return cur.rowcount == 1

def claim_effects_application(order_id: str, claimed_at: str) -> bool:
    """
    Reserva a aplicação dos efeitos de um pedido pago. Só um chamador vence.
    """
    with db_cursor() as cur:
        cur.execute(
            qp("UPDATE orders SET effects_applied_at = ? WHERE id = ? AND status = 'paid' AND effects_applied_at IS NULL"),
            (claimed_at, order_id),
        )
        return cur.rowcount == 1

def release_effects_claim(order_id: str, claimed_at: str) -> None:
    # Devolve a reserva quando a aplicação falha; a próxima reconciliação tenta de novo
    with db_cursor() as cur:
        cur.execute(
            qp("UPDATE orders SET effects_applied_at = NULL WHERE id = ? AND effects_applied_at = ?"),
            (order_id, claimed_at),
        )

def update_order_status_guarded(
    order_id: str,
    new_status: str,
    provider_reference: Optional[str] = None,
    only_from: Optional[str] = None,
) -> bool:
    """
    Transição não-paga. Nunca toca pedidos 'paid' nem pedidos do provider manual.
    """
    params: list = [new_status, provider_reference, order_id]
    sql = (
        "UPDATE orders SET status = ?, provider_reference = COALESCE(?, provider_reference) "
        "WHERE id = ? AND status <> 'paid' AND provider <> 'manual'"
    )
    if only_from:
        sql += " AND status = ?"
        params.append(only_from)
    with db_cursor() as cur:
        cur.execute(qp(sql), tuple(params))
        return cur.rowcount == 1


# ---------------------------
# Manual PIX proofs
# ---------------------------
_PROOF_COLUMNS = "id, order_id, uploaded_by, file_path, status, reviewed_by, reviewed_at, created_at"

def _proof_from_row(r) -> ManualPixProof:
    return ManualPixProof(
        id=r["id"],
        order_id=r["order_id"],
        uploaded_by=r["uploaded_by"],
        file_path=r["file_path"],
        status=r["status"],
        reviewed_by=r["reviewed_by"],
        reviewed_at=r["reviewed_at"],
        created_at=r["created_at"],
    )

def insert_proof(order_id: str, uploaded_by: str, file_path: str) -> ManualPixProof:
    proof = ManualPixProof(
        id=new_id(),
        order_id=order_id,
        uploaded_by=uploaded_by,
        file_path=file_path,
        status="submitted",
        reviewed_by=None,
        reviewed_at=None,
        created_at=now_iso(),
    )
    with db_cursor() as cur:
        cur.execute(
            qp(f"INSERT INTO manual_pix_proofs ({_PROOF_COLUMNS}) VALUES (?,?,?,?,?,?,?,?)"),
            (proof.id, order_id, uploaded_by, file_path, proof.status, None, None, proof.created_at),
        )
    return proof

def get_proof(proof_id: str) -> Optional[ManualPixProof]:
    with db_cursor() as cur:
        cur.execute(qp(f"SELECT {_PROOF_COLUMNS} FROM manual_pix_proofs WHERE id = ?"), (proof_id,))
        r = cur.fetchone()
        return _proof_from_row(r) if r else None

def list_proofs_for_order(order_id: str) -> List[ManualPixProof]:
    with db_cursor() as cur:
        cur.execute(
            qp(f"SELECT {_PROOF_COLUMNS} FROM manual_pix_proofs WHERE order_id = ? ORDER BY created_at DESC"),
            (order_id,),
        )
        return [_proof_from_row(r) for r in cur.fetchall()]

def reject_proof(proof_id: str, reviewed_by: str, reviewed_at: str) -> None:
    with db_cursor() as cur:
        cur.execute(
            qp("UPDATE manual_pix_proofs SET status = 'rejected', reviewed_by = ?, reviewed_at = ? WHERE id = ?"),
            (reviewed_by, reviewed_at, proof_id),
        )

def approve_proof(proof_id: str, order_id: str, reviewed_by: str, reviewed_at: str) -> bool:
    """
    Aprova só se nenhum outro comprovante do pedido já estiver aprovado.
    Aprovação simultânea de outro comprovante que passe pelo NOT EXISTS esbarra no
    índice único manual_pix_proofs_one_approved e também retorna False.
    """
    try:
        with db_cursor() as cur:
            cur.execute(
                qp(
                    "UPDATE manual_pix_proofs SET status = 'approved', reviewed_by = ?, reviewed_at = ? "
                    "WHERE id = ? AND status <> 'approved' AND NOT EXISTS ("
                    "SELECT 1 FROM manual_pix_proofs p2 WHERE p2.order_id = ? AND p2.status = 'approved' AND p2.id <> ?)"
                ),
                (reviewed_by, reviewed_at, proof_id, order_id, proof_id),
            )
            return cur.rowcount == 1
    except Exception as e:
        if not is_integrity_error(e):
            raise
        print(f"[MANUAL][WARN] Aprovação concorrente para o pedido {order_id}; comprovante {proof_id} não aprovado.")
        return False


# ---------------------------
# Provider settings (linha única)
# ---------------------------
_SETTINGS_FIELDS = (
    "active_provider",
    "manual_pix_key",
    "manual_pix_copy_paste",
    "manual_pix_display_name",
    "manual_pix_instructions",
)

def get_provider_settings() -> ProviderSettings:
    with db_cursor() as cur:
        cur.execute(qp(f"SELECT {', '.join(_SETTINGS_FIELDS)} FROM payment_provider_settings WHERE id = 1"))
        r = cur.fetchone()
        if not r:
            return ProviderSettings()
        return ProviderSettings(**{f: r[f] for f in _SETTINGS_FIELDS})

def update_provider_settings(settings: ProviderSettings) -> None:
    values = [getattr(settings, f) or None for f in _SETTINGS_FIELDS]
    assignments = ", ".join(f"{f} = excluded.{f}" for f in _SETTINGS_FIELDS)
    with db_cursor() as cur:
        cur.execute(
            qp(
                f"INSERT INTO payment_provider_settings (id, {', '.join(_SETTINGS_FIELDS)}, updated_at) "
                f"VALUES (1, ?, ?, ?, ?, ?, ?) ON CONFLICT (id) DO UPDATE SET {assignments}, updated_at = excluded.updated_at"
            ),
            (*values, now_iso()),
        )


# ---------------------------
# Entitlement grants
# ---------------------------
def record_entitlement_grant(order: Order) -> bool:
    with db_cursor() as cur:
        cur.execute(
            qp(
                "INSERT INTO entitlement_grants (order_id, client_id, professional_id, product_key, granted_at) "
                "VALUES (?,?,?,?,?) ON CONFLICT (order_id) DO NOTHING"
            ),
            (order.id, order.client_id, order.professional_id, order.product_key, now_iso()),
        )
        return cur.rowcount == 1

def count_entitlement_grants(order_id: str) -> int:
    with db_cursor() as cur:
        cur.execute(qp("SELECT COUNT(*) AS n FROM entitlement_grants WHERE order_id = ?"), (order_id,))
        r = cur.fetchone()
        return int(r["n"]) if r else 0
