from __future__ import annotations

import os
from dataclasses import asdict
from datetime import datetime, timezone
from functools import wraps
from typing import Optional

import click
from flask import Flask, request, jsonify

# ------ DB init / schema helpers ------
from db import init_db
from db.models import (
    ProviderSettings,
    get_profile,
    get_provider_settings,
    update_provider_settings,
)

# ------ Utils ------
from utils.security import make_token, parse_token

# ------ Serviços ------
from payments.config import normalize_provider
from services.errors import PaymentError, ValidationError
from services.orders import OrderLifecycle
from services.pricing import resolve_price, save_pricing_rule
from services.manual_review import submit_proof, list_proofs, review_proof
from services.webhooks import handle_pix_webhook

# ==========================================================
# Config
# ==========================================================
app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-soufit")
# Testes injetam um OrderLifecycle com gateway/efeitos falsos
app.config.setdefault("ORDER_LIFECYCLE", None)

# Inicializa DB / cria tabelas
try:
    init_db()
    print("[BOOT] DB inicializado.")
except Exception as e:
    print(f"[BOOT][WARN] init_db falhou: {e}")


def _lifecycle() -> OrderLifecycle:
    return app.config.get("ORDER_LIFECYCLE") or OrderLifecycle()


@app.errorhandler(PaymentError)
def _payment_error(err: PaymentError):
    return jsonify(err.to_dict()), err.status_code

# ==========================================================
# Helpers de auth (identidade é externa; aqui só validamos o token)
# ==========================================================
def issue_token(user_id: str) -> str:
    return make_token(user_id, app.config["SECRET_KEY"])

def _current_user_id() -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return parse_token(auth.replace("Bearer ", "", 1).strip(), app.config["SECRET_KEY"])

def _is_admin(user_id: Optional[str]) -> bool:
    if not user_id:
        return False
    profile = get_profile(user_id)
    return bool(profile and profile.is_admin)

def require_auth(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        user_id = _current_user_id()
        if not user_id:
            return jsonify({"ok": False, "error": "Token ausente ou inválido."}), 401
        return fn(user_id, *args, **kwargs)
    return wrapper

def require_admin(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        user_id = _current_user_id()
        if not user_id:
            return jsonify({"ok": False, "error": "Token ausente ou inválido."}), 401
        if not _is_admin(user_id):
            return jsonify({"ok": False, "error": "Admin access required"}), 403
        return fn(user_id, *args, **kwargs)
    return wrapper

def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Corpo JSON deve ser um objeto.")
    return data

# ==========================================================
# Health
# ==========================================================
@app.get("/health")
def health():
    return jsonify({"status": "ok", "time": datetime.now(timezone.utc).isoformat()})

# ==========================================================
# Preços
# ==========================================================
@app.get("/pricing/resolve")
@require_auth
def pricing_resolve(user_id: str):
    price = resolve_price(
        user_id,
        request.args.get("product_key", ""),
        (request.args.get("professional_id") or "").strip() or None,
    )
    return jsonify({"ok": True, "price": price.to_dict()})

@app.put("/pricing/rules")
@require_auth
def pricing_rule_save(user_id: str):
    data = _json_body()
    active = data.get("active", True)
    if not isinstance(active, bool):
        raise ValidationError("active deve ser true ou false.")
    rule = save_pricing_rule(
        actor_id=user_id,
        scope=(data.get("scope") or "").strip(),
        product_key=data.get("product_key") or "",
        price_cents=data.get("price_cents"),
        currency=data.get("currency") or "BRL",
        active=active,
        client_id=data.get("client_id"),
    )
    return jsonify({"ok": True, "rule": asdict(rule)})

# ==========================================================
# Pedidos
# ==========================================================
@app.post("/orders")
@require_auth
def order_create(user_id: str):
    data = _json_body()
    professional_id = data.get("professional_id")
    if professional_id is not None and not isinstance(professional_id, str):
        raise ValidationError("professional_id deve ser texto.")
    result = _lifecycle().create(user_id, data.get("product_key") or "", professional_id)
    return jsonify({"ok": True, **result})

@app.get("/orders")
@require_auth
def order_list(user_id: str):
    orders = _lifecycle().list_for_client(user_id)
    return jsonify({"ok": True, "orders": [o.to_dict() for o in orders]})

@app.get("/orders/<order_id>")
@require_auth
def order_detail(user_id: str, order_id: str):
    order = _lifecycle().get_for(order_id, user_id, _is_admin(user_id))
    return jsonify({"ok": True, "order": order.to_dict()})

@app.post("/orders/<order_id>/refresh")
@require_auth
def order_refresh(user_id: str, order_id: str):
    result = _lifecycle().refresh(order_id, user_id, _is_admin(user_id))
    return jsonify({"ok": True, **result})

# --------- Comprovantes PIX manual ---------
@app.post("/orders/<order_id>/proofs")
@require_auth
def proof_submit(user_id: str, order_id: str):
    data = _json_body()
    # O upload vai direto ao object storage; aqui só gravamos o caminho
    proof = submit_proof(order_id, user_id, data.get("file_path") or "")
    return jsonify({"ok": True, "proof": proof.to_dict()}), 201

@app.get("/orders/<order_id>/proofs")
@require_auth
def proof_list(user_id: str, order_id: str):
    proofs = list_proofs(order_id, user_id, _is_admin(user_id))
    return jsonify({"ok": True, "proofs": [p.to_dict() for p in proofs]})

# ==========================================================
# Admin
# ==========================================================
@app.post("/admin/manual-proofs/review")
@require_admin
def admin_review_proof(admin_id: str):
    data = _json_body()
    result = review_proof(_lifecycle(), data.get("proof_id") or "", admin_id, data.get("action") or "")
    return jsonify(result)

@app.get("/admin/provider-settings")
@require_admin
def admin_provider_settings(admin_id: str):
    return jsonify({"ok": True, "settings": get_provider_settings().to_dict()})

@app.put("/admin/provider-settings")
@require_admin
def admin_provider_settings_save(admin_id: str):
    data = _json_body()
    active_provider = data.get("active_provider")
    if active_provider and not normalize_provider(active_provider):
        raise ValidationError(f"Provider inválido: {active_provider}")
    settings = ProviderSettings(
        active_provider=normalize_provider(active_provider),
        manual_pix_key=(data.get("manual_pix_key") or "").strip() or None,
        manual_pix_copy_paste=(data.get("manual_pix_copy_paste") or "").strip() or None,
        manual_pix_display_name=(data.get("manual_pix_display_name") or "").strip() or None,
        manual_pix_instructions=(data.get("manual_pix_instructions") or "").strip() or None,
    )
    update_provider_settings(settings)
    print(f"[ADMIN] Provider settings atualizados por {admin_id} (active_provider={settings.active_provider}).")
    return jsonify({"ok": True, "settings": get_provider_settings().to_dict()})

# ==========================================================
# Webhook PIX
# ==========================================================
@app.post("/webhooks/pix")
def webhook_pix():
    status, payload = handle_pix_webhook(
        _lifecycle(),
        request.headers,
        request.args,
        request.get_json(silent=True),
    )
    return jsonify(payload), status

# ==========================================================
# CLI: varredura de expiração
# ==========================================================
@app.cli.command("expire-orders")
def expire_orders_command():
    """Move pedidos 'pending' vencidos para 'expired'."""
    count = _lifecycle().expire_overdue()
    click.echo(f"{count} pedido(s) expirado(s).")

# ==========================================================
# Boot local
# ==========================================================
if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
