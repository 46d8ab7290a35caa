# payments/mercadopago.py
"""
Integração PIX com a API do Mercado Pago.

- create_pix_payment: cria o pagamento PIX repassando X-Idempotency-Key.
- get_payment: consulta o estado atual (fonte de verdade do webhook).
- verify_webhook_signature: HMAC-SHA256 do manifest "id:..;request-id:..;ts:..;".
- map_status: status do provider -> família interna (pending | paid | expired | canceled).
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Mapping
from urllib.parse import quote

import requests

from services.errors import ProviderError
from utils.security import constant_time_equals, hmac_sha256_hex

MERCADOPAGO_API_URL = "https://api.mercadopago.com"

_STATUS_MAP = {
    "approved": "paid",
    "expired": "expired",
    "cancelled": "canceled",
    "canceled": "canceled",
    "rejected": "canceled",
}


@dataclass
class PixPayment:
    provider_id: str
    status: str
    external_reference: Optional[str]
    qr_code_text: Optional[str]
    qr_code_image_base64: Optional[str]
    expires_at: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def paid_at(self) -> Optional[str]:
        return self.raw.get("date_approved") or self.raw.get("date_last_updated") or None


def map_status(provider_status: Optional[str]) -> str:
    # Status desconhecido nunca vira 'paid'
    return _STATUS_MAP.get((provider_status or "").strip().lower(), "pending")


def _normalize_base64_png(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if value.startswith("data:image"):
        return value
    return f"data:image/png;base64,{value}"


def _split_name(name: str):
    sanitized = " ".join((name or "").split())
    if not sanitized:
        return "Cliente", ""
    first, _, rest = sanitized.partition(" ")
    return first or "Cliente", rest


def parse_payment(payload: Dict[str, Any]) -> PixPayment:
    poi = payload.get("point_of_interaction")
    poi = poi if isinstance(poi, dict) else {}
    transaction_data = poi.get("transaction_data")
    transaction_data = transaction_data if isinstance(transaction_data, dict) else {}
    qr_base64 = transaction_data.get("qr_code_base64")
    raw_id = payload.get("id")
    external_reference = payload.get("external_reference")
    return PixPayment(
        provider_id="" if raw_id is None else str(raw_id),
        status=payload.get("status") if isinstance(payload.get("status"), str) else "unknown",
        external_reference=external_reference.strip() if isinstance(external_reference, str) and external_reference.strip() else None,
        qr_code_text=transaction_data.get("qr_code") if isinstance(transaction_data.get("qr_code"), str) else None,
        qr_code_image_base64=_normalize_base64_png(qr_base64 if isinstance(qr_base64, str) else None),
        expires_at=payload.get("date_of_expiration") or None,
        raw=payload,
    )


def _read_header_any(headers: Mapping[str, str], *names: str) -> str:
    # WSGI e proxies normalizam maiúsculas de formas diferentes
    for n in names:
        v = headers.get(n)
        if v:
            return v
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for n in names:
        v = lowered.get(n.lower())
        if v:
            return v
    return ""


def parse_signature_header(header: str) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep and key.strip():
            parts[key.strip().lower()] = value.strip()
    return parts


def signature_manifest(data_id: str, request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


def verify_webhook_signature(headers: Mapping[str, str], secret: str, data_id: Optional[str]) -> bool:
    """
    Valida x-signature ("ts=...,v1=...") contra o HMAC do manifest.
    Falha fechada: sem segredo, assinatura, x-request-id ou data_id -> False.
    """
    signature_header = _read_header_any(headers, "x-signature", "X-Signature")
    request_id = _read_header_any(headers, "x-request-id", "X-Request-Id")
    if not secret or not signature_header or not request_id or not data_id:
        return False

    parts = parse_signature_header(signature_header)
    ts = parts.get("ts")
    v1 = (parts.get("v1") or "").lower()
    if not ts or not v1:
        return False

    expected = hmac_sha256_hex(secret, signature_manifest(data_id, request_id, ts))
    return constant_time_equals(expected, v1)


class MercadoPagoGateway:
    name = "mercadopago"

    def __init__(self, access_token: str, timeout_s: float = 15.0, base_url: str = MERCADOPAGO_API_URL, session=None):
        self.access_token = access_token
        self.timeout_s = timeout_s
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    def _request(self, method: str, endpoint: str, payload: Optional[Dict] = None,
                 idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(idempotency_key),
                json=payload,
                timeout=self.timeout_s,
            )
        except requests.exceptions.RequestException as e:
            print(f"[MERCADOPAGO] {method} {endpoint} falhou: {e}")
            raise ProviderError(f"Mercado Pago indisponível: {e}") from e

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {"raw": response.text[:500]}
        if not isinstance(data, dict):
            data = {"raw": data}

        if response.status_code >= 400:
            message = data.get("message") or f"Mercado Pago {method} {endpoint} falhou ({response.status_code})"
            print(f"[MERCADOPAGO] {method} {endpoint} -> {response.status_code}: {message}")
            raise ProviderError(message, provider_status=response.status_code)
        return data

    def create_pix_payment(
        self,
        amount_cents: int,
        currency: str,
        description: str,
        payer_email: str,
        payer_name: str,
        external_reference: str,
        idempotency_key: str,
        notification_url: Optional[str] = None,
        expires_at: Optional[str] = None,
    ) -> PixPayment:
        # A API do Mercado Pago cobra PIX apenas em BRL; currency segue no pedido
        first_name, last_name = _split_name(payer_name)
        payer: Dict[str, Any] = {"email": payer_email, "first_name": first_name}
        if last_name:
            payer["last_name"] = last_name
        body: Dict[str, Any] = {
            "transaction_amount": round(amount_cents / 100, 2),
            "description": description,
            "payment_method_id": "pix",
            "payer": payer,
            "external_reference": external_reference,
        }
        if notification_url:
            body["notification_url"] = notification_url
        if expires_at:
            body["date_of_expiration"] = expires_at

        data = self._request("POST", "/v1/payments", body, idempotency_key or external_reference)
        payment = parse_payment(data)
        if not payment.provider_id:
            raise ProviderError("Mercado Pago não retornou o id do pagamento")
        print(f"[MERCADOPAGO] Pagamento PIX criado: id={payment.provider_id} ref={external_reference}")
        return payment

    def get_payment(self, provider_id: str) -> PixPayment:
        data = self._request("GET", f"/v1/payments/{quote(str(provider_id), safe='')}")
        return parse_payment(data)

    @staticmethod
    def verify_webhook_signature(headers: Mapping[str, str], secret: str, data_id: Optional[str]) -> bool:
        return verify_webhook_signature(headers, secret, data_id)

    @staticmethod
    def map_status(provider_status: Optional[str]) -> str:
        return map_status(provider_status)
