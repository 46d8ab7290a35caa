# payments/config.py
"""
Snapshot de configuração de pagamentos, resolvido a cada requisição.

Precedência do provider: variável PIX_PROVIDER > configuração salva pelo admin > 'manual'.
Se o provider automatizado estiver sem credencial, cai para 'manual' sem erro.
"""
import os
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

from db.models import ProviderSettings

VALID_PROVIDERS = {"mercadopago", "pagarme", "efi", "pagbank", "manual"}
AUTOMATED_PROVIDERS = {"mercadopago"}

DEFAULT_EXPIRATION_MINUTES = 30
DEFAULT_HTTP_TIMEOUT_S = 15.0
DEFAULT_MANUAL_DISPLAY_NAME = "Pagamento Manual"
DEFAULT_MANUAL_INSTRUCTIONS = "Pague via Pix manual e envie o comprovante para aprovação."


def normalize_provider(value: Optional[str]) -> Optional[str]:
    normalized = (value or "").strip().lower()
    return normalized if normalized in VALID_PROVIDERS else None


def _first_non_empty(*values: Optional[str]) -> str:
    for v in values:
        if v and v.strip():
            return v.strip()
    return ""


def _positive_int(raw: Optional[str], default: int) -> int:
    try:
        value = int(float(raw)) if raw not in (None, "") else default
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _positive_float(raw: Optional[str], default: float) -> float:
    try:
        value = float(raw) if raw not in (None, "") else default
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def build_notification_url(base_url: Optional[str], provider: str = "mercadopago") -> Optional[str]:
    if not base_url:
        return None
    parts = urlsplit(base_url)
    if not parts.scheme or not parts.netloc:
        return None
    query = dict(parse_qsl(parts.query))
    query["provider"] = provider
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


@dataclass(frozen=True)
class PaymentConfig:
    provider: str
    requested_provider: Optional[str]
    mercadopago_access_token: str
    webhook_secret: str
    order_expiration_minutes: int
    notification_url: Optional[str]
    manual_pix_key: str
    manual_pix_copy_paste: str
    manual_pix_display_name: str
    manual_pix_instructions: str
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S
    env_override: bool = False

    @property
    def is_manual(self) -> bool:
        return self.provider == "manual"

    def manual_instructions(self) -> dict:
        return {
            "key": self.manual_pix_key or None,
            "copy_paste": self.manual_pix_copy_paste or None,
            "display_name": self.manual_pix_display_name,
            "instructions": self.manual_pix_instructions,
            "proof_required": True,
        }


def load_payment_config(
    settings: Optional[ProviderSettings] = None,
    env: Optional[Mapping[str, str]] = None,
) -> PaymentConfig:
    env = os.environ if env is None else env
    settings = settings or ProviderSettings()

    from_env = normalize_provider(env.get("PIX_PROVIDER"))
    from_settings = normalize_provider(settings.active_provider)
    requested = from_env or from_settings or "manual"

    access_token = (env.get("MERCADOPAGO_ACCESS_TOKEN") or "").strip()
    provider = requested
    if provider == "mercadopago" and not access_token:
        print("[CONFIG][WARN] mercadopago ativo sem MERCADOPAGO_ACCESS_TOKEN; usando manual.")
        provider = "manual"
    if provider not in AUTOMATED_PROVIDERS:
        provider = "manual"

    manual_key = _first_non_empty(settings.manual_pix_key, env.get("PIX_MANUAL_KEY"))
    manual_copy_paste = _first_non_empty(
        settings.manual_pix_copy_paste,
        env.get("PIX_MANUAL_COPY_PASTE"),
        manual_key,
    )

    base_url = (env.get("APP_BASE_URL") or "").rstrip("/")
    webhook_url = env.get("PIX_WEBHOOK_URL") or (f"{base_url}/webhooks/pix" if base_url else None)

    return PaymentConfig(
        provider=provider,
        requested_provider=requested,
        mercadopago_access_token=access_token,
        webhook_secret=(env.get("MERCADOPAGO_WEBHOOK_SECRET") or "").strip(),
        order_expiration_minutes=_positive_int(env.get("PIX_ORDER_EXPIRATION_MINUTES"), DEFAULT_EXPIRATION_MINUTES),
        notification_url=build_notification_url(webhook_url),
        manual_pix_key=manual_key,
        manual_pix_copy_paste=manual_copy_paste,
        manual_pix_display_name=_first_non_empty(
            settings.manual_pix_display_name, env.get("PIX_MANUAL_DISPLAY_NAME"), DEFAULT_MANUAL_DISPLAY_NAME
        ),
        manual_pix_instructions=_first_non_empty(
            settings.manual_pix_instructions, env.get("PIX_MANUAL_INSTRUCTIONS"), DEFAULT_MANUAL_INSTRUCTIONS
        ),
        http_timeout_s=_positive_float(env.get("PAYMENT_HTTP_TIMEOUT_SECONDS"), DEFAULT_HTTP_TIMEOUT_S),
        env_override=from_env is not None,
    )
