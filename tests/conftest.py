import itertools
import os
import tempfile

# Banco de boot isolado antes de importar o app (init_db roda no import)
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.mkdtemp(), "boot.db")

import pytest

from db import init_db
from db.models import insert_pricing_rule, upsert_profile
from payments.mercadopago import MercadoPagoGateway, PixPayment
from services.orders import OrderLifecycle
from utils.security import hmac_sha256_hex

WEBHOOK_SECRET = "whsec-test"

_PAYMENT_ENV_VARS = (
    "PIX_PROVIDER",
    "MERCADOPAGO_ACCESS_TOKEN",
    "MERCADOPAGO_WEBHOOK_SECRET",
    "PIX_ORDER_EXPIRATION_MINUTES",
    "PIX_WEBHOOK_URL",
    "APP_BASE_URL",
    "PIX_MANUAL_KEY",
    "PIX_MANUAL_COPY_PASTE",
    "PIX_MANUAL_DISPLAY_NAME",
    "PIX_MANUAL_INSTRUCTIONS",
)


class FakeMercadoPago(MercadoPagoGateway):
    """Gateway com a verificação de assinatura real e a API em memória."""

    def __init__(self):
        super().__init__("TEST-TOKEN")
        self._ids = itertools.count(1001)
        self.payments = {}
        self.create_calls = []
        self.fail_with = None

    def create_pix_payment(self, **kwargs):
        self.create_calls.append(kwargs)
        if self.fail_with is not None:
            raise self.fail_with
        payment = PixPayment(
            provider_id=str(next(self._ids)),
            status="pending",
            external_reference=kwargs["external_reference"],
            qr_code_text="00020126580014br.gov.bcb.pix0136fake",
            qr_code_image_base64="data:image/png;base64,iVBORw0KGgo=",
            expires_at=None,
            raw={},
        )
        self.payments[payment.provider_id] = payment
        return payment

    def get_payment(self, provider_id):
        return self.payments[str(provider_id)]

    def set_status(self, provider_id, status, **raw):
        payment = self.payments[str(provider_id)]
        payment.status = status
        payment.raw.update(raw)
        return payment


class EffectsRecorder:
    def __init__(self, failures=0):
        self.calls = []
        self.failures = failures

    def __call__(self, order):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("entitlement service down")
        self.calls.append(order.id)
        return True


def sign_headers(data_id, request_id="req-1", ts="1700000000", secret=WEBHOOK_SECRET):
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    return {
        "x-signature": f"ts={ts},v1={hmac_sha256_hex(secret, manifest)}",
        "x-request-id": request_id,
    }


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    for name in _PAYMENT_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    init_db()
    yield


@pytest.fixture
def gateway():
    return FakeMercadoPago()


@pytest.fixture
def effects():
    return EffectsRecorder()


@pytest.fixture
def automated_env():
    return {
        "PIX_PROVIDER": "mercadopago",
        "MERCADOPAGO_ACCESS_TOKEN": "TEST-TOKEN",
        "MERCADOPAGO_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "APP_BASE_URL": "https://api.soufit.test",
    }


@pytest.fixture
def manual_env():
    return {
        "PIX_PROVIDER": "manual",
        "PIX_MANUAL_KEY": "pix@soufit.test",
        "PIX_MANUAL_COPY_PASTE": "00020126manualcopypaste",
        "MERCADOPAGO_WEBHOOK_SECRET": WEBHOOK_SECRET,
    }


def make_lifecycle(gateway, effects, env):
    return OrderLifecycle(
        gateway_factory=lambda provider, config: gateway,
        apply_effects=effects,
        env=env,
    )


@pytest.fixture
def lifecycle(gateway, effects, automated_env):
    return make_lifecycle(gateway, effects, automated_env)


@pytest.fixture
def manual_lifecycle(gateway, effects, manual_env):
    return make_lifecycle(gateway, effects, manual_env)


@pytest.fixture
def global_price():
    return insert_pricing_rule("global", None, None, "personal_package", 9990, "BRL", True)


@pytest.fixture
def client_profile():
    upsert_profile("client-1", "Ana Souza", "ana@example.com")
    return "client-1"


@pytest.fixture
def admin_profile():
    upsert_profile("admin-1", "Admin", "admin@soufit.test", is_admin=True)
    return "admin-1"
