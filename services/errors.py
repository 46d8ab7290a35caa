class PaymentError(Exception):
    """Erro de domínio do fluxo de pagamentos. Carrega o status HTTP sugerido."""

    status_code = 500
    code = "payment_error"

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.__class__.__name__)
        self.details = details

    def to_dict(self):
        payload = {"ok": False, "error": str(self), "code": self.code}
        payload.update(self.details)
        return payload


class ValidationError(PaymentError):
    status_code = 400
    code = "validation_error"


class NoPricingRuleFound(PaymentError):
    status_code = 400
    code = "no_pricing_rule"


class ForbiddenError(PaymentError):
    status_code = 403
    code = "forbidden"


class OrderNotFound(PaymentError):
    status_code = 404
    code = "order_not_found"


class ProofNotFound(PaymentError):
    status_code = 404
    code = "proof_not_found"


class ProviderNotManual(PaymentError):
    status_code = 400
    code = "provider_not_manual"


class OrderStateError(PaymentError):
    status_code = 409
    code = "order_state"


class ManualPixNotConfigured(PaymentError):
    status_code = 500
    code = "manual_pix_not_configured"


class ProviderError(PaymentError):
    """Falha do provider automatizado (rede, timeout, resposta não-2xx)."""

    status_code = 502
    code = "provider_error"


class EffectsApplicationError(PaymentError):
    status_code = 500
    code = "effects_failed"
