# payments/__init__.py
from payments.config import PaymentConfig


def get_payment_gateway(provider: str, config: PaymentConfig):
    """
    Retorna a implementação do provedor de pagamento.
    - mercadopago: PIX automatizado (requer MERCADOPAGO_ACCESS_TOKEN).
    - qualquer outro: fallback manual, sem chamada externa.
    """
    if provider == "mercadopago":
        from .mercadopago import MercadoPagoGateway
        return MercadoPagoGateway(config.mercadopago_access_token, timeout_s=config.http_timeout_s)
    from .manual import ManualPixProvider
    return ManualPixProvider()
