# payments/manual.py
from typing import Dict, Any

from payments.config import PaymentConfig
from services.errors import ManualPixNotConfigured


class ManualPixProvider:
    """
    Fallback PIX manual.
    - Nenhuma chamada externa: o cliente paga na chave configurada pelo admin
      e envia o comprovante; um admin aprova depois.
    - Sem copia-e-cola configurado não há como pagar, então falha alto.
    """
    name = "manual"

    def start_checkout(self, config: PaymentConfig) -> Dict[str, Any]:
        if not config.manual_pix_copy_paste:
            raise ManualPixNotConfigured(
                "Fallback PIX manual ativo, mas nenhuma chave/copia-e-cola foi configurada."
            )
        return {
            "status": "manual_review",
            "pix_copy_paste": config.manual_pix_copy_paste,
            "manual_pix": config.manual_instructions(),
        }
