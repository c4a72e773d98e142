"""
User-facing payment notices.

The messaging layer delivers these after a webhook credits or rejects a
payment. Rejections stay neutral: the provider's reason is for operators only.
"""

from decimal import Decimal
from typing import Optional

from topup_backend.src.billing.domain.webhook import WebhookOutcome, WebhookResult


def _format_amount(amount: Optional[Decimal]) -> str:
    if amount is None:
        return ""
    if amount == amount.to_integral_value():
        return f"{int(amount)}"
    return f"{amount:.2f}"


def build_user_notice(result: WebhookResult, currency_id: str = "ARS") -> Optional[str]:
    """
    Render the chat message for a processed payment.

    Returns:
        Message text, or None when the outcome isn't user-visible
    """
    if result.outcome == WebhookOutcome.CREDITED:
        return (
            f"✅ ¡Pago confirmado!\n\n"
            f"Hemos registrado tu pago por ${_format_amount(result.amount)} {currency_id} "
            f"y acreditado {result.credits_added} créditos a tu cuenta.\n\n"
            f"💰 Saldo actual: {result.new_balance} créditos"
        )

    if result.outcome == WebhookOutcome.REJECTED:
        return (
            f"❌ Pago no aprobado\n\n"
            f"Tu intento de pago por ${_format_amount(result.amount)} {currency_id} no fue aprobado.\n\n"
            f"Podés intentar nuevamente cuando quieras. Si tenés dudas, preguntame."
        )

    return None
