"""
Checkout Return Pages

Pages MercadoPago redirects the buyer to after checkout (``back_urls``).
They never change payment state: only the webhook credits an account, so
even the success page only says the payment is being confirmed.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

from topup_backend.src.billing.shared.config import (
    RETURN_PAGE_FAILURE,
    RETURN_PAGE_PENDING,
    RETURN_PAGE_SUCCESS,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing-returns"])

_PAGE = """<!DOCTYPE html>
<html>
<head><title>{title}</title><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; text-align: center; padding: 50px;">
  <h1 style="color: {color};">{title}</h1>
  <p>{message}</p>
  <p>{followup}</p>
  <p><small>Podés cerrar esta ventana.</small></p>
</body>
</html>
"""


def render_return_page(title: str, color: str, message: str, followup: str) -> str:
    return _PAGE.format(title=title, color=color, message=message, followup=followup)


def _log_return(page: str, request: Request) -> None:
    # Only ids; the query string is buyer-controlled and not trusted
    params = request.query_params
    logger.info(
        f"[WEBHOOK] Checkout return {page}: payment_id={params.get('payment_id')} "
        f"status={params.get('status')} ref={params.get('external_reference')}"
    )


@router.get(f"/{RETURN_PAGE_SUCCESS}", response_class=HTMLResponse)
async def payment_success(request: Request):
    """Buyer finished checkout."""
    _log_return(RETURN_PAGE_SUCCESS, request)
    return render_return_page(
        "¡Gracias por tu pago!",
        "#00a650",
        "Estamos confirmando tu pago.",
        "Te avisaremos por chat cuando tus créditos estén acreditados.",
    )


@router.get(f"/{RETURN_PAGE_FAILURE}", response_class=HTMLResponse)
async def payment_failure(request: Request):
    """Checkout failed or was abandoned."""
    _log_return(RETURN_PAGE_FAILURE, request)
    return render_return_page(
        "Pago no completado",
        "#d32f2f",
        "Tu pago no pudo completarse.",
        "Podés intentar nuevamente más tarde.",
    )


@router.get(f"/{RETURN_PAGE_PENDING}", response_class=HTMLResponse)
async def payment_pending(request: Request):
    """Payment awaiting confirmation by MercadoPago."""
    _log_return(RETURN_PAGE_PENDING, request)
    return render_return_page(
        "Pago pendiente",
        "#f5a623",
        "Tu pago está pendiente de confirmación.",
        "Te avisaremos por chat cuando se acrediten tus créditos.",
    )
