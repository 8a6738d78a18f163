"""
Transactional email service - SendGrid-based customer and operator emails.

Used for the payment confirmation ("order_paid") email and for operator
alerts. Callers get a result dict back; this module never raises.
"""
import asyncio
import logging
from typing import Optional

from src.config import get_settings
from src.utils.logging import mask_email

logger = logging.getLogger(__name__)

PLAN_LABELS = {
    "standard": "Standard (em até 7 dias)",
    "express": "Express (em até 24 horas)",
}


async def send_transactional(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: str,
) -> dict:
    """
    Send a transactional email via SendGrid.

    Returns: {"message_id": str|None, "status": str, "error": str|None}
    """
    settings = get_settings()
    if not settings.sendgrid_api_key:
        logger.error("No SendGrid API key configured for transactional email")
        return {"message_id": None, "status": "error", "error": "SendGrid not configured"}

    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail, Email, To, Content

        message = Mail(
            from_email=Email(settings.from_email_transactional, settings.from_name_transactional),
            to_emails=To(to_email),
            subject=subject,
        )
        message.content = [
            Content("text/plain", text_content),
            Content("text/html", html_content),
        ]

        sg = SendGridAPIClient(api_key=settings.sendgrid_api_key)
        # Offload synchronous SendGrid SDK call to thread pool
        loop = asyncio.get_running_loop()
        response = await asyncio.wait_for(
            loop.run_in_executor(None, lambda: sg.send(message)),
            timeout=settings.sendgrid_timeout_seconds,
        )
        message_id = response.headers.get("X-Message-Id", "")

        logger.info(
            "Transactional email sent: to=%s subject=%s",
            mask_email(to_email), subject[:40],
        )
        return {"message_id": message_id, "status": "sent", "error": None}

    except Exception as e:
        logger.error(
            "Transactional email failed: to=%s error=%s",
            mask_email(to_email), str(e) or type(e).__name__,
        )
        return {"message_id": None, "status": "error", "error": str(e) or type(e).__name__}


def _format_brl(amount_cents: int) -> str:
    reais, cents = divmod(max(amount_cents or 0, 0), 100)
    return f"R$ {reais:,}".replace(",", ".") + f",{cents:02d}"


async def send_payment_confirmation(
    to_email: str,
    order_id: str,
    amount_cents: int,
    plan: str,
    about_who: Optional[str] = None,
) -> dict:
    """Send the "payment confirmed, your song is on its way" email."""
    settings = get_settings()
    order_url = f"{settings.storefront_base_url.rstrip('/')}/pedido/{order_id}"
    recipient = about_who or "alguém especial"
    plan_label = PLAN_LABELS.get(plan, plan)
    amount = _format_brl(amount_cents)

    html = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 480px; margin: 0 auto; padding: 40px 20px;">
      <h2 style="margin: 0 0 16px; color: #111; font-size: 20px;">Pagamento confirmado!</h2>
      <p style="color: #555; font-size: 15px; line-height: 1.6;">
        Recebemos o seu pagamento de <strong>{amount}</strong>. A música para {recipient}
        já entrou em produção no plano {plan_label}.
      </p>
      <div style="text-align: center; margin: 32px 0;">
        <a href="{order_url}" style="background: #e11d48; color: white; padding: 12px 32px; border-radius: 10px; text-decoration: none; font-weight: 600; font-size: 15px; display: inline-block;">
          Acompanhar pedido
        </a>
      </div>
      <p style="color: #bbb; font-size: 11px; text-align: center;">Pedido {order_id}</p>
    </div>
    """

    text = (
        "Pagamento confirmado!\n\n"
        f"Recebemos o seu pagamento de {amount}. A música para {recipient} "
        f"já entrou em produção no plano {plan_label}.\n\n"
        f"Acompanhe o pedido: {order_url}\n\n"
        f"Pedido {order_id}\n-- MusicLovely"
    )

    return await send_transactional(to_email, "Pagamento confirmado - sua música está a caminho", html, text)
