"""Transactional emails (family codes, payment failures)"""
import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pathlib import Path
from family_portal.core.config import settings
from family_portal.core.logging import get_logger

logger = get_logger(__name__)

template_dir = Path(__file__).parent.parent / "templates" / "email"
jinja_env = Environment(
    loader=FileSystemLoader(str(template_dir)),
    autoescape=select_autoescape(["html"]),
)


def _send(to_email: str, subject: str, html: str) -> None:
    resend.api_key = settings.RESEND_API_KEY
    resend.Emails.send({
        "from": settings.RESEND_FROM_EMAIL,
        "to": [to_email],
        "subject": subject,
        "html": html,
    })


def send_family_codes_email(
    to_email: str,
    first_name: str,
    parent_code: str,
    children_codes: list[dict],
) -> bool:
    """Send the parent code and the newly issued child codes"""
    if not settings.RESEND_API_KEY:
        logger.info(f"Family codes email skipped (Resend not configured): {to_email}")
        return False
    try:
        template = jinja_env.get_template("family_codes.html")
        html = template.render(
            first_name=first_name,
            parent_code=parent_code,
            children_codes=children_codes,
            site_name=settings.SITE_NAME,
            site_url=settings.SITE_URL,
        )
        _send(to_email, f"Tus códigos de acceso familiar - {settings.SITE_NAME}", html)
        logger.info(f"Family codes email sent: {to_email}")
        return True
    except Exception as e:
        logger.error(f"Family codes email failed: {to_email} - {e}")
        return False


def send_payment_failed_email(to_email: str, first_name: str) -> bool:
    if not settings.RESEND_API_KEY:
        logger.info(f"Payment failed email skipped (Resend not configured): {to_email}")
        return False
    try:
        template = jinja_env.get_template("payment_failed.html")
        html = template.render(
            first_name=first_name,
            site_name=settings.SITE_NAME,
            portal_url=f"{settings.SITE_URL}/membresia",
        )
        _send(to_email, f"No pudimos procesar tu pago - {settings.SITE_NAME}", html)
        logger.info(f"Payment failed email sent: {to_email}")
        return True
    except Exception as e:
        logger.error(f"Payment failed email failed: {to_email} - {e}")
        return False
