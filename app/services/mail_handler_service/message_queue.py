"""Outbox-backed delivery queue for templated customer emails.

The migration engine only calls ``enqueue_message``; the row is written in
the caller's transaction so an email is queued if and only if the state change
that triggered it commits. ``deliver_pending_once`` is run by a background
loop and does the rendering and the Resend call.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Callable, Dict, Optional

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging_config import get_logger
from app.db.deps import AsyncSessionLocal
from app.models.email_outbox import EmailOutbox
from app.services.mail_handler_service import mailer_resend
from app.services.mail_handler_service.mailer_resend import EmailError
from app.utils.enums import OutboxStatus

logger = get_logger("message_queue")

APP_NAME = "Billing"
TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates", "migrations")

env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html", "xml"]),
)

PRICE_NOTICE_TEMPLATE = "price_notice"
MIGRATION_CONFIRMATION_TEMPLATE = "migration_confirmation"


def _price_notice_text(ctx: Dict[str, Any]) -> str:
    return (
        f"Hi {ctx.get('garage_name')},\n\n"
        f"From {ctx.get('effective_date')} your {ctx.get('plan_name')} subscription will cost "
        f"{ctx.get('new_price')} per month (currently {ctx.get('old_price')}).\n"
        f"Manage billing: {ctx.get('billing_portal_url')}"
    )


def _confirmation_text(ctx: Dict[str, Any]) -> str:
    return (
        f"Hi {ctx.get('garage_name')},\n\n"
        f"Your {ctx.get('plan_name')} subscription now costs {ctx.get('new_price')} per month. "
        f"The new price applies from {ctx.get('next_billing_date')}.\n"
        f"Billing details: {ctx.get('billing_portal_url')}"
    )


TEXT_RENDERERS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    PRICE_NOTICE_TEMPLATE: _price_notice_text,
    MIGRATION_CONFIRMATION_TEMPLATE: _confirmation_text,
}


def _base_context(extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    base = {
        "app_name": APP_NAME,
        "logo_url": settings.LOGO,
        "support_email": settings.SUPPORT_EMAIL,
    }
    if extra:
        base.update(extra)
    return base


def render_message(template: str, context: Dict[str, Any]) -> tuple[str, str]:
    """Render (html, text) for a queued message.

    Rendering failures are permanent: the same row would fail on every pass.
    """
    if template not in TEXT_RENDERERS:
        raise EmailError(f"Unknown email template '{template}'", permanent=True)
    ctx = _base_context(context)
    try:
        html = env.get_template(f"{template}.html").render(**ctx)
    except TemplateError as e:
        raise EmailError(
            f"Failed to render email template '{template}': {e}", permanent=True
        ) from e
    return html, TEXT_RENDERERS[template](ctx)


async def enqueue_message(
    db: AsyncSession,
    *,
    template: str,
    recipient: Optional[str],
    subject: str,
    context: Dict[str, Any],
) -> EmailOutbox:
    """Stage a message in the caller's transaction (flushed, not committed)."""
    if template not in TEXT_RENDERERS:
        raise EmailError(f"Unknown email template '{template}'")
    if not recipient:
        raise EmailError("Recipient email address is missing")
    message = EmailOutbox(
        template=template,
        recipient=recipient,
        subject=subject,
        context=context,
        status=OutboxStatus.pending,
        attempts=0,
    )
    db.add(message)
    await db.flush()
    return message


async def deliver_pending_once(session_factory=AsyncSessionLocal, limit: int = 50) -> Dict[str, int]:
    """Send up to ``limit`` pending messages. Returns sent/failed counts."""
    sent = failed = 0
    async with session_factory() as db:
        result = await db.execute(
            select(EmailOutbox)
            .where(EmailOutbox.status == OutboxStatus.pending)
            .order_by(EmailOutbox.created_at.asc())
            .limit(limit)
        )
        for message in result.scalars().all():
            try:
                html, text = render_message(message.template, message.context or {})
                await mailer_resend.send_email(
                    subject=message.subject,
                    recipient=message.recipient,
                    html_content=html,
                    text_content=text,
                    tags={"type": message.template},
                )
                message.mark_sent()
                sent += 1
            except EmailError as e:
                # Rejected addresses and broken templates are given up on straight away
                max_attempts = 1 if e.permanent else settings.EMAIL_MAX_ATTEMPTS
                message.mark_failed(str(e), max_attempts)
                failed += 1
                logger.warning(
                    f"Email {message.id} ({message.template}) to {message.recipient} failed "
                    f"(attempt {message.attempts}/{max_attempts}): {e}"
                )
            await db.commit()
    if sent or failed:
        logger.info(f"Email delivery: sent={sent} failed={failed}")
    return {"sent": sent, "failed": failed}


async def run_email_delivery_task(poll_seconds: Optional[int] = None):
    """Background loop: drain the email outbox."""
    poll_seconds = poll_seconds or settings.EMAIL_DELIVERY_INTERVAL_SECONDS
    logger.info(f"Starting email delivery task (interval={poll_seconds}s)")
    try:
        while True:
            try:
                await deliver_pending_once()
            except Exception as e:
                logger.exception(f"Email delivery error: {e}")
            await asyncio.sleep(poll_seconds)
    except asyncio.CancelledError:
        logger.info("Email delivery task cancelled; shutting down")
        raise
