import asyncio
import smtplib
from email.message import EmailMessage
from celery import shared_task
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from foldly.config import settings
from foldly.core.celery_app import celery_app  # noqa: F401 registers the app for shared tasks
from foldly.core.monitoring import setup_logging
from foldly.db.session import build_engine
from foldly.models.workspace import Workspace
from foldly.services.permissions import PermissionEngine
from foldly.services.quota import QuotaAccountant
import logging

setup_logging()
logger = logging.getLogger(__name__)


async def _with_session(work):
    # Each task run owns its engine; event loops are not shared across runs
    engine = build_engine()
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_factory() as db:
            return await work(db)
    finally:
        await engine.dispose()


async def reconcile_all_workspaces(db: AsyncSession) -> dict:
    result = await db.execute(select(Workspace.id))
    accountant = QuotaAccountant(db)
    drifted = 0
    workspace_ids = list(result.scalars().all())
    for workspace_id in workspace_ids:
        previous, actual = await accountant.reconcile(workspace_id)
        if previous != actual:
            drifted += 1
    return {"workspaces": len(workspace_ids), "drifted": drifted}


@shared_task(name="reconcile_storage_usage")
def reconcile_storage_usage():
    """
    Re-derive every workspace's storage counter from its file rows.
    """
    summary = asyncio.run(_with_session(reconcile_all_workspaces))
    logger.info(f"Storage reconciliation complete: {summary}")
    return summary


@shared_task(name="expire_pending_editor_promotions")
def expire_pending_editor_promotions():
    async def work(db):
        return await PermissionEngine(db).expire_pending_promotions()

    expired = asyncio.run(_with_session(work))
    logger.info(f"Pending editor sweep demoted {expired} permissions")
    return expired


def send_email(to_email: str, subject: str, body: str):
    if not settings.SMTP_SERVER:
        raise RuntimeError("SMTP_SERVER is not configured")

    msg = EmailMessage()
    msg.set_content(body)
    msg["Subject"] = subject
    msg["From"] = settings.FROM_EMAIL
    msg["To"] = to_email

    with smtplib.SMTP(settings.SMTP_SERVER, settings.SMTP_PORT) as smtp:
        smtp.ehlo()
        smtp.starttls()
        if settings.SMTP_USERNAME:
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        smtp.send_message(msg)


@shared_task(name="send_editor_verification_code", autoretry_for=(smtplib.SMTPException, OSError),
             retry_backoff=True, max_retries=3)
def send_editor_verification_code(to_email: str, code: str, link_title: str):
    send_email(
        to_email,
        subject=f"Your editor verification code for {link_title}",
        body=(
            f"Hi,\n\nYou have been invited to become an editor of '{link_title}' on {settings.APP_NAME}."
            f"\nYour verification code is: {code}"
            f"\nIt expires in {settings.EDITOR_OTP_EXPIRY_MINUTES} minutes."
        ),
    )
    logger.info(f"Editor verification code sent to {to_email}")
