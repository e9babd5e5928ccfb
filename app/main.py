import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from dotenv import load_dotenv
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route

from diagnostics import startup_checks
from infrastructure.poll_scheduler import PollScheduler
from service.db_service import DbService, InMemoryDbService
from service.errors import MalformedInput, SignatureInvalid
from service.gmail_client import GmailApiClient
from service.ledger_service import LedgerService
from service.reconciliation_service import ReconciliationService
from service.settings import TollSettings
from service.stripe_webhook_service import StripeWebhookService
from service.template_service import TemplateService
from service.toll_service import TollService
from service.whitelist_service import WhitelistService

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("inbox-toll")


@dataclass
class Services:
    settings: Optional[TollSettings]
    db: Any
    webhook: StripeWebhookService
    scheduler: Optional[PollScheduler] = None


def compose(settings: TollSettings) -> Services:
    """Wire the toll engine, reconciliation and poller from configuration."""
    if os.getenv("DB_APP_USER"):
        db_service = DbService.from_env()
    else:
        logger.warning("DB_APP_USER not set - using in-memory record store (records are lost on restart)")
        db_service = InMemoryDbService()

    gmail_client = GmailApiClient.from_token_file(settings.token_path, settings.gmail_email)
    ledger = LedgerService(
        api_key=settings.stripe_api_key,
        success_url=settings.success_url,
        cancel_url=settings.cancel_url,
        top_up_floor=settings.top_up_floor,
    )
    whitelist = WhitelistService(
        gmail_client,
        operator_email=settings.gmail_email,
        trusted_domains=settings.trusted_domains,
        automated_subject_marker=settings.automated_subject_marker,
    )
    templates = TemplateService(
        subject_template=settings.email_subject,
        body_template=settings.email_body,
        from_name=settings.email_from_name,
        automated_subject_marker=settings.automated_subject_marker,
    )
    toll_service = TollService(
        gmail_client,
        db_service,
        whitelist,
        ledger,
        templates,
        toll_amount=settings.toll_amount,
        awaiting_label=settings.awaiting_label,
        paid_label=settings.paid_label,
    )
    reconciliation = ReconciliationService(
        gmail_client,
        db_service,
        ledger,
        awaiting_label=settings.awaiting_label,
        paid_label=settings.paid_label,
    )
    scheduler = PollScheduler(
        gmail_client,
        toll_service,
        interval_seconds=settings.poll_interval_seconds,
        overlap=timedelta(minutes=settings.poll_overlap_minutes),
        initial_lookback=timedelta(hours=settings.poll_initial_lookback_hours),
    )
    return Services(
        settings=settings,
        db=db_service,
        webhook=StripeWebhookService(settings.stripe_webhook_secret, reconciliation),
        scheduler=scheduler,
    )


async def index(request: Request) -> JSONResponse:
    services = getattr(request.app.state, "services", None)
    scheduler = services.scheduler if services else None
    last_run = scheduler.last_run_at.isoformat() if scheduler and scheduler.last_run_at else None
    return JSONResponse({"message": "Hello from inbox-toll", "lastPollAt": last_run})


async def stripe_webhook(request: Request):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    webhook_service = request.app.state.services.webhook
    try:
        # Ledger and Gmail calls block; keep them off the event loop.
        result = await run_in_threadpool(webhook_service.handle, payload, signature)
    except SignatureInvalid as exc:
        logger.error("Stripe webhook signature verification failed: %s", exc)
        return PlainTextResponse("Invalid signature", status_code=400)
    except MalformedInput as exc:
        logger.error("Stripe webhook rejected: %s", exc)
        return PlainTextResponse(f"Webhook error: {exc}", status_code=400)
    except Exception:  # noqa: BLE001
        logger.exception("Error processing Stripe webhook")
        return PlainTextResponse("Webhook processing failed", status_code=500)
    return JSONResponse(result)


def create_app(services: Optional[Services] = None) -> Starlette:
    @asynccontextmanager
    async def lifespan(app: Starlette):
        svc = app.state.services if getattr(app.state, "services", None) else compose(TollSettings.from_env())
        app.state.services = svc
        settings = svc.settings

        if settings and settings.run_startup_diagnostics:
            try:
                startup_checks.run_all(settings, svc.db)
            except Exception:  # noqa: BLE001
                logger.exception("diagnostics failed")
        else:
            logger.info("Startup diagnostics disabled via RUN_STARTUP_DIAGNOSTICS")

        if svc.scheduler and settings and settings.run_poller:
            svc.scheduler.start()
            logger.info("Gmail poll scheduler started")
        else:
            logger.info("Gmail poll scheduler disabled via RUN_POLLER")

        yield

        if svc.scheduler:
            try:
                svc.scheduler.stop()
            except Exception:  # noqa: BLE001
                logger.exception("Error stopping poll scheduler")
        try:
            svc.db.close()
        except Exception:  # noqa: BLE001
            logger.exception("Error closing record store")

    application = Starlette(
        routes=[
            Route("/", index),
            Route("/webhook/stripe", stripe_webhook, methods=["POST"]),
        ],
        lifespan=lifespan,
    )
    if services is not None:
        application.state.services = services
    return application


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
