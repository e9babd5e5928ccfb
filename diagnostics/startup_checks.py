import logging

from service.errors import UpstreamUnavailable

logger = logging.getLogger("diagnostics.startup_checks")


def check_db_connection(db_service) -> bool:
    logger.info("--- Testing database connection ---")
    try:
        version = db_service.ping()
        logger.info("✅ Connected to record store (version: %s)", version)
        return True
    except UpstreamUnavailable:
        logger.exception("❌ Failed to connect to record store")
        return False


def check_gmail_token(settings) -> bool:
    logger.info("--- Testing Gmail token ---")
    token_path = settings.token_path
    if token_path.is_file():
        logger.info("✅ Gmail token for %s found at %s", settings.gmail_email, token_path)
        return True
    logger.error("❌ Gmail token not found at %s", token_path)
    return False


def check_stripe_config(settings) -> bool:
    logger.info("--- Testing Stripe configuration ---")
    ok = True
    if not settings.stripe_api_key.startswith(("sk_", "rk_")):
        logger.error("❌ STRIPE_API_KEY does not look like a secret or restricted key")
        ok = False
    if not settings.stripe_webhook_secret.startswith("whsec_"):
        logger.error("❌ STRIPE_WEBHOOK_SECRET does not look like a webhook signing secret")
        ok = False
    if ok:
        logger.info("✅ Stripe keys are loaded.")
    return ok


def run_all(settings, db_service) -> dict[str, bool]:
    return {
        "database": check_db_connection(db_service),
        "gmail": check_gmail_token(settings),
        "stripe": check_stripe_config(settings),
    }
