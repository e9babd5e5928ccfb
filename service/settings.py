from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional


def _flag(env: Mapping[str, str], key: str, default: str = "true") -> bool:
    # Accept only 'true'/'false'
    return env.get(key, default).strip().lower() == "true"


def _decimal(env: Mapping[str, str], key: str, default: str) -> Decimal:
    raw = env.get(key, default).strip()
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{key} is not a valid amount: {raw!r}") from exc


def _int(env: Mapping[str, str], key: str, default: str) -> int:
    raw = env.get(key, default).strip()
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} is not a valid integer: {raw!r}") from exc


def _split_csv(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class TollSettings:
    """Runtime configuration, read from the process environment (and .env)."""

    gmail_email: str
    stripe_api_key: str
    stripe_webhook_secret: str
    success_url: str
    cancel_url: str
    gmail_token_file: Optional[str] = None
    gmail_tokens_dir: str = "secrets/tokens"
    toll_amount: Decimal = Decimal("0.25")
    top_up_floor: Decimal = Decimal("1.00")
    trusted_domains: tuple[str, ...] = field(default_factory=tuple)
    poll_interval_seconds: int = 60
    poll_overlap_minutes: int = 5
    poll_initial_lookback_hours: int = 48
    email_subject: Optional[str] = None
    email_body: Optional[str] = None
    email_from_name: Optional[str] = None
    automated_subject_marker: str = "[toll]"
    awaiting_label: str = "Awaiting Toll"
    paid_label: str = "Toll Paid"
    run_startup_diagnostics: bool = True
    run_poller: bool = True

    @property
    def token_path(self) -> Path:
        if self.gmail_token_file:
            return Path(self.gmail_token_file)
        return Path(self.gmail_tokens_dir) / f"{self.gmail_email}.json"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TollSettings":
        env = os.environ if environ is None else environ

        required = {
            "GMAIL_EMAIL": env.get("GMAIL_EMAIL", "").strip(),
            "STRIPE_API_KEY": env.get("STRIPE_API_KEY", "").strip(),
            "STRIPE_WEBHOOK_SECRET": env.get("STRIPE_WEBHOOK_SECRET", "").strip(),
            "TOP_UP_SUCCESS_URL": env.get("TOP_UP_SUCCESS_URL", "").strip(),
            "TOP_UP_CANCEL_URL": env.get("TOP_UP_CANCEL_URL", "").strip(),
        }
        missing = [k for k, v in required.items() if not v]
        if missing:
            raise ValueError(f"Missing required env vars: {', '.join(missing)}")

        toll_amount = _decimal(env, "TOLL_AMOUNT", "0.25")
        if toll_amount <= 0:
            raise ValueError("TOLL_AMOUNT must be positive")

        return cls(
            gmail_email=required["GMAIL_EMAIL"],
            stripe_api_key=required["STRIPE_API_KEY"],
            stripe_webhook_secret=required["STRIPE_WEBHOOK_SECRET"],
            success_url=required["TOP_UP_SUCCESS_URL"],
            cancel_url=required["TOP_UP_CANCEL_URL"],
            gmail_token_file=env.get("GMAIL_TOKEN_FILE") or None,
            gmail_tokens_dir=env.get("GMAIL_TOKENS_DIR", "secrets/tokens"),
            toll_amount=toll_amount,
            top_up_floor=_decimal(env, "TOP_UP_FLOOR", "1.00"),
            trusted_domains=_split_csv(env.get("TRUSTED_DOMAINS")),
            poll_interval_seconds=_int(env, "POLL_INTERVAL_SECONDS", "60"),
            poll_overlap_minutes=_int(env, "POLL_OVERLAP_MINUTES", "5"),
            poll_initial_lookback_hours=_int(env, "POLL_INITIAL_LOOKBACK_HOURS", "48"),
            email_subject=env.get("TOLL_EMAIL_SUBJECT") or None,
            email_body=env.get("TOLL_EMAIL_BODY") or None,
            email_from_name=env.get("TOLL_EMAIL_FROM_NAME") or None,
            automated_subject_marker=env.get("AUTOMATED_SUBJECT_MARKER", "[toll]"),
            awaiting_label=env.get("AWAITING_LABEL", "Awaiting Toll"),
            paid_label=env.get("PAID_LABEL", "Toll Paid"),
            run_startup_diagnostics=_flag(env, "RUN_STARTUP_DIAGNOSTICS"),
            run_poller=_flag(env, "RUN_POLLER"),
        )
