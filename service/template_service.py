from __future__ import annotations

from decimal import Decimal
from typing import Optional

DEFAULT_SUBJECT = "Payment required to reach my inbox"


def _money(amount: Decimal) -> str:
    return f"{Decimal(amount):.2f}"


class TemplateService:
    """Renders the payment-request email sent to parked senders.

    Templates use ``{tollAmount}``, ``{paymentLink}`` and ``{senderEmail}``
    placeholders. Every subject carries the automated-mail marker so the
    notification never counts as the operator writing to that sender.
    """

    def __init__(
        self,
        subject_template: Optional[str] = None,
        body_template: Optional[str] = None,
        from_name: Optional[str] = None,
        automated_subject_marker: str = "[toll]",
    ) -> None:
        self.subject_template = subject_template or DEFAULT_SUBJECT
        self.body_template = body_template
        self.from_name = from_name
        self.automated_subject_marker = automated_subject_marker

    def render_subject(self, toll_amount: Decimal) -> str:
        subject = self.subject_template.replace("{tollAmount}", _money(toll_amount))
        if self.automated_subject_marker and self.automated_subject_marker not in subject:
            subject = f"{subject} {self.automated_subject_marker}"
        return subject

    def render_body(self, toll_amount: Decimal, payment_link: str, sender_email: Optional[str]) -> str:
        if not self.body_template:
            return (
                f"<p>A ${_money(toll_amount)} fee is required to deliver your message to my inbox.</p>"
                f'<p><a href="{payment_link}">Add funds</a> to deliver this message.</p>'
            )
        return (
            self.body_template.replace("{tollAmount}", _money(toll_amount))
            .replace("{paymentLink}", payment_link)
            .replace("{senderEmail}", sender_email or "")
        )
