"""
Tests for notification templates and header parsing helpers.
"""

from decimal import Decimal

from service.email_service import extract_email_details, header_map, recipient_addresses
from service.template_service import DEFAULT_SUBJECT, TemplateService


class TestTemplateService:
    def test_default_subject_gets_marker(self):
        assert TemplateService().render_subject(Decimal("0.25")) == f"{DEFAULT_SUBJECT} [toll]"

    def test_custom_subject_placeholders(self):
        templates = TemplateService(subject_template="[toll] ${tollAmount} to reach me")
        assert templates.render_subject(Decimal("0.5")) == "[toll] $0.50 to reach me"

    def test_default_body_has_amount_and_link(self):
        body = TemplateService().render_body(Decimal("0.25"), "https://checkout.test/s/1", "a@b.com")
        assert "$0.25" in body
        assert 'href="https://checkout.test/s/1"' in body

    def test_custom_body_placeholders(self):
        templates = TemplateService(body_template="Hi {senderEmail}, pay ${tollAmount} at {paymentLink}")
        body = templates.render_body(Decimal("1"), "https://pay", "a@b.com")
        assert body == "Hi a@b.com, pay $1.00 at https://pay"


class TestHeaderParsing:
    MESSAGE = {
        "id": "m1",
        "threadId": "t1",
        "payload": {
            "headers": [
                {"name": "From", "value": '"Pat Doe" <Pat@Example.com>'},
                {"name": "To", "value": "me@mybox.com, other@x.org"},
                {"name": "Cc", "value": "Sam <sam@trusted.com>"},
                {"name": "Subject", "value": "Hello"},
            ]
        },
    }

    def test_header_names_are_lower_cased(self):
        assert header_map(self.MESSAGE)["subject"] == "Hello"

    def test_sender_address(self):
        assert extract_email_details(self.MESSAGE)["sender"] == "Pat@Example.com"
        assert extract_email_details({"id": "m2"})["sender"] is None

    def test_recipients_include_to_and_cc(self):
        assert recipient_addresses(header_map(self.MESSAGE)) == ["me@mybox.com", "other@x.org", "sam@trusted.com"]

    def test_email_details(self):
        details = extract_email_details(self.MESSAGE)
        assert details["id"] == "m1"
        assert details["sender"] == "Pat@Example.com"
        assert details["subject"] == "Hello"
