from __future__ import annotations

import base64
import logging
from email.mime.text import MIMEText
from email.utils import formataddr
from pathlib import Path
from typing import Any, Dict, List, Optional

import httplib2
from google.auth.exceptions import GoogleAuthError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from google.oauth2.credentials import Credentials

from service.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

SCOPES: List[str] = ["https://www.googleapis.com/auth/gmail.modify"]
INBOX = "INBOX"


class GmailApiClient:
    """Thin Gmail API client covering the mailbox operations the toll engine needs.

    Credentials are loaded from an authorized-user token JSON file obtained out of band.
    Transport and API errors surface as ``UpstreamUnavailable``.
    """

    def __init__(self, creds: Optional[Credentials], email_address: str, service: Any = None) -> None:
        self.email_address = email_address
        self._service = service if service is not None else build("gmail", "v1", credentials=creds, cache_discovery=False)
        self._label_ids: dict[str, str] = {}

    @classmethod
    def from_token_file(cls, token_file: str | Path, email_address: str) -> "GmailApiClient":
        token_path = Path(token_file)
        if not token_path.exists():
            raise FileNotFoundError(f"Token file not found: {token_file}")
        creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
        logger.info("GmailApiClient: loaded token from %s", token_path)
        return cls(creds, email_address)

    def list_messages(self, query: str, max_results: int = 500) -> List[Dict[str, Any]]:
        """Return message summaries ({id, threadId}) matching ``query``, across all pages."""
        messages: List[Dict[str, Any]] = []
        page_token: str | None = None
        while True:
            resp = self._execute(
                self._service.users().messages().list(
                    userId="me", q=query, maxResults=max_results, pageToken=page_token
                ),
                f"list messages q={query!r}",
            )
            messages.extend(resp.get("messages") or [])
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
        logger.debug("GmailApiClient.list_messages: q=%s -> %d message(s)", query, len(messages))
        return messages

    def fetch_message(self, message_id: str) -> Dict[str, Any]:
        return self._execute(
            self._service.users().messages().get(userId="me", id=message_id, format="metadata"),
            f"fetch message {message_id}",
        )

    def has_sent_to(self, address: str, exclude_subject_marker: str) -> bool:
        """True if the mailbox owner has ever sent mail to ``address``.

        Automated mail whose subject carries ``exclude_subject_marker`` does not count.
        """
        query = f'in:sent to:{address} -subject:"{exclude_subject_marker}"'
        resp = self._execute(
            self._service.users().messages().list(userId="me", q=query, maxResults=1),
            f"sent-folder lookup for {address}",
        )
        return bool(resp.get("messages"))

    def ensure_label(self, name: str) -> str:
        """Return the id of label ``name``, creating it on first use."""
        cached = self._label_ids.get(name)
        if cached:
            return cached

        resp = self._execute(self._service.users().labels().list(userId="me"), "list labels")
        for label in resp.get("labels") or []:
            self._label_ids[label.get("name")] = label.get("id")
        if name in self._label_ids:
            return self._label_ids[name]

        logger.info("Creating label '%s' for %s", name, self.email_address)
        body = {"name": name, "labelListVisibility": "labelShow", "messageListVisibility": "show"}
        created = self._execute(
            self._service.users().labels().create(userId="me", body=body),
            f"create label {name}",
        )
        self._label_ids[name] = created["id"]
        return created["id"]

    def archive_and_label(self, message_id: str, label_id: str) -> None:
        self._modify(message_id, add=[label_id], remove=[INBOX])

    def unarchive_and_label(self, message_id: str, remove_label_id: str, add_label_id: str) -> None:
        self._modify(message_id, add=[INBOX, add_label_id], remove=[remove_label_id])

    def send_notification(self, to: str, subject: str, html_body: str, from_name: Optional[str] = None) -> None:
        mime = MIMEText(html_body, "html", "utf-8")
        mime["To"] = to
        mime["From"] = formataddr((from_name, self.email_address)) if from_name else self.email_address
        mime["Subject"] = subject
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii")
        self._execute(
            self._service.users().messages().send(userId="me", body={"raw": raw}),
            f"send notification to {to}",
        )
        logger.info("Sent notification from %s to %s", self.email_address, to)

    def _modify(self, message_id: str, add: List[str], remove: List[str]) -> None:
        body = {"addLabelIds": add, "removeLabelIds": remove}
        self._execute(
            self._service.users().messages().modify(userId="me", id=message_id, body=body),
            f"modify labels on {message_id}",
        )

    @staticmethod
    def _execute(request: Any, what: str) -> Dict[str, Any]:
        try:
            return request.execute()
        except (HttpError, GoogleAuthError, httplib2.HttpLib2Error, OSError) as exc:
            raise UpstreamUnavailable(f"Gmail: failed to {what}: {exc}") from exc
