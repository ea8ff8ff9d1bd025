from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from prime_claims.config import settings
from prime_claims.services.primes import display_index

LOGGER = logging.getLogger(__name__)

GMAIL_SEND_ENDPOINT = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"


class EmailSendError(RuntimeError):
    pass


class GmailCredentials:
    """OAuth token cache backed by the token.json written by Google's installed-app flow."""

    def __init__(self, token_path: Path, credentials_path: Path, timeout_seconds: int) -> None:
        self._token_path = token_path
        self._credentials_path = credentials_path
        self._timeout_seconds = timeout_seconds

    def access_token(self) -> str:
        token_data = _load_json(self._token_path)
        token = token_data.get("token")
        expiry = _parse_expiry(token_data.get("expiry"))
        if token and expiry and expiry > datetime.now(timezone.utc) + timedelta(minutes=1):
            return token
        return self._refresh(token_data)

    def _refresh(self, token_data: dict[str, Any]) -> str:
        refresh_token = token_data.get("refresh_token")
        if not refresh_token:
            raise EmailSendError("Gmail refresh token is missing")
        client_id, client_secret = self._client_details(token_data)
        request = Request(
            token_data.get("token_uri") or DEFAULT_TOKEN_URI,
            data=urlencode(
                {
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                }
            ).encode("utf-8"),
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                data = json.loads(response.read().decode("utf-8"))
        except HTTPError as exc:
            LOGGER.error(
                "Gmail token refresh error: %s", exc.read().decode("utf-8", errors="replace")
            )
            raise EmailSendError("Failed to refresh Gmail token") from exc
        except URLError as exc:
            raise EmailSendError("Failed to reach Gmail token endpoint") from exc

        access_token = data.get("access_token")
        if not access_token:
            raise EmailSendError("Gmail token refresh did not return an access token")
        expires_in = int(data.get("expires_in", 3600))
        token_data["token"] = access_token
        token_data["expiry"] = (
            datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        ).isoformat()
        self._token_path.write_text(json.dumps(token_data), encoding="utf-8")
        return access_token

    def _client_details(self, token_data: dict[str, Any]) -> tuple[str, str]:
        if token_data.get("client_id") and token_data.get("client_secret"):
            return token_data["client_id"], token_data["client_secret"]
        credentials = _load_json(self._credentials_path)
        installed = credentials.get("installed", {})
        client_id = installed.get("client_id") or credentials.get("client_id")
        client_secret = installed.get("client_secret") or credentials.get("client_secret")
        if not client_id or not client_secret:
            raise EmailSendError("Gmail client credentials are missing")
        return client_id, client_secret


class EmailNotifier:
    def __init__(
        self,
        sender: str,
        subject_template: str,
        credentials: GmailCredentials,
        timeout_seconds: int,
    ) -> None:
        self._sender = sender
        self._subject_template = subject_template
        self._credentials = credentials
        self._timeout_seconds = timeout_seconds

    def notify_confirmed(
        self,
        payer_identity: str,
        prime: int,
        amount: Decimal,
        method: Optional[str],
        tx_reference: Optional[str],
    ) -> None:
        if not self._sender:
            raise EmailSendError("Confirmation email sender is not configured")
        subject = self._subject_template.format(prime=prime)
        body = build_confirmation_body(prime, amount, method, tx_reference)
        raw_message = _build_raw_message(self._sender, payer_identity, subject, body)
        request = Request(
            GMAIL_SEND_ENDPOINT,
            data=json.dumps({"raw": raw_message}).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._credentials.access_token()}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                response.read()
        except HTTPError as exc:
            LOGGER.error("Gmail API error: %s", exc.read().decode("utf-8", errors="replace"))
            raise EmailSendError("Failed to send confirmation email") from exc
        except URLError as exc:
            raise EmailSendError("Failed to reach Gmail API") from exc
        LOGGER.info("Confirmation email sent to=%s prime=%s", payer_identity, prime)


def build_confirmation_body(
    prime: int, amount: Decimal, method: Optional[str], tx_reference: Optional[str]
) -> str:
    index = display_index(prime)
    lines = [
        f"You are Prime #{prime}.",
        "",
        f"Amount paid: ${amount}",
    ]
    if method:
        lines.append(f"Paid with: {method}")
    if tx_reference:
        lines.append(f"Transaction: {tx_reference}")
    if index is not None:
        lines.append(f"{prime} is prime number {index}.")
    lines.extend(["", "This prime number is now permanently yours."])
    return "\n".join(lines)


def _build_raw_message(sender: str, recipient: str, subject: str, body: str) -> str:
    message = "\r\n".join(
        [
            f"From: {sender}",
            f"To: {recipient}",
            f"Subject: {subject}",
            "MIME-Version: 1.0",
            "Content-Type: text/plain; charset=utf-8",
            "",
            body,
        ]
    )
    # Gmail API expects base64url-encoded RFC 2822 content.
    return base64.urlsafe_b64encode(message.encode("utf-8")).decode("ascii")


def _default_path(configured: str, file_name: str) -> Path:
    if configured:
        return Path(configured)
    return Path(__file__).resolve().parents[2] / "credentials" / file_name


def _parse_expiry(raw_value: Optional[str]) -> Optional[datetime]:
    if not raw_value:
        return None
    try:
        return datetime.fromisoformat(raw_value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise EmailSendError(f"Missing Gmail file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


email_notifier = EmailNotifier(
    sender=settings.confirmation_email_sender,
    subject_template=settings.confirmation_email_subject,
    credentials=GmailCredentials(
        _default_path(settings.gmail_token_file, "token.json"),
        _default_path(settings.gmail_credentials_file, "credentials.json"),
        settings.http_timeout_seconds,
    ),
    timeout_seconds=settings.http_timeout_seconds,
)
