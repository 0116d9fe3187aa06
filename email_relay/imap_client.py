"""
IMAP client for watching the relay inbox
"""
import email
import imaplib
import logging
import re
import select
import socket
import time
from datetime import date, datetime
from email.header import decode_header
from email.message import Message
from email.utils import parseaddr, parsedate_to_datetime
from typing import List, Optional, Tuple

from pydantic import ValidationError

from .errors import EmailParseError, TransportError
from .models import ParsedEmail

logger = logging.getLogger(__name__)

_UID_RE = re.compile(rb'UID\s+(\d+)')
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def imap_date(day: date) -> str:
    """Format a date for SEARCH SINCE, independent of the process locale"""
    return f"{day.day:02d}-{_MONTHS[day.month - 1]}-{day.year}"


class IMAPClient:
    """Client for an IMAP inbox over TLS"""

    def __init__(
        self,
        imap_server: str,
        email_address: str,
        password: str,
        port: int = 993,
        timeout: float = 30.0
    ):
        self.imap_server = imap_server
        self.email_address = email_address
        self.password = password
        self.port = port
        self.timeout = timeout
        self.connection: Optional[imaplib.IMAP4_SSL] = None
        self.uid_validity: Optional[int] = None
        self._idle_tag = 0

    @property
    def is_connected(self) -> bool:
        return self.connection is not None

    def connect(self) -> None:
        """Establish connection to IMAP server"""
        try:
            logger.info(f"Connecting to {self.imap_server}:{self.port}")
            self.connection = imaplib.IMAP4_SSL(self.imap_server, self.port, timeout=self.timeout)
            self.connection.login(self.email_address, self.password)
            logger.info("Successfully connected to IMAP server")
        except (imaplib.IMAP4.error, OSError) as e:
            logger.error(f"Failed to connect to IMAP server: {e}")
            self.connection = None
            raise TransportError(f"IMAP connect failed: {e}") from e

    def disconnect(self) -> None:
        """Close connection to IMAP server"""
        if self.connection:
            try:
                self.connection.logout()
                logger.info("Disconnected from IMAP server")
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
            finally:
                self.connection = None

    def _require_connection(self) -> imaplib.IMAP4_SSL:
        if not self.connection:
            raise TransportError("Not connected to IMAP server")
        return self.connection

    def select_mailbox(self, mailbox: str = "INBOX") -> int:
        """
        Open a mailbox read-write so messages can be flagged \\Seen

        Returns:
            Number of messages in the mailbox
        """
        connection = self._require_connection()

        status, data = connection.select(mailbox, readonly=False)
        if status != "OK":
            raise TransportError(f"Failed to select mailbox {mailbox}")

        _, validity = connection.response("UIDVALIDITY")
        try:
            self.uid_validity = int(validity[0]) if validity and validity[0] else None
        except (TypeError, ValueError):
            self.uid_validity = None

        total = int(data[0]) if data and data[0] else 0
        logger.info(f"Selected mailbox {mailbox}: {total} messages (UIDVALIDITY {self.uid_validity})")
        return total

    def supports_idle(self) -> bool:
        connection = self._require_connection()
        return "IDLE" in connection.capabilities

    def search_unseen(self, since: Optional[date] = None) -> List[int]:
        """
        Search for unseen messages, optionally bounded by date

        Returns:
            List of message UIDs, oldest first
        """
        connection = self._require_connection()

        criteria = ["UNSEEN"]
        if since:
            criteria.extend(["SINCE", imap_date(since)])

        status, data = connection.uid("SEARCH", None, *criteria)
        if status != "OK":
            raise TransportError(f"UID SEARCH {' '.join(criteria)} failed")

        uids = [int(uid) for uid in data[0].split()] if data and data[0] else []
        logger.debug(f"Search {' '.join(criteria)} returned {len(uids)} messages")
        return uids

    def fetch_message(self, uid: int) -> ParsedEmail:
        """Fetch and parse a single message by UID without setting \\Seen"""
        connection = self._require_connection()

        status, msg_data = connection.uid("FETCH", str(uid), "(BODY.PEEK[])")
        if status != "OK":
            raise TransportError(f"Failed to fetch message {uid}")

        raw_email = None
        for part in msg_data or []:
            if isinstance(part, tuple) and len(part) >= 2:
                match = _UID_RE.search(part[0])
                if match and int(match.group(1)) != uid:
                    continue
                raw_email = part[1]
                break

        if raw_email is None:
            raise EmailParseError(f"Message {uid} returned no body")

        try:
            email_message = email.message_from_bytes(raw_email)
            return self.parse_email(email_message, uid=uid, uid_validity=self.uid_validity)
        except (ValidationError, ValueError, TypeError, LookupError) as e:
            raise EmailParseError(f"Could not parse message {uid}: {e}") from e

    def mark_seen(self, uid: int) -> bool:
        """Flag a message \\Seen"""
        connection = self._require_connection()

        status, _ = connection.uid("STORE", str(uid), "+FLAGS", "(\\Seen)")
        if status != "OK":
            logger.warning(f"Could not mark message {uid} as seen")
            return False

        logger.debug(f"Marked message {uid} as seen")
        return True

    def wait_for_activity(self, timeout: float) -> bool:
        """
        Block in IMAP IDLE until the server reports new mail or timeout expires

        Returns:
            True if the server pushed an EXISTS/RECENT notification
        """
        connection = self._require_connection()

        self._idle_tag += 1
        tag = f"RLY{self._idle_tag}".encode()
        connection.send(tag + b" IDLE\r\n")

        line = connection.readline()
        if not line.startswith(b"+"):
            raise TransportError(f"Server refused IDLE: {line!r}")

        activity = False
        deadline = time.monotonic() + timeout
        sock = connection.socket()
        try:
            while not activity:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                ready, _, _ = select.select([sock], [], [], remaining)
                if not ready:
                    break
                line = connection.readline()
                if not line:
                    raise TransportError("Connection closed during IDLE")
                logger.debug(f"IDLE: {line.strip()!r}")
                activity = b"EXISTS" in line or b"RECENT" in line
        finally:
            connection.send(b"DONE\r\n")

        # Drain until the IDLE command completes
        while True:
            line = connection.readline()
            if not line:
                raise TransportError("Connection closed while ending IDLE")
            if line.startswith(tag):
                if b" OK" not in line:
                    raise TransportError(f"IDLE ended with {line.strip()!r}")
                break
            if b"EXISTS" in line or b"RECENT" in line:
                activity = True

        return activity

    def interrupt(self) -> None:
        """Wake a wait_for_activity call blocked in another thread"""
        if self.connection:
            try:
                self.connection.socket().shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug(f"Socket shutdown during interrupt: {e}")

    def parse_email(
        self,
        email_message: Message,
        uid: Optional[int] = None,
        uid_validity: Optional[int] = None
    ) -> ParsedEmail:
        """Parse email.message.Message into our ParsedEmail model"""

        message_id = (email_message.get("Message-ID") or "").strip()
        subject = self._decode_header(email_message.get("Subject", ""))

        from_header = self._decode_header(email_message.get("From", ""))
        _, from_address = parseaddr(from_header)

        date_header = email_message.get("Date")
        try:
            received_at = parsedate_to_datetime(date_header) if date_header else datetime.now()
        except (TypeError, ValueError):
            received_at = datetime.now()

        body_text, body_html = self._extract_body(email_message)

        return ParsedEmail(
            uid=uid,
            uid_validity=uid_validity,
            message_id=message_id,
            subject=subject,
            from_address=from_address,
            body_text=body_text,
            body_html=body_html,
            received_at=received_at
        )

    def _decode_header(self, header: str) -> str:
        """Decode email header that might be encoded"""
        if not header:
            return ""

        decoded_parts = []
        for part, encoding in decode_header(header):
            if isinstance(part, bytes):
                try:
                    decoded_parts.append(part.decode(encoding or "utf-8", errors="replace"))
                except LookupError:
                    decoded_parts.append(part.decode("utf-8", errors="replace"))
            else:
                decoded_parts.append(part)

        return "".join(decoded_parts)

    def _decode_payload(self, part: Message) -> Optional[str]:
        payload = part.get_payload(decode=True)
        if not payload:
            return None
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            return payload.decode("utf-8", errors="replace")

    def _extract_body(self, email_message: Message) -> Tuple[Optional[str], Optional[str]]:
        """
        Extract text and HTML body from email

        Returns:
            Tuple of (text_body, html_body)
        """
        body_text = None
        body_html = None

        if email_message.is_multipart():
            for part in email_message.walk():
                content_type = part.get_content_type()
                content_disposition = str(part.get("Content-Disposition", ""))

                # Skip attachments
                if "attachment" in content_disposition:
                    continue

                decoded_payload = self._decode_payload(part)
                if decoded_payload is None:
                    continue

                if content_type == "text/plain" and not body_text:
                    body_text = decoded_payload
                elif content_type == "text/html" and not body_html:
                    body_html = decoded_payload
        else:
            content_type = email_message.get_content_type()
            decoded_payload = self._decode_payload(email_message)
            if content_type == "text/html":
                body_html = decoded_payload
            else:
                body_text = decoded_payload

        return body_text, body_html

    def __enter__(self):
        """Context manager entry"""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.disconnect()
