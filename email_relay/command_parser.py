"""
Email Command Parser

Extracts the session token and a clean command from a reply email.
"""
import logging
import re
from typing import Iterable, List, Optional, Pattern

from bs4 import BeautifulSoup

from .models import ParsedCommand, RejectionReason

logger = logging.getLogger(__name__)

MAX_COMMAND_LENGTH = 8192


class CommandParser:
    """Parse reply emails into (token, command)"""

    TOKEN_CHARS = r'([A-Za-z0-9_-]+)'

    # Start of the quoted original message; everything from here on is dropped
    BOUNDARY_PATTERNS = [
        r'-{2,}\s*Original Message\s*-{2,}',
        r'^\s*On\b.*\bwrote:',
        r'^\s*在.*写道\s*[:：]',
        r'于.*写道\s*[:：]',
        r'^\s*>',
        r'Session ID\s*:',
        r'会话ID\s*[:：]',
        r'^\s*Token\s*:',
        r'通知系统',
        r'^\s*From:.*@',
        r'^\s*To:.*@',
        r'^\s*Subject:',
        r'^\s*Sent:',
        r'^\s*Date:',
        r'^_{10,}\s*$',
    ]

    SIGNATURE_PATTERNS = [
        r'^--\s*$',
        r'^\s*Sent from\b',
        r'^\s*Get Outlook for\b',
        r'发自我的',
        r'^\s*Best regards',
        r'此致敬礼',
    ]

    UNSAFE_PATTERNS = [
        r'\brm\s+(-[a-zA-Z]*r[a-zA-Z]*f|-[a-zA-Z]*f[a-zA-Z]*r)\b',
        r'\bsudo\s+',
        r'\bsu\s+(-|root)(\s|$)',
        r'\bchmod\s+(-R\s+)?777\b',
        r'\bmkfs(\.\w+)?\b',
        r'\bdd\s+.*\bof=/dev/',
        r'>\s*/dev/(sd|hd|nvme|disk)\w*',
        r':\(\)\s*\{\s*:\|:&\s*\};:',
        r'\b(curl|wget)\b.*\|\s*(ba|z)?sh\b',
    ]

    def __init__(self, product_names: Iterable[str] = ("TaskPing", "Claude-Code-Remote")):
        self.product_names = [name for name in product_names if name]
        self.token_patterns = self._build_token_patterns(self.product_names)
        self.boundary_patterns = [re.compile(p, re.IGNORECASE) for p in self.BOUNDARY_PATTERNS]
        self.signature_patterns = [re.compile(p, re.IGNORECASE) for p in self.SIGNATURE_PATTERNS]
        self.unsafe_patterns = [re.compile(p, re.IGNORECASE) for p in self.UNSAFE_PATTERNS]

    def _build_token_patterns(self, product_names: List[str]) -> List[Pattern]:
        patterns = []
        for name in product_names:
            product = re.escape(name)
            patterns.extend([
                re.compile(rf'\[{product}\s+#{self.TOKEN_CHARS}\]', re.IGNORECASE),
                re.compile(rf'\[{product}\s+{self.TOKEN_CHARS}\]', re.IGNORECASE),
                re.compile(rf'{product}:\s*{self.TOKEN_CHARS}', re.IGNORECASE),
            ])
        return patterns

    def extract_token(self, subject: Optional[str]) -> Optional[str]:
        """
        Find the session token in a subject line.

        Args:
            subject: Subject, optionally prefixed with Re:/Fwd:

        Returns:
            Upper-cased token, or None if no marker is present
        """
        if not subject:
            return None

        for pattern in self.token_patterns:
            match = pattern.search(subject)
            if match:
                return match.group(1).upper()
        return None

    def html_to_text(self, html: str) -> str:
        """Convert an HTML body to text, dropping quoted blocks"""
        soup = BeautifulSoup(html, 'html.parser')

        for element in soup(["script", "style", "blockquote"]):
            element.decompose()
        for element in soup.select("div.gmail_quote, div.gmail_extra, div#appendonsend, div.yahoo_quoted"):
            element.decompose()

        for br in soup.find_all("br"):
            br.replace_with("\n")

        return soup.get_text("\n")

    def _is_boundary(self, line: str) -> bool:
        return any(p.search(line) for p in self.boundary_patterns)

    def _is_signature(self, line: str) -> bool:
        return any(p.search(line) for p in self.signature_patterns)

    def clean_body(self, text: Optional[str]) -> str:
        """
        Strip quoted history and signatures from a reply body.

        Returns:
            The reply text (possibly empty), capped to MAX_COMMAND_LENGTH
        """
        if not text:
            return ""

        kept = []
        for line in text.splitlines():
            if self._is_boundary(line) or self._is_signature(line):
                break
            if line.strip():
                kept.append(line.rstrip())

        cleaned = "\n".join(kept).strip()
        return cleaned[:MAX_COMMAND_LENGTH].strip()

    def deduplicate(self, command: str) -> str:
        """
        Collapse a command that is an exact repetition of a shorter prefix.

        Some mail clients echo the visible reply twice, e.g.
        "drink cola okay drink cola okay". Whitespace between the
        repetitions is tolerated; anything else leaves the input untouched.
        """
        if not command:
            return command

        length = len(command)
        for i in range(1, length // 2 + 1):
            unit = command[:i]
            if unit != unit.strip():
                continue

            rest = command[i:].lstrip()
            if not rest.startswith(unit):
                continue

            pattern = re.compile(rf'(?:{re.escape(unit)})(?:\s*{re.escape(unit)})+')
            if pattern.fullmatch(command):
                logger.debug(f"Collapsed repeated command {command!r} to {unit!r}")
                return unit

        return command

    def find_unsafe_pattern(self, command: str) -> Optional[str]:
        """Return the deny-list pattern a command matches, if any"""
        for pattern in self.unsafe_patterns:
            if pattern.search(command):
                return pattern.pattern
        return None

    def is_safe(self, command: str) -> bool:
        return self.find_unsafe_pattern(command) is None

    def parse(self, subject: Optional[str], body_text: Optional[str], body_html: Optional[str] = None) -> ParsedCommand:
        """
        Parse a reply email.

        Args:
            subject: Email subject
            body_text: Plain-text body (preferred)
            body_html: HTML body, used only when there is no plain text

        Returns:
            ParsedCommand with token and command, or a rejection reason
        """
        subject = subject or ""
        token = self.extract_token(subject)
        if not token:
            return ParsedCommand(rejection=RejectionReason.NO_TOKEN, raw_subject=subject)

        text = body_text
        if not (text and text.strip()) and body_html:
            text = self.html_to_text(body_html)

        command = self.deduplicate(self.clean_body(text))
        if not command:
            return ParsedCommand(token=token, rejection=RejectionReason.NO_COMMAND, raw_subject=subject)

        unsafe = self.find_unsafe_pattern(command)
        if unsafe:
            logger.warning(f"Command for token {token} matched deny-list pattern {unsafe}")
            return ParsedCommand(
                token=token,
                command=command,
                rejection=RejectionReason.UNSAFE_COMMAND,
                raw_subject=subject
            )

        return ParsedCommand(token=token, command=command, raw_subject=subject)
