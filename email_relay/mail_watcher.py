"""
Mailbox Watcher

Keeps an IMAP connection open, picks up unseen replies on IDLE pushes or
the periodic poll, and hands each parsed message to the relay.
"""
import asyncio
import hashlib
import imaplib
import logging
from datetime import date, timedelta
from typing import Awaitable, Callable, List, Optional

from .errors import EmailParseError, TransportError
from .imap_client import IMAPClient
from .models import Disposition, MessageOutcome, ParsedEmail

logger = logging.getLogger(__name__)

MessageHandler = Callable[[ParsedEmail], Awaitable[MessageOutcome]]

TRANSPORT_ERRORS = (TransportError, imaplib.IMAP4.error, OSError)


def dedup_key(message: ParsedEmail) -> str:
    """Canonical processed-marker key for a message"""
    if message.uid is not None:
        return f"uid:{message.uid_validity or 0}:{message.uid}"
    if message.message_id:
        return f"mid:{message.message_id}"
    digest = hashlib.sha1(f"{message.subject}|{message.received_at.isoformat()}".encode("utf-8")).hexdigest()
    return f"hash:{digest}"


class MailboxWatcher:
    """Watches INBOX for command replies"""

    def __init__(
        self,
        client: IMAPClient,
        handler: MessageHandler,
        poll_interval: float = 120.0,
        reconnect_delay: float = 10.0,
        lookback_days: int = 1
    ):
        """
        Initialize the watcher.

        Args:
            client: IMAP transport; its blocking calls run in worker threads
            handler: Coroutine deciding what happens to each message
            poll_interval: Upper bound on the wait between checks
            reconnect_delay: Pause before reconnecting after a transport error
            lookback_days: Date window for searches after the first one
        """
        self.client = client
        self.handler = handler
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.lookback_days = lookback_days
        self.idle_supported = False
        self.last_check_at: Optional[float] = None
        self._io_lock = asyncio.Lock()
        self._stopping = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected

    async def _call(self, func, *args):
        # One connection, one command at a time
        async with self._io_lock:
            return await asyncio.to_thread(func, *args)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def connect(self) -> None:
        await self._call(self.client.connect)
        await self._call(self.client.select_mailbox, "INBOX")
        self.idle_supported = await self._call(self.client.supports_idle)
        logger.info(f"Mailbox ready ({'IDLE push' if self.idle_supported else 'polling'} mode)")

    async def close(self) -> None:
        await self._call(self.client.disconnect)

    async def check_mail(self, initial: bool = False) -> List[MessageOutcome]:
        """Search for unseen messages and process them"""
        since = None if initial else date.today() - timedelta(days=self.lookback_days)
        uids = await self._call(self.client.search_unseen, since)
        self.last_check_at = asyncio.get_running_loop().time()

        if not uids:
            logger.debug("No unseen messages")
            return []

        logger.info(f"Found {len(uids)} unseen messages")
        return await self.process_batch(uids)

    async def process_batch(self, uids: List[int]) -> List[MessageOutcome]:
        """
        Fetch a batch of messages, handle them concurrently, then flag them

        Returns:
            One outcome per message that could be parsed
        """
        messages: List[ParsedEmail] = []
        for uid in uids:
            try:
                messages.append(await self._call(self.client.fetch_message, uid))
            except EmailParseError as e:
                logger.error(f"Skipping message {uid}: {e}")

        outcomes = await asyncio.gather(*(self._handle(message) for message in messages))

        for outcome in outcomes:
            if outcome.uid is not None and outcome.disposition.marks_seen:
                await self._call(self.client.mark_seen, outcome.uid)

        return list(outcomes)

    async def _handle(self, message: ParsedEmail) -> MessageOutcome:
        try:
            return await self.handler(message)
        except Exception as e:
            logger.error(f"Error handling message {message.uid} from {message.from_address}: {e}", exc_info=True)
            return MessageOutcome(
                disposition=Disposition.INJECTION_FAILED,
                dedup_key=dedup_key(message),
                uid=message.uid,
                detail=str(e)
            )

    async def wait_for_trigger(self) -> None:
        """Block until new mail is pushed or the poll interval elapses"""
        if self.idle_supported:
            activity = await self._call(self.client.wait_for_activity, self.poll_interval)
            logger.debug("IDLE push received" if activity else "IDLE wait timed out, polling")
        else:
            await self._sleep(self.poll_interval)

    async def run(self) -> None:
        """Main loop; transport errors reconnect after a fixed delay, forever"""
        logger.info(f"Starting mailbox watcher (poll interval: {self.poll_interval}s)")
        initial = True

        while not self._stopping.is_set():
            try:
                if not self.client.is_connected:
                    await self.connect()

                await self.check_mail(initial=initial)
                initial = False

                if self._stopping.is_set():
                    break
                await self.wait_for_trigger()

            except TRANSPORT_ERRORS as e:
                if self._stopping.is_set():
                    break
                logger.error(f"Mailbox connection error: {e}; reconnecting in {self.reconnect_delay}s")
                await self.close()
                await self._sleep(self.reconnect_delay)

            except Exception as e:
                logger.error(f"Error during mailbox check: {e}", exc_info=True)
                await self._sleep(self.reconnect_delay)

        await self.close()
        logger.info("Mailbox watcher stopped")

    def stop(self) -> None:
        self._stopping.set()
        self.client.interrupt()
