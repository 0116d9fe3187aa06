"""
Relay Orchestrator

Wires the mailbox watcher, stores, command parser and injection engine
together and decides what happens to every reply email.
"""
import asyncio
import errno
import fcntl
import logging
import os
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from dotenv import find_dotenv, load_dotenv

from .command_parser import CommandParser
from .config import RelaySettings
from .database import DatabaseManager
from .errors import RelayAlreadyRunningError
from .imap_client import IMAPClient
from .injector import ClipboardStrategy, InjectionEngine, KeystrokeStrategy, TmuxStrategy
from .mail_watcher import MailboxWatcher, dedup_key
from .models import (
    Disposition,
    InjectionResult,
    MessageOutcome,
    ParsedEmail,
    RejectionReason,
    RelayEvent,
    SenderFilter,
    SessionRecord,
)
from .notifier_client import EventDispatcher, LoggingEventSink, WebhookEventSink
from .session_registry import SessionRegistry
from .state_manager import ProcessedMessageStore
from .tmux_client import TmuxClient
from .tmux_injector import TmuxInjector

logger = logging.getLogger(__name__)


def _preview(command: Optional[str], length: int = 50) -> Optional[str]:
    if command is None:
        return None
    return command if len(command) <= length else command[:length] + "..."


class InstanceLock:
    """PID lock file held with flock for the lifetime of the relay"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._handle = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            handle.seek(0)
            holder = handle.read().strip() or "unknown"
            handle.close()
            if e.errno in (errno.EACCES, errno.EAGAIN):
                raise RelayAlreadyRunningError(f"relay already running (pid {holder}, lock {self.path})")
            raise

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        logger.debug(f"Acquired instance lock {self.path}")

    def release(self) -> None:
        """Unlock and clear the pid, leaving the file in place"""
        if self._handle is None:
            return
        try:
            self._handle.seek(0)
            self._handle.truncate()
            self._handle.flush()
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None


class CommandRelay:
    """Turns reply emails into commands for live terminal sessions"""

    def __init__(
        self,
        settings: RelaySettings,
        client: Optional[IMAPClient] = None,
        registry: Optional[SessionRegistry] = None,
        store: Optional[ProcessedMessageStore] = None,
        engine: Optional[InjectionEngine] = None,
        events: Optional[EventDispatcher] = None,
        audit: Optional[DatabaseManager] = None
    ):
        """
        Build the relay from settings; any collaborator can be passed in
        ready-made instead.
        """
        self.settings = settings
        self.sender_filter = SenderFilter(allowed_senders=settings.allowed_senders)
        self.parser = CommandParser(settings.product_names)

        self.registry = registry if registry is not None else SessionRegistry(
            str(settings.session_map_path),
            default_command_limit=settings.default_command_limit
        )
        self.store = store if store is not None else ProcessedMessageStore(
            str(settings.processed_state_path),
            retention_days=settings.processed_retention_days
        )
        self.audit = audit
        self.engine = engine if engine is not None else self._build_engine()

        if events is None:
            sinks = [LoggingEventSink()]
            if settings.notify_webhook_url:
                sinks.append(WebhookEventSink(settings.notify_webhook_url))
            events = EventDispatcher(sinks)
        self.events = events

        self.client = client if client is not None else IMAPClient(
            settings.imap_server,
            settings.email_address or "",
            settings.email_password or "",
            port=settings.imap_port,
            timeout=settings.imap_timeout
        )
        self.watcher = MailboxWatcher(
            self.client,
            self.handle_message,
            poll_interval=settings.poll_interval,
            reconnect_delay=settings.reconnect_delay,
            lookback_days=settings.search_lookback_days
        )

        self.instance_lock = InstanceLock(settings.lock_file)
        self._token_locks: Dict[str, asyncio.Lock] = {}
        self._token_lock_users: Dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None

    def _build_engine(self) -> InjectionEngine:
        injector = TmuxInjector(
            TmuxClient(self.settings.tmux_bin),
            launch_command=self.settings.launch_command,
            fallback_launch_command=self.settings.fallback_launch_command,
            warmup=self.settings.session_warmup,
            step_delay=self.settings.step_delay,
            max_attempts=self.settings.confirm_max_attempts,
            interval=self.settings.confirm_interval,
            settle_delay=self.settings.confirm_settle_delay
        )
        strategies = [
            TmuxStrategy(injector),
            KeystrokeStrategy(),
            ClipboardStrategy(counts_as_delivery=self.settings.clipboard_is_delivery),
        ]
        return InjectionEngine(strategies, audit=self.audit)

    @asynccontextmanager
    async def token_lock(self, token: str):
        """Serialize work on one token; the lock is dropped once nobody holds or awaits it"""
        key = token.upper()
        lock = self._token_locks.setdefault(key, asyncio.Lock())
        self._token_lock_users[key] = self._token_lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._token_lock_users[key] -= 1
            if not self._token_lock_users[key]:
                del self._token_lock_users[key]
                del self._token_locks[key]

    async def _emit(self, event_type: str, **fields) -> None:
        await self.events.emit(RelayEvent(event_type=event_type, **fields))

    async def handle_message(self, message: ParsedEmail) -> MessageOutcome:
        """
        Decide the fate of one reply email.

        Returns:
            MessageOutcome whose disposition tells the watcher whether to
            flag the message \\Seen
        """
        key = dedup_key(message)

        def outcome(disposition: Disposition, **fields) -> MessageOutcome:
            return MessageOutcome(disposition=disposition, dedup_key=key, uid=message.uid, **fields)

        if not self.sender_filter.is_allowed(message.from_address):
            logger.warning(f"Ignoring email from unauthorized sender {message.from_address}")
            return outcome(Disposition.NOT_ALLOWED)

        token = self.parser.extract_token(message.subject)
        if not token:
            logger.debug(f"No session token in subject: {message.subject}")
            return outcome(Disposition.NO_TOKEN)

        if self.store.is_processed(key):
            logger.debug(f"Skipping already processed message {key}")
            return outcome(Disposition.DUPLICATE, token=token)

        parsed = self.parser.parse(message.subject, message.body_text, message.body_html)

        if parsed.rejection is RejectionReason.NO_COMMAND:
            logger.warning(f"No command found in reply for token {token}")
            return outcome(Disposition.NO_COMMAND, token=token)

        if parsed.rejection is RejectionReason.UNSAFE_COMMAND:
            self.store.mark_processed(key, status="rejected_unsafe", token=token, error_message="unsafe_command")
            await self._emit(
                "command_rejected",
                token=token,
                command_preview=_preview(parsed.command),
                reason="unsafe_command"
            )
            return outcome(Disposition.UNSAFE, token=token, command=parsed.command, detail="unsafe_command")

        logger.info(f"Command for token {token} from {message.from_address}: {_preview(parsed.command)}")

        async with self.token_lock(token):
            record = self.registry.resolve(token)
            if record is None:
                return outcome(Disposition.SESSION_UNAVAILABLE, token=token, command=parsed.command)

            result = await self.dispatch(record, parsed.command)

        if not result.success:
            attempts = self.store.record_failure(key)
            if attempts < self.settings.max_injection_attempts:
                logger.warning(
                    f"Injection for {key} failed ({attempts}/{self.settings.max_injection_attempts}), "
                    f"will retry next cycle"
                )
                return outcome(
                    Disposition.INJECTION_FAILED,
                    token=token,
                    command=parsed.command,
                    detail=result.error
                )

            logger.error(f"Giving up on {key} after {attempts} failed injections")
            self.store.mark_processed(key, status="failed", token=token, error_message=result.error)
            await self._emit(
                "injection_abandoned",
                token=token,
                target=result.target,
                strategy=result.strategy,
                command_preview=_preview(parsed.command),
                reason=result.error
            )
            return outcome(Disposition.ABANDONED, token=token, command=parsed.command, detail=result.error)

        self.store.mark_processed(key, status="injected", token=token)
        return outcome(Disposition.INJECTED, token=token, command=parsed.command, detail=result.strategy)

    async def dispatch(self, record: SessionRecord, command: str) -> InjectionResult:
        """Inject a command and record the outcome"""
        result = await self.engine.inject(record, command)

        if result.success:
            # The command is already typed; a bookkeeping failure must not cause a resend
            try:
                self.registry.record_command(record.token)
            except OSError as e:
                logger.error(f"Could not update command count for session {record.token}: {e}")

            await self._emit(
                "command_injected",
                token=record.token,
                target=result.target,
                strategy=result.strategy,
                command_preview=_preview(command)
            )
        else:
            await self._emit(
                "injection_failed",
                token=record.token,
                target=result.target,
                strategy=result.strategy,
                command_preview=_preview(command),
                reason=result.error
            )

        return result

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Take the instance lock and start watching the mailbox"""
        self.instance_lock.acquire()
        logger.info(f"Email command relay starting for {self.settings.email_address}")
        logger.info(f"  Allowed senders: {self.settings.allowed_senders}")
        logger.info(f"  Session map: {self.settings.session_map_path}")
        logger.info(f"  Processed markers: {len(self.store)}")
        self._task = asyncio.create_task(self.watcher.run())

    async def stop(self) -> None:
        """Stop the watcher, close the mailbox and flush the stores"""
        logger.info("Stopping email command relay")
        self.watcher.stop()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Watcher exited with error: {e}", exc_info=True)
            self._task = None

        self.store.flush()
        await self.events.close()
        self.instance_lock.release()
        logger.info("Email command relay stopped")

    async def run_forever(self) -> None:
        """Run standalone until SIGINT or SIGTERM"""
        loop = asyncio.get_running_loop()
        stop_requested = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_requested.set)

        try:
            await self.start()
            try:
                await stop_requested.wait()
            finally:
                await self.stop()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)


def main() -> None:
    """Run the relay without the HTTP surface"""
    load_dotenv(find_dotenv(usecwd=True))
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    settings = RelaySettings.from_env()
    settings.validate_credentials()

    db_manager = DatabaseManager(settings.database_url)
    try:
        asyncio.run(CommandRelay(settings, audit=db_manager).run_forever())
    finally:
        db_manager.close()


if __name__ == "__main__":
    main()
