"""
Tmux Command Injector

Delivers a command into a live tmux session and drives the target program
through any confirmation prompts it raises.
"""
import asyncio
import logging
from typing import List, Optional

from .errors import AutomationUnavailableError, InjectionFailedError, LaunchFailedError
from .models import InjectionResult, SessionRecord
from .prompts import CONFIRMATION_ACTIONS, TERMINAL_KINDS, PromptKind, classify_screen
from .tmux_client import TmuxClient, TmuxCommandError

logger = logging.getLogger(__name__)


class TmuxInjector:
    """Injects commands into tmux sessions"""

    def __init__(
        self,
        client: TmuxClient,
        launch_command: str = "claude",
        fallback_launch_command: Optional[str] = None,
        warmup: float = 3.0,
        step_delay: float = 0.2,
        max_attempts: int = 8,
        interval: float = 1.5,
        settle_delay: float = 2.0
    ):
        """
        Initialize the injector.

        Args:
            client: tmux control surface
            launch_command: Command used to start the target program
            fallback_launch_command: Fully-qualified command tried if the first launch fails
            warmup: Seconds to wait for a new session to initialize
            step_delay: Pause between clear, text and submit
            max_attempts: Confirmation checks per injection
            interval: Seconds between confirmation checks
            settle_delay: Extra wait after answering a prompt or seeing nothing
        """
        self.client = client
        self.launch_command = launch_command
        self.fallback_launch_command = fallback_launch_command
        self.warmup = warmup
        self.step_delay = step_delay
        self.max_attempts = max_attempts
        self.interval = interval
        self.settle_delay = settle_delay

    async def _launch(self, record: SessionRecord, command: str) -> bool:
        name = record.tmux_session
        try:
            await self.client.new_session(name, command, record.working_dir)
        except (TmuxCommandError, OSError) as e:
            logger.warning(f"Failed to create tmux session {name} with {command!r}: {e}")
            return False

        # Wait for the program to initialize, then make sure it did not exit
        await asyncio.sleep(self.warmup)
        if not await self.client.has_session(name):
            logger.warning(f"tmux session {name} exited right after launching {command!r}")
            return False
        return True

    async def create_session(self, record: SessionRecord) -> None:
        """Create the target session, trying the fallback launch command once"""
        if await self._launch(record, self.launch_command):
            logger.info(f"Tmux session {record.tmux_session} created")
            return

        if self.fallback_launch_command and self.fallback_launch_command != self.launch_command:
            logger.info(f"Retrying session creation with {self.fallback_launch_command}")
            if await self._launch(record, self.fallback_launch_command):
                logger.info(f"Tmux session {record.tmux_session} created (fallback command)")
                return

        raise LaunchFailedError(f"could not start {self.launch_command!r} in tmux session {record.tmux_session}")

    async def restart_session(self, record: SessionRecord) -> None:
        logger.info(f"Restarting tmux session {record.tmux_session}")
        await self.client.kill_session(record.tmux_session)
        await asyncio.sleep(self.step_delay)
        await self.create_session(record)

    async def send_command(self, name: str, command: str) -> None:
        """Clear the input line, type the command, then submit"""
        # A literal newline would submit early
        text = " ".join(line.strip() for line in command.splitlines() if line.strip())

        await self.client.send_keys(name, "C-u")
        await asyncio.sleep(self.step_delay)
        await self.client.send_literal(name, text)
        await asyncio.sleep(self.step_delay)
        await self.client.send_keys(name, "C-m")
        logger.info(f"Command sent to {name} in 3 steps")

    async def _answer(self, name: str, kind: PromptKind) -> None:
        keys = CONFIRMATION_ACTIONS[kind]
        for i, key in enumerate(keys):
            if i:
                await asyncio.sleep(self.step_delay)
            try:
                await self.client.send_keys(name, key)
            except TmuxCommandError as e:
                logger.warning(f"Failed to send {key!r} for {kind.value} prompt: {e}")
                return
        logger.info(f"Answered {kind.value} prompt with {'+'.join(keys)}")

    async def handle_confirmations(self, name: str) -> List[PromptKind]:
        """
        Watch the pane and answer confirmation prompts.

        Returns:
            The sequence of screen classifications seen, for logging and tests
        """
        seen: List[PromptKind] = []

        for attempt in range(1, self.max_attempts + 1):
            await asyncio.sleep(self.interval)

            try:
                output = await self.client.capture_pane(name)
            except (TmuxCommandError, OSError) as e:
                logger.warning(f"Could not capture {name}: {e}")
                break

            kind = classify_screen(output)
            seen.append(kind)
            logger.debug(f"Confirmation check {attempt} on {name}: {kind.value}")

            if kind in CONFIRMATION_ACTIONS:
                await self._answer(name, kind)
                if kind is PromptKind.PROCEED_MULTI_OPTION:
                    await asyncio.sleep(self.settle_delay)
                continue

            if kind is PromptKind.IN_PROGRESS:
                continue

            if kind in TERMINAL_KINDS:
                if kind is PromptKind.ERROR_SEEN:
                    logger.warning(f"Error visible in {name}, stopping confirmation handling")
                else:
                    logger.info(f"New input prompt in {name}, command likely accepted")
                break

            if attempt < self.max_attempts:
                await asyncio.sleep(self.settle_delay)

        logger.info(f"Confirmation handling for {name} finished after {len(seen)} checks")
        return seen

    async def inject(self, record: SessionRecord, command: str) -> InjectionResult:
        """
        Run the full injection workflow for one command.

        Raises:
            AutomationUnavailableError: tmux is not installed
            LaunchFailedError: the session could not be created
            InjectionFailedError: the clear/text/submit steps did not complete
        """
        if not self.client.is_available():
            raise AutomationUnavailableError("tmux is not installed")

        name = record.tmux_session
        logger.info(f"Starting tmux injection for token {record.token} into {name}")

        try:
            exists = await self.client.has_session(name)
        except OSError as e:
            raise AutomationUnavailableError(str(e))

        if not exists:
            logger.warning(f"Tmux session {name} not found, creating it")
            await self.create_session(record)

        try:
            await self.send_command(name, command)
        except TmuxCommandError as e:
            logger.warning(f"Sending to {name} failed ({e}), restarting session")
            await self.restart_session(record)
            try:
                await self.send_command(name, command)
            except TmuxCommandError as retry_error:
                raise InjectionFailedError(str(retry_error))

        seen = await self.handle_confirmations(name)

        return InjectionResult(
            success=True,
            strategy="tmux",
            target=name,
            message=f"Command injected into tmux session {name}",
            prompts_seen=[kind.value for kind in seen]
        )
