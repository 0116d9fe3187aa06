"""
Injection Engine

Tries an ordered chain of strategies, from full tmux automation down to
clipboard + notification, until one of them delivers the command.
"""
import asyncio
import logging
import shutil
from typing import List, Optional, Protocol, Sequence, Tuple

from .database import DatabaseManager
from .errors import AutomationUnavailableError, InjectionError, InjectionFailedError, SessionNotFoundError
from .models import InjectionResult, SessionRecord
from .tmux_injector import TmuxInjector

logger = logging.getLogger(__name__)

TERMINAL_KINDS = ("pty", "interactive-terminal", "tmux")

KNOWN_APPLICATIONS = ("Claude", "Claude Code", "Terminal", "iTerm2", "iTerm")

CLIPBOARD_COMMANDS: Tuple[Tuple[str, ...], ...] = (
    ("pbcopy",),
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
    ("xsel", "--clipboard", "--input"),
)


def _applescript_string(value: str) -> str:
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


def _preview(command: str, length: int = 30) -> str:
    return command if len(command) <= length else command[:length] + "..."


async def _run_process(*args: str, stdin: Optional[str] = None, timeout: float = 15.0) -> Tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE if stdin is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(stdin.encode("utf-8") if stdin is not None else None),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return -1, "", "timed out"
    return proc.returncode, stdout.decode("utf-8", errors="replace"), stderr.decode("utf-8", errors="replace")


class InjectionStrategy(Protocol):
    """One way of getting a command in front of the target program"""

    name: str

    async def attempt(self, record: SessionRecord, command: str) -> InjectionResult:
        ...


class TmuxStrategy:
    """Primary path: multiplexer-based injection with confirmation handling"""

    name = "tmux"

    def __init__(self, injector: TmuxInjector):
        self.injector = injector

    async def attempt(self, record: SessionRecord, command: str) -> InjectionResult:
        if record.target_kind not in TERMINAL_KINDS:
            raise AutomationUnavailableError(f"unsupported target kind {record.target_kind!r}")
        return await self.injector.inject(record, command)


class KeystrokeStrategy:
    """Activate a known terminal/assistant window and type the command (macOS)"""

    name = "keystroke"

    def __init__(self, applications: Sequence[str] = KNOWN_APPLICATIONS):
        self.applications = list(applications)

    def build_script(self, command: str) -> str:
        apps = ", ".join(_applescript_string(app) for app in self.applications)
        return f'''
tell application "System Events"
    set targetApps to {{{apps}}}
    set targetApp to missing value
    repeat with appName in targetApps
        if exists application process appName then
            set targetApp to application process appName
            exit repeat
        end if
    end repeat
    if targetApp is missing value then
        return "no_target"
    end if
    set frontmost of targetApp to true
    delay 0.8
    keystroke {_applescript_string(command)}
    delay 0.3
    keystroke return
    return "typed"
end tell
'''

    async def attempt(self, record: SessionRecord, command: str) -> InjectionResult:
        osascript = shutil.which("osascript")
        if not osascript:
            raise AutomationUnavailableError("osascript is not available")

        returncode, stdout, stderr = await _run_process(osascript, "-e", self.build_script(command))
        if returncode != 0:
            raise InjectionFailedError(stderr.strip() or f"osascript exited with {returncode}")

        result = stdout.strip()
        if result != "typed":
            raise InjectionFailedError(f"no target application ({result})")

        return InjectionResult(
            success=True,
            strategy=self.name,
            target="frontmost application",
            message="Command typed into the frontmost application"
        )


class ClipboardStrategy:
    """Last resort: copy to the clipboard and ask the operator to paste"""

    name = "clipboard"

    def __init__(self, counts_as_delivery: bool = True):
        self.counts_as_delivery = counts_as_delivery

    async def copy(self, text: str) -> str:
        for candidate in CLIPBOARD_COMMANDS:
            binary = shutil.which(candidate[0])
            if not binary:
                continue
            returncode, _, stderr = await _run_process(binary, *candidate[1:], stdin=text)
            if returncode == 0:
                return candidate[0]
            logger.warning(f"{candidate[0]} failed ({returncode}): {stderr.strip()}")

        raise AutomationUnavailableError("no clipboard utility available")

    async def notify(self, command: str) -> bool:
        title = "Email command copied to clipboard"
        body = "Paste it into your assistant session now (Cmd+V / Ctrl+Shift+V)"

        osascript = shutil.which("osascript")
        if osascript:
            script = (
                f"display notification {_applescript_string(body)} with title {_applescript_string(title)} "
                f"subtitle {_applescript_string(_preview(command))} sound name \"Basso\""
            )
            returncode, _, _ = await _run_process(osascript, "-e", script)
            return returncode == 0

        notify_send = shutil.which("notify-send")
        if notify_send:
            returncode, _, _ = await _run_process(notify_send, "-u", "critical", title, f"{body}\n{_preview(command)}")
            return returncode == 0

        return False

    async def attempt(self, record: SessionRecord, command: str) -> InjectionResult:
        tool = await self.copy(command)
        if await self.notify(command):
            logger.info("Manual paste notification sent")
        else:
            logger.warning("Could not raise a desktop notification for the clipboard fallback")

        return InjectionResult(
            success=self.counts_as_delivery,
            strategy=self.name,
            target="clipboard",
            error=None if self.counts_as_delivery else "manual_paste_required",
            message=f"Command copied with {tool}; operator asked to paste"
        )


class InjectionEngine:
    """Runs the fallback chain, recording every delivery in the audit log"""

    def __init__(self, strategies: Sequence[InjectionStrategy], audit: Optional[DatabaseManager] = None):
        self.strategies: List[InjectionStrategy] = list(strategies)
        self.audit = audit

    def _audit(self, record: SessionRecord, command: str, result: InjectionResult) -> None:
        if not self.audit:
            return
        try:
            self.audit.log_injection(
                token=record.token,
                command=command,
                strategy=result.strategy,
                success=result.success,
                target=result.target,
                error=result.error
            )
        except Exception as e:
            logger.error(f"Failed to write injection audit entry: {e}")

    async def inject(self, record: Optional[SessionRecord], command: str) -> InjectionResult:
        """
        Deliver a command to a session.

        Returns:
            The first successful strategy's result, or a failed result
            describing the last error once every strategy has been tried

        Raises:
            SessionNotFoundError: no session record was supplied
        """
        if record is None:
            raise SessionNotFoundError("no session record for command")

        attempts: List[str] = []
        last_error: Optional[InjectionError] = None

        for strategy in self.strategies:
            logger.info(f"Trying {strategy.name} injection for token {record.token}")
            try:
                result = await strategy.attempt(record, command)
            except InjectionError as e:
                logger.warning(f"{strategy.name} injection failed for token {record.token}: {e.code} {e.detail}")
                attempts.append(f"{strategy.name}:{e.code}")
                last_error = e
                continue
            except Exception as e:
                logger.error(f"Unexpected error in {strategy.name} injection: {e}", exc_info=True)
                attempts.append(f"{strategy.name}:unexpected")
                last_error = InjectionFailedError(str(e))
                continue

            attempts.append(f"{strategy.name}:{'ok' if result.success else result.error}")
            result.attempts = attempts
            self._audit(record, command, result)

            if result.success:
                logger.info(f"Command for token {record.token} delivered via {strategy.name}")
            else:
                logger.warning(f"{strategy.name} ran without delivering ({result.error}), stopping chain")
            return result

        result = InjectionResult(
            success=False,
            strategy=self.strategies[-1].name if self.strategies else "none",
            target=record.tmux_session,
            error=last_error.code if last_error else "injection_failed",
            message=last_error.detail if last_error else "no injection strategies configured",
            attempts=attempts
        )
        logger.error(f"All injection methods failed for token {record.token}: {', '.join(attempts)}")
        self._audit(record, command, result)
        return result
