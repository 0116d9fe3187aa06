"""
Async client for the tmux command-line control surface
"""
import asyncio
import logging
import os
import shlex
import shutil
from pathlib import Path
from typing import Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

_TMUX_BIN_CANDIDATES = (
    "/opt/homebrew/bin/tmux",
    "/usr/local/bin/tmux",
    "/usr/bin/tmux",
)


class TmuxCommandError(Exception):
    """A tmux invocation exited with a non-zero status"""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str):
        super().__init__(f"tmux {' '.join(args)} failed ({returncode}): {stderr.strip()}")
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr


def resolve_tmux_bin(override: Optional[str] = None) -> Optional[str]:
    """Locate the tmux binary, or None if it is not installed"""
    if override:
        return override

    discovered = shutil.which("tmux")
    if discovered:
        return discovered

    for candidate in _TMUX_BIN_CANDIDATES:
        if Path(candidate).exists() and os.access(candidate, os.X_OK):
            return candidate
    return None


class TmuxClient:
    """Thin wrapper over tmux subcommands used for injection"""

    def __init__(self, tmux_bin: Optional[str] = None, timeout: float = 10.0):
        self.tmux_bin = resolve_tmux_bin(tmux_bin)
        self.timeout = timeout

    def is_available(self) -> bool:
        return self.tmux_bin is not None

    async def _run(self, *args: str) -> Tuple[int, str, str]:
        if not self.tmux_bin:
            raise FileNotFoundError("tmux is not installed")

        proc = await asyncio.create_subprocess_exec(
            self.tmux_bin, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TmuxCommandError(args, -1, "timed out")

        return proc.returncode, stdout.decode("utf-8", errors="replace"), stderr.decode("utf-8", errors="replace")

    async def _check(self, *args: str) -> str:
        returncode, stdout, stderr = await self._run(*args)
        if returncode != 0:
            raise TmuxCommandError(args, returncode, stderr)
        return stdout

    async def has_session(self, name: str) -> bool:
        returncode, _, _ = await self._run("has-session", "-t", name)
        return returncode == 0

    async def new_session(self, name: str, command: str, cwd: Optional[str] = None) -> None:
        """Start a detached session running command"""
        args = ["new-session", "-d", "-s", name]
        if cwd:
            args.extend(["-c", cwd])
        args.extend(shlex.split(command))
        logger.info(f"Creating tmux session {name}: {command}")
        await self._check(*args)

    async def kill_session(self, name: str) -> None:
        returncode, _, stderr = await self._run("kill-session", "-t", name)
        if returncode != 0:
            logger.debug(f"kill-session {name} returned {returncode}: {stderr.strip()}")

    async def send_literal(self, name: str, text: str) -> None:
        """Type text into the pane without interpreting key names"""
        await self._check("send-keys", "-t", name, "-l", text)

    async def send_keys(self, name: str, *keys: str) -> None:
        """Send key names such as C-u, C-m or Enter"""
        await self._check("send-keys", "-t", name, *keys)

    async def capture_pane(self, name: str) -> str:
        """Return the visible pane text"""
        return await self._check("capture-pane", "-t", name, "-p")
