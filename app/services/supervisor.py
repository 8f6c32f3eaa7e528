"""Port to the external long-running process manager."""
import abc
import asyncio
import os
from pathlib import Path

from app.config import settings
from app.core.constants import ECOSYSTEM_FILENAME
from app.core.exceptions import SupervisorError
from app.core.logging import app_logger


class ProcessSupervisor(abc.ABC):
    """Starts and stops named, supervised processes. Both calls are idempotent."""

    @abc.abstractmethod
    async def start(self, name: str, working_dir: Path, env: dict[str, str]) -> str:
        """Register and start a process; return its supervisor name."""

    @abc.abstractmethod
    async def stop(self, name: str) -> None:
        """Stop and deregister a process. Stopping an unknown name succeeds."""


class Pm2Supervisor(ProcessSupervisor):
    """ProcessSupervisor backed by the pm2 command line."""

    NOT_FOUND_MARKERS = ("not found", "doesn't exist")

    def __init__(
        self,
        binary: str = settings.SUPERVISOR_BINARY,
        timeout_seconds: int = settings.SUPERVISOR_COMMAND_TIMEOUT_SECONDS,
    ):
        """
        Initialize the pm2 supervisor.

        Args:
            binary: pm2 executable name or path
            timeout_seconds: Upper bound for a single pm2 command
        """
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    async def _run(
        self,
        *args: str,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> tuple[int, str]:
        """Run one pm2 command; return (exit code, combined output)."""
        process_env = {**os.environ, **env} if env else None
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                cwd=str(cwd) if cwd else None,
                env=process_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise SupervisorError(f"Could not execute {self.binary}: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), self.timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise SupervisorError(
                f"{self.binary} {' '.join(args)} timed out after {self.timeout_seconds}s"
            )
        except asyncio.CancelledError:
            # The caller gave up; do not leave pm2 registering a process behind it
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        return proc.returncode, stdout.decode(errors="replace").strip()

    async def _save(self) -> None:
        code, output = await self._run("save")
        if code != 0:
            app_logger.warning(f"{self.binary} save failed ({code}): {output}")

    async def start(self, name: str, working_dir: Path, env: dict[str, str]) -> str:
        ecosystem = Path(working_dir) / ECOSYSTEM_FILENAME
        code, output = await self._run(
            "start", str(ecosystem), "--only", name, cwd=working_dir, env=env
        )
        if code != 0:
            raise SupervisorError(f"{self.binary} start {name} failed ({code}): {output}")
        await self._save()
        app_logger.info(f"Supervisor started {name} from {working_dir}")
        return name

    async def stop(self, name: str) -> None:
        code, output = await self._run("delete", name)
        if code != 0:
            if any(marker in output.lower() for marker in self.NOT_FOUND_MARKERS):
                app_logger.info(f"Supervisor has no process named {name}; nothing to stop")
                return
            raise SupervisorError(f"{self.binary} delete {name} failed ({code}): {output}")
        await self._save()
        app_logger.info(f"Supervisor stopped {name}")
