"""Materializes isolated bot working trees from the shared template."""
import fnmatch
import json
import os
import shutil
import threading
from pathlib import Path
from typing import Iterable

from app.config import settings
from app.core.constants import (
    ECOSYSTEM_FILENAME,
    ENV_FILENAME,
    SHARED_DEPENDENCY_DIR,
    TEMPLATE_EXCLUDE_PATTERNS,
)
from app.core.logging import app_logger


class ProvisioningCancelled(Exception):
    """The caller gave up on this instance; the partial tree has been removed."""


def session_preview(session_secret: str, length: int = settings.SESSION_PREVIEW_LENGTH) -> str:
    """One-way display projection of a session secret (never reversible)."""
    return session_secret[:length] + "..."


class TemplateProvisioner:
    """Copies the bot template into per-instance directories and writes their env."""

    def __init__(
        self,
        template_dir: str = settings.BOT_TEMPLATE_DIR,
        bots_dir: str = settings.BOTS_DIR,
        script: str = settings.BOT_SCRIPT,
        exclude_patterns: Iterable[str] = TEMPLATE_EXCLUDE_PATTERNS,
    ):
        """
        Initialize the provisioner.

        Args:
            template_dir: Directory holding the bot template
            bots_dir: Parent directory for instance working trees
            script: Entry script the supervisor runs inside each instance
            exclude_patterns: Template-relative glob patterns never copied
        """
        self.template_dir = Path(template_dir)
        self.bots_dir = Path(bots_dir)
        self.script = script
        self.exclude_patterns = tuple(exclude_patterns)

    def instance_dir(self, handle: str) -> Path:
        return self.bots_dir / handle

    def materialize(
        self,
        template_path: Path,
        dest_path: Path,
        exclude_patterns: Iterable[str],
        cancel: threading.Event | None = None,
    ) -> None:
        """
        Copy a template tree into dest_path, skipping excluded paths.

        Patterns are matched against the path relative to the template root
        (e.g. ``*/session/*`` drops the contents of any ``session`` folder but
        keeps the folder itself) and against the bare file name (``*.db``).

        Raises:
            FileNotFoundError: If the template does not exist
            ProvisioningCancelled: If cancel is set while copying
            OSError: If copying fails
        """
        template_path = Path(template_path)
        patterns = tuple(exclude_patterns)
        if not template_path.is_dir():
            raise FileNotFoundError(f"Template directory not found: {template_path}")

        def _ignore(directory: str, names: list[str]) -> set[str]:
            # Called once per directory, so a cancelled copy stops within one level
            _check_cancelled(cancel)
            rel_dir = Path(directory).relative_to(template_path)
            ignored = set()
            for name in names:
                rel = (rel_dir / name).as_posix()
                if any(
                    fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(name, pattern)
                    for pattern in patterns
                ):
                    ignored.add(name)
            return ignored

        shutil.copytree(template_path, dest_path, ignore=_ignore, symlinks=True)

    def link_shared_dependencies(self, dest_path: Path) -> bool:
        """Symlink the template's dependency cache into the instance, if present."""
        source = self.template_dir / SHARED_DEPENDENCY_DIR
        target = Path(dest_path) / SHARED_DEPENDENCY_DIR
        if source.exists() and not target.exists():
            os.symlink(source, target, target_is_directory=True)
            return True
        return False

    def write_environment(self, dest_path: Path, process_name: str, env: dict[str, str]) -> None:
        """
        Write the instance environment twice: a dotenv file for bots that load it
        themselves, and a pm2 ecosystem file that passes the same variables directly.
        """
        dest_path = Path(dest_path)
        env_lines = [f"{key}={value}" for key, value in env.items()]
        (dest_path / ENV_FILENAME).write_text("\n".join(env_lines), encoding="utf-8")

        ecosystem = {
            "apps": [
                {
                    "name": process_name,
                    "script": self.script,
                    "cwd": str(dest_path),
                    "env": env,
                }
            ]
        }
        (dest_path / ECOSYSTEM_FILENAME).write_text(
            f"module.exports = {json.dumps(ecosystem, indent=2)};", encoding="utf-8"
        )

    def provision(
        self,
        handle: str,
        env: dict[str, str],
        cancel: threading.Event | None = None,
    ) -> Path:
        """
        Build a complete working tree for ``handle``; the supervisor process
        in its ecosystem file is named after the handle.

        Blocking; callers on the event loop should run it in a worker thread
        and set ``cancel`` to abandon it. On failure or cancellation the partial
        tree is removed here, before the error propagates, so this thread is
        always the last writer of the tree.

        Returns:
            Path to the new working tree
        """
        dest_path = self.instance_dir(handle)
        if dest_path.exists():
            raise FileExistsError(f"Working tree already exists: {dest_path}")
        try:
            self.bots_dir.mkdir(parents=True, exist_ok=True)
            self.materialize(self.template_dir, dest_path, self.exclude_patterns, cancel)
            _check_cancelled(cancel)
            self.link_shared_dependencies(dest_path)
            _check_cancelled(cancel)
            self.write_environment(dest_path, handle, env)
            _check_cancelled(cancel)
        except Exception:
            self.remove(handle)
            raise
        return dest_path

    def remove(self, handle: str) -> None:
        """Best-effort removal of an instance working tree."""
        dest_path = self.instance_dir(handle)
        try:
            shutil.rmtree(dest_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            app_logger.warning(f"Could not remove working tree {dest_path}: {e}")


def _check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise ProvisioningCancelled("Provisioning was cancelled")
