"""
Launcher - hands paths to the desktop: reveal in the native file browser, or open with
the associated application. Fire-and-forget; nothing waits on the child process.
"""
from __future__ import annotations

import os
import shutil
import subprocess
import sys
from collections.abc import Callable
from typing import Any, Optional

from fms_shared import ErrorCode, Result, get_logger, sanitize_error_message

from .associations import FileAssociations

logger = get_logger(__name__)

Runner = Callable[[list[str]], Any]


def _spawn(command: list[str]) -> None:
    if not shutil.which(command[0]):
        raise FileNotFoundError(command[0])
    subprocess.Popen(
        command,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        shell=False,
    )


class LauncherService:
    def __init__(
        self,
        associations: Optional[FileAssociations] = None,
        *,
        runner: Runner = _spawn,
        platform: Optional[str] = None,
    ):
        self.associations = associations or FileAssociations()
        self._run = runner
        self._platform = platform or ("windows" if os.name == "nt" else sys.platform)

    def _reveal_commands(self, path: str) -> tuple[list[list[str]], bool]:
        parent = os.path.dirname(path) or path
        if self._platform == "darwin":
            return [["open", "-R", path], ["open", parent]], True
        if self._platform == "windows":
            return [["explorer.exe", f"/select,{path}"], ["explorer.exe", parent]], True
        return [["xdg-open", parent]], False

    def _open_commands(self, path: str) -> list[list[str]]:
        app = self.associations.app_for(path)
        if self._platform == "darwin":
            commands = [["open", "-a", app, path]] if app else []
            return commands + [["open", path]]
        if self._platform == "windows":
            return [["explorer.exe", path]]
        commands = [[app, path]] if app else []
        return commands + [["xdg-open", path]]

    def _run_first(self, commands: list[list[str]], fallback_message: str) -> Result[dict[str, Any]]:
        last_exception: Optional[Exception] = None
        for index, cmd in enumerate(commands):
            try:
                self._run(cmd)
            except (OSError, ValueError, subprocess.SubprocessError) as exc:
                logger.debug("Launcher command %s failed: %s", cmd[0], exc)
                last_exception = exc
                continue
            return Result.Ok({"opened": True, "command": cmd[0], "fallback": index > 0})
        return Result.Err(
            ErrorCode.DEGRADED,
            sanitize_error_message(last_exception or ValueError(fallback_message), fallback_message),
        )

    def reveal(self, path: str) -> Result[dict[str, Any]]:
        """Show `path` selected in Finder / Explorer (or its folder elsewhere)."""
        if not path or not os.path.lexists(path):
            return Result.Err(ErrorCode.NOT_FOUND, "File does not exist")
        commands, selects = self._reveal_commands(path)
        result = self._run_first(commands, "Failed to reveal file")
        if result.ok:
            result.data["selected"] = selects and not result.data["fallback"]
        return result

    def open_file(self, path: str) -> Result[dict[str, Any]]:
        """Open `path` with its associated application, or the system default."""
        if not path or not os.path.lexists(path):
            return Result.Err(ErrorCode.NOT_FOUND, "File does not exist")
        result = self._run_first(self._open_commands(path), "Failed to open file")
        if result.ok:
            result.data["app"] = self.associations.app_for(path)
        return result
