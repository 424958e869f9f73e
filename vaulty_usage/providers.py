"""Event and app-directory provider contracts.

The OS-facing side lives outside this package. ``CommandProvider`` talks to
it through an exporter command that prints JSON Lines, e.g. an ``adb shell``
helper on the device.
"""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Callable, Iterable, Sequence
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from vaulty_usage.errors import ProviderError
from vaulty_usage.models import AppInfo, ProviderEvent

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class EventProvider(Protocol):
    def query_events(self, start_time: int, end_time: int) -> list[ProviderEvent]: ...

    def has_permission(self) -> bool: ...

    def request_permission(self) -> bool: ...


class AppDirectoryProvider(Protocol):
    def get_installed_apps(self, include_icons: bool = False) -> list[AppInfo]: ...


def parse_jsonl(
    lines: Iterable[str],
    model: type[M],
    warn: Callable[[str], None] | None = None,
) -> tuple[list[M], int]:
    """Validate JSON Lines into models, skipping malformed lines.

    Each skipped line is reported through ``warn`` (default: a log warning).

    Returns:
        Tuple of (parsed models, number of non-blank lines seen).
    """
    if warn is None:
        warn = logger.warning
    parsed: list[M] = []
    seen = 0
    for line_number, line in enumerate(lines, 1):
        stripped = line.strip()
        if not stripped:
            continue
        seen += 1
        try:
            parsed.append(model.model_validate(json.loads(stripped)))
        except json.JSONDecodeError as e:
            warn(f"line {line_number}: invalid JSON: {e}")
        except ValidationError as e:
            warn(f"line {line_number}: validation error: {e}")
    return parsed, seen


class CommandProvider:
    """Provider backed by an external exporter command.

    The command is run with a subcommand appended:

    - ``events --start MS --end MS`` prints one event per line
    - ``apps [--icons]`` prints one installed app per line
    - ``permission [--request]`` exits 0 when usage access is granted and 1
      when it is not
    """

    def __init__(self, command: Sequence[str], timeout: int = 60) -> None:
        if not command:
            raise ProviderError("No provider command configured")
        self.command = list(command)
        self.timeout = timeout

    def _run(self, *args: str) -> subprocess.CompletedProcess[bytes]:
        argv = [*self.command, *args]
        # List args, not shell=True
        try:
            return subprocess.run(argv, capture_output=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise ProviderError(f"Provider timed out after {self.timeout}s") from e
        except OSError as e:
            raise ProviderError(f"Cannot run provider {argv[0]}: {e}") from e

    def _output(self, *args: str) -> list[str]:
        result = self._run(*args)
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise ProviderError(
                f"Provider '{args[0]}' failed (exit {result.returncode}): {stderr}"
            )
        return result.stdout.decode("utf-8", errors="replace").splitlines()

    def query_events(self, start_time: int, end_time: int) -> list[ProviderEvent]:
        lines = self._output("events", "--start", str(start_time), "--end", str(end_time))
        events, _ = parse_jsonl(lines, ProviderEvent)
        return events

    def get_installed_apps(self, include_icons: bool = False) -> list[AppInfo]:
        args = ["apps", "--icons"] if include_icons else ["apps"]
        apps, _ = parse_jsonl(self._output(*args), AppInfo)
        return apps

    def _permission(self, *args: str) -> bool:
        result = self._run("permission", *args)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise ProviderError(f"Permission check failed (exit {result.returncode}): {stderr}")

    def has_permission(self) -> bool:
        return self._permission()

    def request_permission(self) -> bool:
        return self._permission("--request")
