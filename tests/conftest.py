"""Shared fixtures for chr_installer tests."""

from collections.abc import Callable

import pytest

from chr_installer.command import CommandResult
from chr_installer.errors import CommandError


class FakeRunner:
    """Records commands and answers them from configured responses.

    Responses are matched on the longest argv prefix. Several responses
    registered for the same prefix are returned in order, the last one
    repeating. Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []
        self._rules: dict[tuple[str, ...], list[tuple]] = {}

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        action: Callable[[list[str]], None] | None = None,
    ) -> "FakeRunner":
        self._rules.setdefault(prefix, []).append((returncode, stdout, stderr, action))
        return self

    def __call__(self, argv, *, check=True, input_text=None, timeout=None):
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        self.inputs.append(input_text)

        returncode, stdout, stderr, action = 0, "", "", None
        matches = [p for p in self._rules if tuple(argv[: len(p)]) == p]
        if matches:
            responses = self._rules[max(matches, key=len)]
            response = responses.pop(0) if len(responses) > 1 else responses[0]
            returncode, stdout, stderr, action = response
        if action is not None:
            action(argv)

        result = CommandResult(argv, returncode, stdout, stderr)
        if check and not result.ok:
            raise CommandError(argv, returncode, stderr)
        return result

    def called(self, *prefix: str) -> list[list[str]]:
        """Return recorded calls starting with prefix."""
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


@pytest.fixture
def runner():
    """A fresh recording command runner."""
    return FakeRunner()
