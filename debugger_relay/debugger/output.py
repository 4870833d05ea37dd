"""Output relay from the sandbox (and the relay itself) to the IDE output sink."""

import sys
from collections.abc import Callable

from .types import OutputCategory

OutputSink = Callable[[str, str], None]


def print_sink(text: str, category: str) -> None:
    """Default sink used when no IDE is attached: write to the terminal."""
    stream = sys.stderr if category == OutputCategory.STDERR else sys.stdout
    print(text, end="", file=stream, flush=True)


class OutputChannel:
    """Sends text to an output sink with a category.

    `error` selects the category: True means stderr, a string is used as the
    category verbatim, anything else is plain console output. Relay messages
    get a trailing newline. Text passed with an explicit stdout/stderr
    category is child output and already carries its own line endings.
    """

    def __init__(self, sink: OutputSink | None = None):
        self.sink = sink or print_sink

    def log(self, message: str, error: bool | str = False) -> None:
        if isinstance(error, str):
            category = error
            passthrough = category in (OutputCategory.STDOUT.value, OutputCategory.STDERR.value)
        else:
            category = OutputCategory.STDERR.value if error else OutputCategory.CONSOLE.value
            passthrough = False
        self.sink(message if passthrough else message + "\n", category)

    def stdout(self, text: str) -> None:
        self.log(text, OutputCategory.STDOUT.value)

    def stderr(self, text: str) -> None:
        self.log(text, OutputCategory.STDERR.value)
