"""Non-blocking line input for the interactive session.

A LineReader hands completed lines to the asyncio event loop through its
``line_read`` event and reports end of input through ``finished``. Code that
needs the terminal for itself (sub-prompts) wraps its work in a
``LineReaderGuard``, which pauses the reader and always restores it.

Two backends exist:

* ``SimpleLineReader`` watches the input file descriptor with
  ``loop.add_reader`` and splits whatever arrives into lines.
* ``PromptToolkitLineReader`` runs prompt_toolkit prompts on the loop for
  history and line editing. prompt_toolkit owns the terminal mode while a
  prompt is displayed, so only one such reader may exist per process.
"""

import asyncio
import logging
import os
import sys
from typing import Callable, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory, InMemoryHistory

from keyshell.events import Event

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class TerminalInput:
    """Buffered line access to a raw file descriptor.

    The event-driven reader and the blocking operator prompts both read from
    one instance, so bytes pulled off the descriptor by one of them are never
    lost to the other.
    """

    def __init__(self, fd: Optional[int] = None, encoding: str = "utf-8"):
        self.fd = sys.stdin.fileno() if fd is None else fd
        self.encoding = encoding
        self._buffer = b""
        self._eof = False

    def fileno(self) -> int:
        return self.fd

    def isatty(self) -> bool:
        return os.isatty(self.fd)

    def fill(self):
        """Reads whatever is available. Call only when the fd is readable."""
        chunk = os.read(self.fd, READ_CHUNK_SIZE)
        if chunk:
            self._buffer += chunk
        else:
            self._eof = True

    def has_line(self) -> bool:
        return b"\n" in self._buffer or (self._eof and bool(self._buffer))

    def at_end(self) -> bool:
        return self._eof and not self._buffer

    def pop_line(self) -> Optional[str]:
        """Returns the next buffered line without its newline, or None."""
        if not self.has_line():
            return None
        line, sep, rest = self._buffer.partition(b"\n")
        self._buffer = rest
        return line.decode(self.encoding, errors="replace").rstrip("\r")

    def readline(self) -> Optional[str]:
        """Blocks until a full line is available. Returns None at end of input."""
        while not self.has_line():
            if self._eof:
                return None
            self.fill()
        return self.pop_line()


class LineReader:
    """Base class for the event-driven line sources.

    ``prompt`` is a callable so the owner can change the prompt text between
    lines without telling the reader.
    """

    def __init__(
        self,
        prompt: Callable[[], str],
        loop: asyncio.AbstractEventLoop,
        terminal_input: Optional[TerminalInput] = None,
    ):
        self._prompt = prompt
        self._loop = loop
        self.input = terminal_input or TerminalInput()
        self.line_read = Event("line_read")
        self.finished = Event("finished")
        self._closed = False

    @property
    def active(self) -> bool:
        raise NotImplementedError

    def start(self):
        """Shows the prompt and starts delivering lines."""
        self.restore()

    def pause(self):
        raise NotImplementedError

    def restore(self):
        raise NotImplementedError

    def close(self):
        """Stops delivery for good. Safe to call more than once."""
        self.pause()
        self._closed = True

    def _finish(self):
        logger.debug("input exhausted")
        self.pause()
        self._closed = True
        self.finished.emit()


class LineReaderGuard:
    """Keeps a LineReader paused for the duration of a ``with`` block."""

    def __init__(self, line_reader: LineReader):
        assert line_reader is not None, "LineReaderGuard needs a line reader"
        self._line_reader = line_reader

    def __enter__(self):
        self._line_reader.pause()
        return self._line_reader

    def __exit__(self, exc_type, exc, tb):
        self._line_reader.restore()
        return False


class SimpleLineReader(LineReader):
    """Line source for pipes and dumb terminals."""

    def __init__(self, prompt, loop, terminal_input=None, output=None):
        super().__init__(prompt, loop, terminal_input)
        self._output = output or sys.stdout
        self._subscribed = False
        self._delivering = False

    @property
    def active(self) -> bool:
        return self._subscribed

    def _show_prompt(self):
        self._output.write(self._prompt())
        self._output.flush()

    def pause(self):
        if not self._subscribed:
            return
        self._loop.remove_reader(self.input.fileno())
        self._subscribed = False
        self._output.write("\n")
        self._output.flush()
        logger.debug("simple reader paused")

    def restore(self):
        if self._subscribed or self._closed:
            return
        self._loop.add_reader(self.input.fileno(), self._on_readable)
        self._subscribed = True
        logger.debug("simple reader restored")
        if self._delivering:
            # _deliver shows the prompt once the current line is handled
            return
        self._show_prompt()
        # Lines read ahead before a pause are still waiting in the buffer
        if self.input.has_line() or self.input.at_end():
            self._loop.call_soon(self._deliver)

    def _on_readable(self):
        if not self._subscribed:
            return
        self.input.fill()
        self._deliver()

    def _deliver(self):
        if self._delivering:
            return
        self._delivering = True
        try:
            while self._subscribed:
                if self.input.at_end():
                    self._finish()
                    return

                line = self.input.pop_line()
                if line is None:
                    return

                self.line_read.emit(line)
                if self._subscribed:
                    self._show_prompt()
        finally:
            self._delivering = False


class PromptToolkitLineReader(LineReader):
    """Line source with history and editing, backed by prompt_toolkit.

    Only one instance may be live in a process: the prompt session puts the
    terminal in raw mode and a second one would fight over it. The instance
    registers itself on construction and unregisters in ``close()``.
    """

    _instance: Optional["PromptToolkitLineReader"] = None

    def __init__(self, prompt, loop, terminal_input=None, session=None, history_file=None):
        assert PromptToolkitLineReader._instance is None, (
            "only one PromptToolkitLineReader may exist at a time"
        )
        PromptToolkitLineReader._instance = self
        super().__init__(prompt, loop, terminal_input)

        if session is None:
            history = FileHistory(history_file) if history_file else InMemoryHistory()
            session = PromptSession(history=history)
        self._session = session
        self._task: Optional[asyncio.Task] = None
        self._wanted = False
        self._prompting = False
        self._interrupted = False

    @property
    def active(self) -> bool:
        return self._wanted and self._task is not None and not self._task.done()

    def pause(self):
        if not self._wanted:
            return
        self._wanted = False
        if self._prompting and not self._interrupted and self._task is not None:
            # Leaving the prompt gives the terminal back its original mode.
            # That happens when the task next runs, so pausing from inside a
            # line handler (where no prompt is shown) is the common case.
            self._interrupted = True
            self._task.cancel()
        logger.debug("prompt_toolkit reader paused")

    def restore(self):
        if self._wanted or self._closed:
            return
        self._wanted = True
        # A task that is still unwinding from a pause picks the flag back up
        if self._task is None or self._task.done():
            self._task = self._loop.create_task(self._read_lines())
        logger.debug("prompt_toolkit reader restored")

    def close(self):
        super().close()
        if PromptToolkitLineReader._instance is self:
            PromptToolkitLineReader._instance = None

    async def _read_lines(self):
        while self._wanted:
            self._prompting = True
            try:
                line = await self._session.prompt_async(self._prompt())
            except asyncio.CancelledError:
                if not self._interrupted:
                    raise
                self._interrupted = False
                asyncio.current_task().uncancel()
                continue
            except EOFError:
                line = None
            except KeyboardInterrupt:
                continue
            finally:
                self._prompting = False

            if line is None:
                self._finish()
                return
            self.line_read.emit(line)
