import os

import pytest

from keyshell.database import Database
from keyshell.line_reader import PromptToolkitLineReader, TerminalInput


class FakeLoop:
    """The slice of the asyncio loop API the line readers use, with bookkeeping."""

    def __init__(self):
        self.readers = {}
        self.subscriptions = 0
        self.scheduled = []
        self.stopped = False

    def add_reader(self, fd, callback):
        assert fd not in self.readers, "fd subscribed twice"
        self.readers[fd] = callback
        self.subscriptions += 1

    def remove_reader(self, fd):
        return self.readers.pop(fd, None) is not None

    def call_soon(self, callback, *args):
        self.scheduled.append((callback, args))

    def stop(self):
        self.stopped = True


class FakePromptSession:
    """Answers prompt_async from a script; exception classes in it are raised."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.prompts = []

    async def prompt_async(self, message):
        self.prompts.append(message)
        answer = self.answers.pop(0)
        if isinstance(answer, type) and issubclass(answer, BaseException):
            raise answer()
        return answer


class FakeReader:
    """Stands in for a LineReader around the blocking operator prompts."""

    def __init__(self, terminal_input):
        self.input = terminal_input
        self.paused = False
        self.pause_calls = 0
        self.restore_calls = 0

    def pause(self):
        self.paused = True
        self.pause_calls += 1

    def restore(self):
        self.paused = False
        self.restore_calls += 1


@pytest.fixture
def make_input():
    """Builds TerminalInputs over pipes already holding ``text`` and closed for writing."""
    fds = []

    def make(text=""):
        r, w = os.pipe()
        os.write(w, text.encode())
        os.close(w)
        fds.append(r)
        return TerminalInput(r)

    yield make
    for fd in fds:
        try:
            os.close(fd)
        except OSError:
            pass


@pytest.fixture
def fake_reader(make_input):
    def make(text=""):
        return FakeReader(make_input(text))

    return make


@pytest.fixture
def database(tmp_path):
    db = Database.open(str(tmp_path / "secrets.sqlite"), create=True)
    yield db
    db.release_data()


@pytest.fixture(autouse=True)
def release_prompt_toolkit_reader():
    yield
    PromptToolkitLineReader._instance = None
