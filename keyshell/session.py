"""The interactive read-eval loop.

The session owns the open database between commands. Lines come from a
LineReader running on an asyncio loop; each one is split like a shell command
line and handed to the matching command together with the database.
"""

import asyncio
import logging
import os
import shlex
import sys
from typing import Optional

from keyshell.database import Database
from keyshell.events import Event

logger = logging.getLogger(__name__)

DATABASE_SWAPPING_COMMANDS = ("open", "close")
QUIT_COMMANDS = ("quit", "exit")


def get_prompt(database: Optional[Database], with_secrets_service: bool = False, with_ssh_agent: bool = False) -> str:
    """Builds the prompt, e.g. ``[FS] Passwords> ``."""
    prompt = ""
    if with_secrets_service or with_ssh_agent:
        flags = ("F" if with_secrets_service else "") + ("S" if with_ssh_agent else "")
        prompt += f"[{flags}] "

    if database is not None:
        prompt += database.name or os.path.basename(database.file_path)
    return prompt + "> "


class Session:
    """
    One interactive session.
    ``secrets_service`` and ``ssh_agent`` are optional; when given, the open
    database is registered with them and the prompt shows their flags.
    """

    def __init__(self, registry, loop: asyncio.AbstractEventLoop, database: Optional[Database] = None, secrets_service=None, ssh_agent=None):
        self.registry = registry
        self.loop = loop
        self.secrets_service = secrets_service
        self.ssh_agent = ssh_agent
        self.reader = None
        self._database = database
        self._dispatching = False
        self.terminated = False
        self.prompt = ""
        self.update_prompt()

        self.ready = Event("ready")
        self.on_terminated = Event("terminated")

    @property
    def database(self) -> Optional[Database]:
        return self._database

    @property
    def state(self) -> str:
        if self.terminated:
            return "terminated"
        return "database open" if self._database is not None else "no database"

    def update_prompt(self):
        self.prompt = get_prompt(
            self._database, self.secrets_service is not None, self.ssh_agent is not None
        )

    def attach(self, reader):
        """Connects the line reader. Its prompt should read ``self.prompt``."""
        self.reader = reader
        reader.line_read.connect(self.dispatch)
        reader.finished.connect(self.quit)

    def register_database(self):
        """Exposes the open database to the attached subsystems."""
        if self._database is None:
            return
        if self.secrets_service is not None:
            self.secrets_service.database_unlocked(self._database.canonical_file_path, self._database)
        if self.ssh_agent is not None:
            self.ssh_agent.database_unlocked(self._database)

    def unregister_database(self):
        if self._database is None:
            return
        if self.secrets_service is not None:
            self.secrets_service.unregister_database(self._database.canonical_file_path)
        if self.ssh_agent is not None:
            self.ssh_agent.database_locked(self._database)

    def dispatch(self, line: str):
        if self.terminated:
            return
        assert not self._dispatching, "dispatch is not reentrant"

        try:
            args = shlex.split(line)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return
        if not args:
            return

        command = self.registry.get_command(args[0])
        if command is None:
            print(f"Unknown command {args[0]}", file=sys.stderr)
            return
        if command.name in QUIT_COMMANDS:
            self.quit()
            return

        self._dispatching = True
        try:
            if command.name in DATABASE_SWAPPING_COMMANDS:
                self.unregister_database()

            # The command owns the database while it runs
            command.current_database, self._database = self._database, None
            try:
                command.execute(args)
            except Exception as e:
                logger.debug("command %s failed", command.name, exc_info=True)
                print(f"Error: {e}", file=sys.stderr)
            finally:
                self._database, command.current_database = command.current_database, None

            if command.name == "open":
                self.register_database()
        finally:
            self._dispatching = False
            self.update_prompt()

    def quit(self):
        if self.terminated:
            return
        logger.debug("terminating session")
        self.terminated = True
        if self.reader is not None:
            self.reader.close()
        self.loop.stop()

    def run(self) -> int:
        """Runs the event loop until the session ends, then cleans up."""
        self.register_database()
        self.update_prompt()
        self.reader.start()
        self.ready.emit()
        try:
            self.loop.run_forever()
        finally:
            self.shutdown()
        return 0

    def shutdown(self):
        self.terminated = True
        if self.reader is not None:
            self.reader.close()
        self.unregister_database()
        if self._database is not None:
            self._database.release_data()
        self.on_terminated.emit()
        self.ready.disconnect_all()
        self.on_terminated.disconnect_all()
