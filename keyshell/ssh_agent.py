import logging
import os
import subprocess
import tempfile
from typing import Dict, List

from keyshell.events import Event

logger = logging.getLogger(__name__)


class SSHAgent:
    """Adds the OpenSSH keys stored in a database to the running ssh-agent."""

    def __init__(self, env=None, runner=subprocess.run):
        self._env = dict(os.environ if env is None else env)
        self._env.setdefault("SSH_ASKPASS_REQUIRE", "never")
        self._run = runner
        # canonical database path -> key files handed to ssh-add
        self._added: Dict[str, List[str]] = {}
        self.error = Event("error")

    def is_enabled(self) -> bool:
        return bool(self._env.get("SSH_AUTH_SOCK"))

    def _ssh_add(self, *args):
        self._run(
            ["ssh-add", *args],
            check=True,
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
            env=self._env,
        )

    @staticmethod
    def _write_key(key: str) -> str:
        fd, path = tempfile.mkstemp(prefix="keyshell-", suffix=".key")
        with os.fdopen(fd, "w") as f:
            f.write(key if key.endswith("\n") else key + "\n")
        return path

    @staticmethod
    def _describe(e: Exception) -> str:
        if isinstance(e, subprocess.CalledProcessError) and e.stderr:
            return e.stderr.strip()
        return str(e)

    def database_unlocked(self, database):
        added = self._added.setdefault(database.canonical_file_path, [])
        for entry in database.entries():
            if not entry.ssh_key.strip():
                continue
            path = self._write_key(entry.ssh_key)
            try:
                self._ssh_add(path)
            except (OSError, subprocess.CalledProcessError) as e:
                os.unlink(path)
                self.error.emit(f"{entry.title}: {self._describe(e)}")
                continue
            logger.debug("added key of %s to the agent", entry.title)
            added.append(path)

    def database_locked(self, database):
        for path in self._added.pop(database.canonical_file_path, []):
            try:
                self._ssh_add("-d", path)
            except (OSError, subprocess.CalledProcessError) as e:
                self.error.emit(self._describe(e))
            finally:
                os.unlink(path)
