"""Exposure of open databases to outside clients.

The service keeps the databases that are currently unlocked, remembers the
standing decisions operators gave to each client, and asks the operator
(through the prompt plugin) about everything it cannot decide on its own.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from keyshell.database import Database, Entry
from keyshell.events import Event

logger = logging.getLogger(__name__)


class AuthDecision(enum.Enum):
    UNDECIDED = "undecided"
    ALLOWED_ONCE = "allowed once"
    DENIED_ONCE = "denied once"
    ALLOWED = "allowed"
    DENIED = "denied"

    @property
    def allows(self) -> bool:
        return self in (AuthDecision.ALLOWED, AuthDecision.ALLOWED_ONCE)

    @property
    def standing(self) -> bool:
        return self in (AuthDecision.ALLOWED, AuthDecision.DENIED)


@dataclass(frozen=True)
class Client:
    name: str
    pid: int = 0

    def __str__(self):
        return f"{self.name} (PID: {self.pid})"


class SecretsServiceError(Exception):
    pass


class SecretsService:
    def __init__(self, plugin, config=None):
        self.plugin = plugin
        self.config = config or {}
        self.databases: Dict[str, Database] = {}
        # client name -> entry uuid -> standing decision
        self._decisions: Dict[str, Dict[str, AuthDecision]] = {}
        self._future: Dict[str, AuthDecision] = {}
        self.error = Event("error")
        self.notification = Event("notification")

    def database_unlocked(self, path: str, database: Database):
        """Registers ``database`` under ``path`` so clients can reach it."""
        if path in self.databases and self.databases[path] is not database:
            self.error.emit(f"A different database is already exposed at {path}")
            return
        self.databases[path] = database
        logger.debug("registered %s", path)
        self._notify(f"Database {database.name or path} is now exposed.")

    def unregister_database(self, path: str):
        if self.databases.pop(path, None) is not None:
            logger.debug("unregistered %s", path)
            self._notify(f"Database {path} is no longer exposed.")

    def _notify(self, message: str):
        if self.config.get("show_notifications", True):
            self.notification.emit(message, "Secrets Service")

    def _database(self, path: str) -> Database:
        database = self.databases.get(path)
        if database is None:
            raise SecretsServiceError(f"No database exposed at {path}")
        return database

    def resolve_entries(self, path: str, titles: Sequence[str]) -> List[Entry]:
        database = self._database(path)
        entries = []
        for title in titles:
            entry = database.find_entry(title)
            if entry is None:
                raise SecretsServiceError(f"Entry {title} not found.")
            entries.append(entry)
        return entries

    def standing_decision(self, client: Client, entry: Entry) -> AuthDecision:
        decision = self._decisions.get(client.name, {}).get(entry.uuid)
        if decision is not None:
            return decision
        return self._future.get(client.name, AuthDecision.UNDECIDED)

    def request_unlock(self, client: Client, path: str, titles: Sequence[str]) -> List[Entry]:
        """Returns the requested entries the client may read."""
        entries = self.resolve_entries(path, titles)
        decisions = {entry: self.standing_decision(client, entry) for entry in entries}

        pending = [e for e, d in decisions.items() if d == AuthDecision.UNDECIDED]
        if pending:
            accepted, answers, for_future = self.plugin.request_entries_unlock(
                client, path, pending
            )
            if accepted:
                self._remember(client, answers, for_future)
                decisions.update(answers)

        allowed = [e for e in entries if decisions[e].allows]
        logger.debug("%s unlocked %d of %d entries", client, len(allowed), len(entries))
        return allowed

    def _remember(self, client: Client, answers: Dict[Entry, AuthDecision], for_future: AuthDecision):
        remembered = self._decisions.setdefault(client.name, {})
        for entry, decision in answers.items():
            if decision.standing:
                remembered[entry.uuid] = decision
        if for_future != AuthDecision.UNDECIDED:
            self._future[client.name] = for_future

    def forget(self, client: Client):
        self._decisions.pop(client.name, None)
        self._future.pop(client.name, None)

    def request_delete(
        self, client: Client, path: str, titles: Sequence[str], permanent: bool = False
    ) -> Tuple[int, int]:
        """Returns (removed, requested) counts."""
        database = self._database(path)
        entries = self.resolve_entries(path, titles)
        removed = self.plugin.request_entries_remove(
            client, database.name or path, entries, permanent
        )
        return removed, len(entries)
