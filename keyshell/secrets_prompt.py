"""Operator prompts for requests coming from secrets service clients.

Every request pauses the session's line reader for its whole duration and
reads answers with blocking reads on the shared terminal input.
"""

import enum
from typing import Dict, List, Optional, Sequence, Tuple

from keyshell.database import Entry
from keyshell.line_reader import LineReader, LineReaderGuard
from keyshell.secrets_service import AuthDecision, Client

YES_NO = (["[Y]es", "[N]o"], ["y|yes", "n|no"])


class UnlockAction(enum.Enum):
    ALLOW_ALL = "Allow All"
    DENY_ALL = "Deny All"
    ALLOW_SELECTED = "Allow Selected"


def user_action(terminal_input, message: str, actions: Sequence[str], matches: Sequence[str]) -> Optional[int]:
    """
    Asks the operator to pick one of ``actions``.
    ``message`` may contain ``{actions}``, replaced with the action list.
    Each item of ``matches`` holds the pipe separated answers accepted for
    the action at the same index. Returns that index, or None at end of input.
    """
    assert len(actions) == len(matches)
    available = " | ".join(actions)
    print(message.replace("{actions}", available))

    while True:
        answer = terminal_input.readline()
        if answer is None:
            return None

        clean = answer.strip().lower()
        for index, aliases in enumerate(matches):
            if clean in (alias.strip().lower() for alias in aliases.split("|")):
                return index

        print(f"Unknown response: {answer.strip()}. Please provide: {available}")


class SecretsPromptPlugin:
    """Answers secrets service requests by asking the operator on the terminal."""

    def __init__(self, line_reader: LineReader, config=None):
        self._line_reader = line_reader
        self.config = config or {}

    def _ask(self, message, actions, matches):
        return user_action(self._line_reader.input, message, actions, matches)

    def request_entries_unlock(
        self, client: Client, name: str, entries: Sequence[Entry]
    ) -> Tuple[bool, Dict[Entry, AuthDecision], AuthDecision]:
        """
        Returns (accepted, decisions, for_future). ``decisions`` has one key
        per requested entry. When the operator cancels, accepted is False and
        nothing must be applied.
        """
        with LineReaderGuard(self._line_reader):
            return self._unlock(client, entries)

    def _unlock(self, client, entries):
        decisions: Dict[Entry, AuthDecision] = {}
        for_future = AuthDecision.UNDECIDED

        print(f"{client} is requesting access to the following entries:")
        for i, entry in enumerate(entries, start=1):
            print(f"{i}. {entry.title} (username: {entry.username})")

        choice = self._ask(
            "Choose action: {actions}",
            ["[A]llow All", "[D]eny All", "Allow [S]elected"],
            ["a|allow|allow all", "d|deny|deny all", "s|selected|allow selected"],
        )
        if choice is None:
            return False, {}, for_future

        action = list(UnlockAction)[choice]
        decision = AuthDecision.DENIED_ONCE if action == UnlockAction.DENY_ALL else AuthDecision.ALLOWED_ONCE

        for entry in entries:
            undecided = False
            if action == UnlockAction.ALLOW_SELECTED:
                choice = self._ask(
                    f'Allow {client} access to "{entry.title}" (username: {entry.username})? {{actions}}',
                    *YES_NO,
                )
                if choice is None:
                    return False, {}, AuthDecision.UNDECIDED
                undecided = choice != 0
            decisions[entry] = AuthDecision.UNDECIDED if undecided else decision

        if action == UnlockAction.ALLOW_SELECTED:
            warning = "This will only concern entries selected above!"
        else:
            warning = "WARNING: this will concern ALL entries, not only the ones listed above!"

        choice = self._ask(
            f"Do you want to remember this action ({action.value}) for all future requests from {client}? {{actions}}\n{warning}",
            *YES_NO,
        )
        if choice is None:
            return False, {}, AuthDecision.UNDECIDED

        if choice == 0:
            if action == UnlockAction.DENY_ALL:
                decision = AuthDecision.DENIED
            else:
                decision = AuthDecision.ALLOWED
            if action != UnlockAction.ALLOW_SELECTED:
                for_future = decision

            # Entries left out of a selection are never remembered
            for entry, current in decisions.items():
                if current != AuthDecision.UNDECIDED:
                    decisions[entry] = decision

        return True, decisions, for_future

    def confirm_delete_entries(self, client: Client, name: str, entries: Sequence[Entry], permanent: bool) -> bool:
        kind = "permanent " if permanent else ""
        print(f'{client} is requesting {kind}removal of the following entries from database "{name}":')
        for i, entry in enumerate(entries, start=1):
            print(f"\t{i}. {entry.title}")
        print()

        choice = self._ask("Choose action: {actions}", ["[A]llow", "[D]eny"], ["a|allow", "d|deny"])
        return choice == 0

    def request_entries_remove(self, client: Client, name: str, entries: Sequence[Entry], permanent: bool) -> int:
        """
        Removes the entries the operator lets go of and returns how many were
        removed. Entries are removed one by one, so a cancelled prompt still
        reports the removals done before it.
        """
        if not entries:
            return 0

        with LineReaderGuard(self._line_reader):
            if self.config.get("confirm_delete_item", True) and not self.confirm_delete_entries(
                client, name, entries, permanent
            ):
                return 0
            return self._remove(entries, permanent)

    def _remove(self, entries, permanent):
        removed: List[Entry] = []
        for entry in entries:
            if permanent:
                references = [
                    ref for ref in entry.database.references_to(entry) if ref not in entries
                ]
                if references:
                    print(
                        f'Entry "{entry.resolved("title")}" has {len(references)} reference(s).'
                    )
                    choice = self._ask(
                        "Replace references to entry? {actions}",
                        ["[O]verwrite references with values", "[S]kip this entry", "[D]elete anyway"],
                        ["o|overwrite", "s|skip", "d|delete"],
                    )
                    if choice is None:
                        break
                    if choice == 0:
                        for ref in references:
                            ref.replace_references_with_values(entry)
                    elif choice == 1:
                        continue

            if permanent:
                entry.delete()
            else:
                entry.move_to_recycle_bin()
            removed.append(entry)

        return len(removed)
