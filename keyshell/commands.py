import argparse
import os
import sqlite3
import sys
from typing import Dict, List, Optional

from keyshell.database import ENTRY_FIELDS, Database
from keyshell.reporting import EXPORT_TEMPLATES, render_export
from keyshell.secrets_service import Client, SecretsServiceError

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


class CommandExit(Exception):
    def __init__(self, status: int):
        super().__init__(status)
        self.status = status


class CommandArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports problems instead of exiting the process."""

    def exit(self, status=0, message=None):
        if message:
            print(message.rstrip(), file=sys.stderr)
        raise CommandExit(status)

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"Error: {message}")


def print_error(message: str):
    print(f"Error: {message}", file=sys.stderr)


class Command:
    """
    Base class of every command.
    The session hands its open database to ``current_database`` before
    ``execute`` and takes back whatever is left there afterwards.
    """

    name = ""
    description = ""
    needs_database = True

    def __init__(self, interactive: bool = True):
        self.interactive = interactive
        self.current_database: Optional[Database] = None

    def get_description_line(self) -> str:
        return f"  {self.name:<10}{self.description}\n"

    def build_parser(self) -> CommandArgumentParser:
        parser = CommandArgumentParser(prog=self.name, description=self.description)
        if self.needs_database and not self.interactive:
            parser.add_argument("database", help="Path of the database.")
        self.add_arguments(parser)
        return parser

    def add_arguments(self, parser: CommandArgumentParser):
        pass

    def execute(self, arguments: List[str]) -> int:
        """``arguments[0]`` is the command name, as typed."""
        try:
            options = self.build_parser().parse_args(arguments[1:])
        except CommandExit as e:
            return e.status

        if self.needs_database and not self.interactive:
            return self._execute_once(options)

        if self.needs_database and self.current_database is None:
            print_error("No database open. Use 'open <file>' first.")
            return EXIT_FAILURE
        return self.run(options)

    def _execute_once(self, options) -> int:
        try:
            self.current_database = Database.open(options.database)
        except (OSError, sqlite3.Error) as e:
            print_error(f"Could not open database {options.database}: {e}")
            return EXIT_FAILURE
        try:
            return self.run(options)
        finally:
            self.current_database.release_data()
            self.current_database = None

    def run(self, options) -> int:
        raise NotImplementedError


class HelpCommand(Command):
    name = "help"
    description = "Display command help."
    needs_database = False

    def __init__(self, registry: "CommandRegistry", interactive=True):
        super().__init__(interactive)
        self.registry = registry

    def add_arguments(self, parser):
        parser.add_argument("command", nargs="?", help="Name of the command.")

    def run(self, options):
        if options.command:
            command = self.registry.get_command(options.command)
            if command is None:
                print_error(f"Unknown command {options.command}")
                return EXIT_FAILURE
            print(command.build_parser().format_help())
            return EXIT_SUCCESS

        print("\nAvailable Commands:")
        for command in self.registry.commands():
            print(command.get_description_line(), end="")
        print()
        return EXIT_SUCCESS


class OpenCommand(Command):
    name = "open"
    description = "Open a database (creating it with --create)."
    needs_database = False

    def add_arguments(self, parser):
        parser.add_argument("path", help="Path of the database.")
        parser.add_argument(
            "--create", action="store_true", help="Create the database if it does not exist."
        )
        parser.add_argument("-n", "--name", help="Display name of a new database.")

    def run(self, options):
        path = os.path.expanduser(options.path)
        try:
            database = Database.open(path, create=options.create)
        except FileNotFoundError:
            print_error(f"Database file {path} does not exist. Use --create to create it.")
            return EXIT_FAILURE
        except sqlite3.Error as e:
            print_error(f"Could not open database {path}: {e}")
            return EXIT_FAILURE

        if options.name:
            database.name = options.name

        if self.current_database is not None:
            self.current_database.release_data()
        self.current_database = database
        stats = database.stats()
        print(
            f"Database loaded: {database.name or path} "
            f"({stats['entries']} entries, {stats['recycled']} recycled)"
        )
        return EXIT_SUCCESS


class CloseCommand(Command):
    name = "close"
    description = "Close the currently opened database."
    needs_database = False

    def run(self, options):
        if self.current_database is None:
            print("No database to close.")
            return EXIT_SUCCESS
        name = self.current_database.name or self.current_database.file_path
        self.current_database.release_data()
        self.current_database = None
        print(f"Database {name} closed.")
        return EXIT_SUCCESS


class ListCommand(Command):
    name = "ls"
    description = "List database entries."

    def add_arguments(self, parser):
        parser.add_argument(
            "-R", "--recycled", action="store_true", help="Also list recycled entries."
        )

    def run(self, options):
        entries = self.current_database.entries(include_recycled=options.recycled)
        if not entries:
            print("No entries found.")
            return EXIT_SUCCESS

        for entry in entries:
            status = "[RECYCLED]" if entry.in_recycle_bin else ""
            print(f"{entry.resolved('title'):<30} {entry.resolved('username'):<20} {status}".rstrip())
        return EXIT_SUCCESS


class ShowCommand(Command):
    name = "show"
    description = "Show an entry's information."

    def add_arguments(self, parser):
        parser.add_argument("entry", help="Title of the entry to show.")
        parser.add_argument(
            "-s", "--show-protected", action="store_true", help="Show the password in clear text."
        )
        parser.add_argument(
            "-a",
            "--attributes",
            action="append",
            choices=[f for f in ENTRY_FIELDS if f != "ssh_key"],
            help="Names of the attributes to show. May be repeated.",
        )

    def run(self, options):
        entry = self.current_database.find_entry(options.entry)
        if entry is None:
            print_error(f"Could not find entry with path {options.entry}.")
            return EXIT_FAILURE

        if options.attributes:
            for attribute in options.attributes:
                print(entry.resolved(attribute))
            return EXIT_SUCCESS

        for attribute in ("title", "username", "password", "url", "notes"):
            value = entry.resolved(attribute)
            if attribute == "password" and not options.show_protected and value:
                value = "PROTECTED"
            print(f"{attribute.capitalize() + ':':<10}{value}")
        if entry.ssh_key:
            print(f"{'SSH key:':<10}yes")
        return EXIT_SUCCESS


class AddCommand(Command):
    name = "add"
    description = "Add a new entry to a database."

    def add_arguments(self, parser):
        parser.add_argument("title", help="Title of the new entry.")
        parser.add_argument("-u", "--username", default="", help="Username for the entry.")
        parser.add_argument("-p", "--password", default="", help="Password for the entry.")
        parser.add_argument("--url", default="", help="URL for the entry.")
        parser.add_argument("--notes", default="", help="Notes for the entry.")
        parser.add_argument("--ssh-key", help="File holding an OpenSSH private key to attach.")

    def run(self, options):
        if self.current_database.find_entry(options.title) is not None:
            print_error(f"Entry {options.title} already exists.")
            return EXIT_FAILURE

        ssh_key = ""
        if options.ssh_key:
            try:
                with open(os.path.expanduser(options.ssh_key), "r") as f:
                    ssh_key = f.read()
            except OSError as e:
                print_error(f"Could not read key file: {e}")
                return EXIT_FAILURE

        self.current_database.add_entry(
            options.title,
            username=options.username,
            password=options.password,
            url=options.url,
            notes=options.notes,
            ssh_key=ssh_key,
        )
        print(f"Successfully added entry {options.title}.")
        return EXIT_SUCCESS


class RemoveCommand(Command):
    name = "rm"
    description = "Remove an entry from the database."

    def add_arguments(self, parser):
        parser.add_argument("entry", help="Title of the entry to remove.")

    def run(self, options):
        entry = self.current_database.find_entry(options.entry)
        if entry is None:
            print_error(f"Entry {options.entry} not found.")
            return EXIT_FAILURE

        recycled = self.current_database.recycle_bin_enabled and not entry.in_recycle_bin
        entry.move_to_recycle_bin()
        if recycled:
            print(f"Successfully recycled entry {options.entry}.")
        else:
            print(f"Successfully deleted entry {options.entry}.")
        return EXIT_SUCCESS


class ExportCommand(Command):
    name = "export"
    description = "Export the database content."

    def add_arguments(self, parser):
        parser.add_argument(
            "-f", "--format", default="md", choices=sorted(EXPORT_TEMPLATES), help="Export format."
        )
        parser.add_argument(
            "-R", "--recycled", action="store_true", help="Include recycled entries."
        )
        parser.add_argument("file", nargs="?", help="Output file. Defaults to the terminal.")

    def run(self, options):
        content = render_export(self.current_database, options.format, options.recycled)
        if not options.file:
            print(content, end="")
            return EXIT_SUCCESS

        try:
            with open(options.file, "w") as f:
                f.write(content)
        except OSError as e:
            print_error(f"Could not write {options.file}: {e.strerror}")
            return EXIT_FAILURE
        print(f"Export written: {options.file}")
        return EXIT_SUCCESS


class RequestCommand(Command):
    """Feeds a client request to the secrets service, as if it came from outside."""

    name = "request"
    description = "Simulate a secrets service client request."

    def __init__(self, secrets_service, interactive=True):
        super().__init__(interactive)
        self.secrets_service = secrets_service

    def add_arguments(self, parser):
        parser.add_argument("--pid", type=int, default=0, help="Process id of the client.")
        actions = parser.add_subparsers(dest="action", required=True)

        unlock = actions.add_parser("unlock", help="Request access to entries.")
        unlock.add_argument("client", help="Name of the client.")
        unlock.add_argument("entries", nargs="+", help="Titles of the entries.")

        delete = actions.add_parser("delete", help="Request removal of entries.")
        delete.add_argument("--permanent", action="store_true", help="Skip the recycle bin.")
        delete.add_argument("client", help="Name of the client.")
        delete.add_argument("entries", nargs="+", help="Titles of the entries.")

        forget = actions.add_parser("forget", help="Drop the decisions remembered for a client.")
        forget.add_argument("client", help="Name of the client.")

    def run(self, options):
        client = Client(options.client, options.pid)
        path = self.current_database.canonical_file_path
        if options.action == "forget":
            self.secrets_service.forget(client)
            print(f"Forgot the decisions for {client.name}.")
            return EXIT_SUCCESS
        try:
            if options.action == "unlock":
                allowed = self.secrets_service.request_unlock(client, path, options.entries)
                if allowed:
                    print(f"{client} was given access to: {', '.join(e.title for e in allowed)}")
                else:
                    print(f"{client} was denied access.")
            else:
                removed, requested = self.secrets_service.request_delete(
                    client, path, options.entries, options.permanent
                )
                print(f"Removed {removed} of {requested} entries.")
        except SecretsServiceError as e:
            print_error(str(e))
            return EXIT_FAILURE
        return EXIT_SUCCESS


class QuitCommand(Command):
    name = "quit"
    description = "Exit interactive mode."
    needs_database = False

    def run(self, options):
        return EXIT_SUCCESS


class ExitCommand(QuitCommand):
    name = "exit"


class CommandRegistry:
    """Name to command lookup for one mode (interactive or one-shot)."""

    def __init__(self, interactive: bool = False, secrets_service=None):
        self.interactive = interactive
        self._commands: Dict[str, Command] = {}

        self.add(HelpCommand(self, interactive))
        if interactive:
            self.add(OpenCommand(interactive))
            self.add(CloseCommand(interactive))
        for command_class in (ListCommand, ShowCommand, AddCommand, RemoveCommand, ExportCommand):
            self.add(command_class(interactive))
        if interactive and secrets_service is not None:
            self.add(RequestCommand(secrets_service, interactive))
        if interactive:
            self.add(QuitCommand(interactive))
            self.add(ExitCommand(interactive))

    def add(self, command: Command):
        self._commands[command.name] = command

    def get_command(self, name: str) -> Optional[Command]:
        return self._commands.get(name)

    def commands(self) -> List[Command]:
        return list(self._commands.values())
