#!/usr/bin/env python3
import argparse
import asyncio
import logging
import os
import platform
import sqlite3
import sys
from importlib.metadata import version

from keyshell.commands import EXIT_FAILURE, EXIT_SUCCESS, CommandRegistry, OpenCommand
from keyshell.config import get_config
from keyshell.line_reader import PromptToolkitLineReader, SimpleLineReader, TerminalInput
from keyshell.secrets_prompt import SecretsPromptPlugin
from keyshell.secrets_service import SecretsService
from keyshell.session import Session
from keyshell.ssh_agent import SSHAgent

VERSION = "0.1.0"


def debug_info() -> str:
    return "\n".join(
        [
            f"keyshell {VERSION}",
            f"Python {platform.python_version()} ({platform.platform()})",
            f"prompt_toolkit {version('prompt_toolkit')}",
            f"jinja2 {version('jinja2')}",
            f"SQLite {sqlite3.sqlite_version}",
        ]
    )


def make_line_reader(config, prompt, loop, terminal_input):
    editor = config.get("line_editor", "auto")
    if editor == "prompt_toolkit" or (editor == "auto" and terminal_input.isatty()):
        history_file = os.path.expanduser(config["history_file"]) if config.get("history_file") else None
        return PromptToolkitLineReader(prompt, loop, terminal_input, history_file=history_file)
    return SimpleLineReader(prompt, loop, terminal_input)


def enter_interactive_mode(arguments, config, with_secrets_service=False, with_ssh_agent=False) -> int:
    ssh_agent = None
    if with_ssh_agent:
        ssh_agent = SSHAgent()
        if not ssh_agent.is_enabled():
            print("Error: The SSH agent is not enabled.", file=sys.stderr)
            return EXIT_FAILURE
        ssh_agent.error.connect(
            lambda message: print(f"Could not add OpenSSH key to the agent: {message}", file=sys.stderr)
        )

    open_cmd = OpenCommand(interactive=True)
    if open_cmd.execute(["open", *arguments]) != EXIT_SUCCESS:
        return EXIT_FAILURE

    loop = asyncio.new_event_loop()
    session = None
    reader = make_line_reader(config, lambda: session.prompt, loop, TerminalInput())

    secrets_service = None
    if with_secrets_service:
        secrets_service = SecretsService(SecretsPromptPlugin(reader, config), config)
        secrets_service.error.connect(
            lambda message: print(f"Error in secrets service: {message}", file=sys.stderr)
        )
        secrets_service.notification.connect(
            lambda message, title: print(f"\n{title}: {message}")
        )

    registry = CommandRegistry(interactive=True, secrets_service=secrets_service)
    session = Session(registry, loop, open_cmd.current_database, secrets_service, ssh_agent)
    open_cmd.current_database = None
    session.attach(reader)

    print("Welcome to keyshell. Type 'help' for commands.")
    try:
        return session.run()
    finally:
        loop.close()


def build_parser(registry: CommandRegistry) -> argparse.ArgumentParser:
    description = "keyshell command line interface.\n\nAvailable commands:\n"
    description += "  open      Open a database and enter interactive mode.\n"
    for command in registry.commands():
        description += command.get_description_line()

    parser = argparse.ArgumentParser(
        prog="ks", description=description, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("command", nargs="?", help="Name of the command to execute.")
    parser.add_argument("arguments", nargs=argparse.REMAINDER, help="Arguments of the command.")
    parser.add_argument("--version", action="store_true", help="Display version information.")
    parser.add_argument("--debug-info", action="store_true", help="Display debugging information.")
    parser.add_argument("--debug", action="store_true", help="Log internal diagnostics.")
    parser.add_argument(
        "-F", "--secrets-service", action="store_true", help="Expose the open database to secrets service clients."
    )
    parser.add_argument(
        "-S", "--ssh-agent", action="store_true", help="Add the database's OpenSSH keys to the running agent."
    )
    return parser


def main(argv=None) -> int:
    registry = CommandRegistry(interactive=False)
    parser = build_parser(registry)
    args = parser.parse_args(argv)

    if args.debug:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    if not args.command:
        if args.version:
            print(VERSION)
            return EXIT_SUCCESS
        if args.debug_info:
            print(debug_info())
            return EXIT_SUCCESS
        parser.print_help()
        return EXIT_SUCCESS

    if args.command == "open":
        return enter_interactive_mode(
            args.arguments, get_config(), args.secrets_service, args.ssh_agent
        )

    command = registry.get_command(args.command)
    if command is None:
        print(f"Invalid command {args.command}.", file=sys.stderr)
        parser.print_help(sys.stderr)
        return EXIT_FAILURE
    return command.execute([args.command, *args.arguments])


if __name__ == "__main__":
    sys.exit(main())
