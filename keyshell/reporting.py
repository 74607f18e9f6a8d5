import os
from datetime import datetime
from typing import List

from jinja2 import Environment, FileSystemLoader

from keyshell.database import Database, Entry

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates")
EXPORT_TEMPLATES = {
    "md": "export.md.j2",
    "csv": "export.csv.j2",
}


def csv_quote(value: str) -> str:
    """Quotes a field the way RFC 4180 wants it."""
    value = "" if value is None else str(value)
    return '"' + value.replace('"', '""') + '"'


def md_cell(value: str) -> str:
    """Makes a value safe for a single Markdown table cell."""
    value = "" if value is None else str(value)
    return value.replace("|", "\\|").replace("\r", "").replace("\n", "<br>")


def resolve_entries(entries: List[Entry]) -> List[dict]:
    """Flattens entries to dictionaries with every reference resolved."""
    rows = []
    for entry in entries:
        rows.append(
            {
                "title": entry.resolved("title"),
                "username": entry.resolved("username"),
                "password": entry.resolved("password"),
                "url": entry.resolved("url"),
                "notes": entry.resolved("notes"),
                "recycled": entry.in_recycle_bin,
            }
        )
    return rows


def render_export(database: Database, fmt: str = "md", include_recycled: bool = False) -> str:
    """Renders the content of ``database`` with the template for ``fmt``."""
    if fmt not in EXPORT_TEMPLATES:
        raise ValueError(f"Unsupported export format: {fmt}")

    env = Environment(
        loader=FileSystemLoader(TEMPLATE_DIR),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["csv_quote"] = csv_quote
    env.filters["md_cell"] = md_cell
    template = env.get_template(EXPORT_TEMPLATES[fmt])

    context = {
        "database_name": database.name or os.path.basename(database.file_path),
        "file_path": database.file_path,
        "generated_date": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        "entries": resolve_entries(database.entries(include_recycled=include_recycled)),
    }
    return template.render(context)
