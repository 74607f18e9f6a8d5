import os
import re
import sqlite3
import uuid
from typing import Dict, List, Optional

RECYCLE_BIN_NAME = "Recycle Bin"
MAX_RESOLVE_DEPTH = 10

ENTRY_FIELDS = ("title", "username", "password", "url", "notes", "ssh_key")

# KeePass field codes usable in {REF:<code>@I:<uuid>}
FIELD_CODES = {
    "T": "title",
    "U": "username",
    "P": "password",
    "A": "url",
    "N": "notes",
}
REFERENCE_PATTERN = re.compile(r"\{REF:([TUPAN])@I:([0-9a-fA-F]{32})\}", re.IGNORECASE)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS metadata (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS groups (
        id INTEGER PRIMARY KEY,
        uuid TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        parent_id INTEGER,
        FOREIGN KEY (parent_id) REFERENCES groups (id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entries (
        id INTEGER PRIMARY KEY,
        uuid TEXT UNIQUE NOT NULL,
        group_fk INTEGER NOT NULL,
        title TEXT NOT NULL,
        username TEXT DEFAULT '',
        password TEXT DEFAULT '',
        url TEXT DEFAULT '',
        notes TEXT DEFAULT '',
        ssh_key TEXT DEFAULT '',
        FOREIGN KEY (group_fk) REFERENCES groups (id)
    )
    """,
]


def make_reference(field_code: str, entry: "Entry") -> str:
    """Builds a reference placeholder pointing at a field of ``entry``."""
    return f"{{REF:{field_code.upper()}@I:{entry.uuid.upper()}}}"


class Entry:
    """A single secret. Identity is the uuid, so lookups of the same row compare equal."""

    def __init__(self, database: "Database", uuid: str, group_id: int, **fields):
        self.database = database
        self.uuid = uuid.lower()
        self.group_id = group_id
        for name in ENTRY_FIELDS:
            setattr(self, name, fields.get(name) or "")

    def __eq__(self, other):
        if not isinstance(other, Entry):
            return NotImplemented
        return self.uuid == other.uuid

    def __hash__(self):
        return hash(self.uuid)

    def __repr__(self):
        return f"<Entry {self.title!r} {self.uuid}>"

    @property
    def in_recycle_bin(self) -> bool:
        return self.group_id == self.database.recycle_bin_group_id()

    def resolve_placeholder(self, text: str, depth: int = 0) -> str:
        """Replaces every reference in ``text`` with the referenced value."""
        if not text or depth >= MAX_RESOLVE_DEPTH:
            return text

        def replace(match):
            target = self.database.get_entry(match.group(2))
            if target is None:
                return match.group(0)
            value = getattr(target, FIELD_CODES[match.group(1).upper()])
            return target.resolve_placeholder(value, depth + 1)

        return REFERENCE_PATTERN.sub(replace, text)

    def resolved(self, field: str) -> str:
        return self.resolve_placeholder(getattr(self, field))

    def references(self, other: "Entry") -> bool:
        """True if any field of this entry holds a reference to ``other``."""
        for name in ENTRY_FIELDS:
            for match in REFERENCE_PATTERN.finditer(getattr(self, name)):
                if match.group(2).lower() == other.uuid:
                    return True
        return False

    def replace_references_with_values(self, other: "Entry"):
        """Rewrites references to ``other`` as literal copies of its values."""

        def replace(match):
            if match.group(2).lower() != other.uuid:
                return match.group(0)
            return other.resolved(FIELD_CODES[match.group(1).upper()])

        for name in ENTRY_FIELDS:
            setattr(self, name, REFERENCE_PATTERN.sub(replace, getattr(self, name)))
        self.save()

    def save(self):
        self.database.update_entry(self)

    def delete(self):
        self.database.delete_entry(self)

    def move_to_recycle_bin(self):
        self.database.recycle_entry(self)


class Database:
    """Handle on an open SQLite secrets file."""

    def __init__(self, path: str, conn: sqlite3.Connection):
        self.file_path = path
        self.conn = conn
        self.c = conn.cursor()

    @classmethod
    def open(cls, path: str, create: bool = False) -> "Database":
        """Opens ``path``. Raises FileNotFoundError unless ``create`` is set."""
        exists = os.path.exists(path)
        if not exists and not create:
            raise FileNotFoundError(f"Database file {path} does not exist.")

        conn = sqlite3.connect(path)
        database = cls(path, conn)
        if not exists:
            database.init_schema()
        return database

    def init_schema(self, name: Optional[str] = None):
        """Creates the tables, the root group and the default metadata."""
        for statement in SCHEMA:
            self.c.execute(statement)
        self.c.execute(
            "INSERT INTO groups (uuid, name, parent_id) VALUES (?, ?, NULL)",
            (uuid.uuid4().hex, "Root"),
        )
        default_name = name or os.path.splitext(os.path.basename(self.file_path))[0]
        self.c.executemany(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            [("name", default_name), ("recycle_bin_enabled", "1")],
        )
        self.conn.commit()

    @property
    def is_open(self) -> bool:
        return self.conn is not None

    @property
    def canonical_file_path(self) -> str:
        return os.path.realpath(self.file_path)

    def _get_metadata(self, key: str) -> Optional[str]:
        self.c.execute("SELECT value FROM metadata WHERE key = ?", (key,))
        row = self.c.fetchone()
        return row[0] if row else None

    def _set_metadata(self, key: str, value: str):
        self.c.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value)
        )
        self.conn.commit()

    @property
    def name(self) -> str:
        return self._get_metadata("name") or ""

    @name.setter
    def name(self, value: str):
        self._set_metadata("name", value)

    @property
    def recycle_bin_enabled(self) -> bool:
        return self._get_metadata("recycle_bin_enabled") != "0"

    @recycle_bin_enabled.setter
    def recycle_bin_enabled(self, enabled: bool):
        self._set_metadata("recycle_bin_enabled", "1" if enabled else "0")

    def root_group_id(self) -> int:
        self.c.execute("SELECT id FROM groups WHERE parent_id IS NULL ORDER BY id LIMIT 1")
        return self.c.fetchone()[0]

    def recycle_bin_group_id(self, create: bool = False) -> Optional[int]:
        value = self._get_metadata("recycle_bin_group")
        if value is not None:
            return int(value)
        if not create:
            return None

        self.c.execute(
            "INSERT INTO groups (uuid, name, parent_id) VALUES (?, ?, ?)",
            (uuid.uuid4().hex, RECYCLE_BIN_NAME, self.root_group_id()),
        )
        group_id = self.c.lastrowid
        self._set_metadata("recycle_bin_group", str(group_id))
        return group_id

    def _row_to_entry(self, row) -> Entry:
        entry_uuid, group_id, *values = row
        return Entry(self, entry_uuid, group_id, **dict(zip(ENTRY_FIELDS, values)))

    def entries(self, include_recycled: bool = False) -> List[Entry]:
        """All entries of every group, in insertion order."""
        self.c.execute(
            f"SELECT uuid, group_fk, {', '.join(ENTRY_FIELDS)} FROM entries ORDER BY id ASC"
        )
        entries = [self._row_to_entry(row) for row in self.c.fetchall()]
        if include_recycled:
            return entries
        recycle_bin = self.recycle_bin_group_id()
        return [e for e in entries if e.group_id != recycle_bin]

    def get_entry(self, entry_uuid: str) -> Optional[Entry]:
        self.c.execute(
            f"SELECT uuid, group_fk, {', '.join(ENTRY_FIELDS)} FROM entries WHERE uuid = ?",
            (entry_uuid.lower(),),
        )
        row = self.c.fetchone()
        return self._row_to_entry(row) if row else None

    def find_entry(self, title: str) -> Optional[Entry]:
        """Finds an entry by title, or by ``Recycle Bin/<title>`` for recycled ones."""
        recycled = False
        prefix = RECYCLE_BIN_NAME + "/"
        if title.startswith(prefix):
            title = title[len(prefix):]
            recycled = True

        for entry in self.entries(include_recycled=True):
            if entry.title == title and entry.in_recycle_bin == recycled:
                return entry
        return None

    def add_entry(self, title: str, **fields) -> Entry:
        entry = Entry(self, uuid.uuid4().hex, self.root_group_id(), title=title, **fields)
        self.c.execute(
            f"INSERT INTO entries (uuid, group_fk, {', '.join(ENTRY_FIELDS)}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (entry.uuid, entry.group_id, *[getattr(entry, f) for f in ENTRY_FIELDS]),
        )
        self.conn.commit()
        return entry

    def update_entry(self, entry: Entry):
        assignments = ", ".join(f"{f} = ?" for f in ENTRY_FIELDS)
        self.c.execute(
            f"UPDATE entries SET group_fk = ?, {assignments} WHERE uuid = ?",
            (entry.group_id, *[getattr(entry, f) for f in ENTRY_FIELDS], entry.uuid),
        )
        self.conn.commit()

    def references_to(self, entry: Entry) -> List[Entry]:
        """Every other entry, in any group, holding a reference to ``entry``."""
        return [
            e
            for e in self.entries(include_recycled=True)
            if e != entry and e.references(entry)
        ]

    def delete_entry(self, entry: Entry):
        self.c.execute("DELETE FROM entries WHERE uuid = ?", (entry.uuid,))
        self.conn.commit()

    def recycle_entry(self, entry: Entry):
        """Moves ``entry`` to the recycle bin, or deletes it if that is not possible."""
        if not self.recycle_bin_enabled or entry.in_recycle_bin:
            self.delete_entry(entry)
            return
        entry.group_id = self.recycle_bin_group_id(create=True)
        self.update_entry(entry)

    def stats(self) -> Dict[str, int]:
        entries = self.entries(include_recycled=True)
        recycled = sum(1 for e in entries if e.in_recycle_bin)
        return {"entries": len(entries) - recycled, "recycled": recycled}

    def release_data(self):
        """Drops the connection; the handle is unusable afterwards."""
        if self.conn is None:
            return
        self.conn.close()
        self.conn = None
        self.c = None
