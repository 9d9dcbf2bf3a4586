import os
import sys
import tempfile
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

"""
contacts.py - the contact book and its on-disk store.

ContactBook is a bidirectional name <-> fingerprint map. Both sides are
unique. One reserved name, "self", stands for our own identity; it lives in
memory only and never reaches the file.

The store is a plain text table, one contact per line:

    alice                aa11...

(name padded to 20 columns, a space, then the fingerprint in lowercase hex).
"""

SELF_NAME = "self"


def valid_name(name: str) -> bool:
    """Contact names are non-empty and contain no whitespace (the file is whitespace-separated)."""
    return bool(name) and not any(c.isspace() for c in name)


class ContactBook:
    """In-memory name <-> fingerprint registry used for authorization."""

    def __init__(self) -> None:
        self._by_name: Dict[str, bytes] = {}
        self._by_fingerprint: Dict[bytes, str] = {}

    def add(self, name: str, fingerprint: bytes) -> None:
        """Bind name <-> fingerprint. Either side already taken is a ValueError."""
        if not valid_name(name):
            raise ValueError(f"Invalid contact name {name!r}")
        if name in self._by_name:
            raise ValueError(f"Contact '{name}' is already known")
        if fingerprint in self._by_fingerprint:
            raise ValueError(
                f"Fingerprint {fingerprint.hex()} is already known as '{self._by_fingerprint[fingerprint]}'"
            )
        self._by_name[name] = fingerprint
        self._by_fingerprint[fingerprint] = name

    def set_self(self, fingerprint: bytes) -> None:
        """Register our own identity as "self", unless it already has a contact name."""
        if fingerprint in self._by_fingerprint:
            return
        self.add(SELF_NAME, fingerprint)

    def name_for(self, fingerprint: bytes) -> Optional[str]:
        return self._by_fingerprint.get(fingerprint)

    def fingerprint_for(self, name: str) -> Optional[bytes]:
        return self._by_name.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)

    def items(self) -> Iterator[Tuple[str, bytes]]:
        """(name, fingerprint) pairs, sorted by name; includes "self"."""
        return iter(sorted(self._by_name.items()))

    def persistent_items(self) -> Iterator[Tuple[str, bytes]]:
        """Like items(), without the reserved "self" entry."""
        return ((n, fp) for n, fp in self.items() if n != SELF_NAME)


def format_entry(name: str, fingerprint: bytes) -> str:
    return f"{name:<20} {fingerprint.hex()}"


class ContactStore:
    """Loads a ContactBook from, and flushes it to, the contacts file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> ContactBook:
        """
        Parse the contacts file. A missing file is created empty.

        Raises:
            ValueError: malformed line, bad hex, duplicate name or fingerprint.
        """
        book = ContactBook()
        if not self.path.exists():
            print(f"Creating a new contacts file ({self.path}).", file=sys.stderr)
            self.save(book)
            return book

        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                fields = line.split()
                if not fields:
                    continue
                if len(fields) != 2:
                    raise ValueError(f"{self.path}:{lineno}: expected 'name fingerprint'")
                name, hex_fp = fields
                if name == SELF_NAME:
                    raise ValueError(f"{self.path}:{lineno}: the name '{SELF_NAME}' is reserved for your own key")
                try:
                    fingerprint = bytes.fromhex(hex_fp)
                except ValueError as exc:
                    raise ValueError(f"{self.path}:{lineno}: bad fingerprint: {exc}") from exc
                try:
                    book.add(name, fingerprint)
                except ValueError as exc:
                    raise ValueError(f"{self.path}:{lineno}: {exc}") from exc
        return book

    def save(self, book: ContactBook) -> None:
        """Replace the file atomically (temp file in the same directory + rename)."""
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".contacts-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for name, fingerprint in book.persistent_items():
                    f.write(format_entry(name, fingerprint) + "\n")
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise
