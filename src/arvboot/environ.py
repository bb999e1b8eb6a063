#!/usr/bin/env python3
"""
Environment passed to child processes.

Entries are kept as an ordered list of KEY=VALUE strings, the way the
operating system hands them over. Lookups are linear scans; the list is only
mutated while the supervisor prepares a run, before any child starts.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional

from .errors import InvalidEnvironmentEntry


def dedup_env(entries: Iterable[str]) -> list[str]:
    """Remove all but the first occurrence of each variable."""
    seen: set[str] = set()
    result: list[str] = []
    for entry in entries:
        split = entry.find('=')
        if split < 1:
            raise InvalidEnvironmentEntry(f"invalid environment var: {entry!r}")
        key = entry[:split]
        if key in seen:
            continue
        seen.add(key)
        result.append(entry)
    return result


class Environment:
    def __init__(self, entries: Optional[Iterable[str]] = None) -> None:
        self.entries: list[str] = list(entries or [])

    @classmethod
    def from_os(cls) -> "Environment":
        return cls(f"{key}={value}" for key, value in os.environ.items())

    def get(self, key: str) -> Optional[str]:
        prefix = key + '='
        for entry in self.entries:
            if entry.startswith(prefix):
                return entry[len(prefix):]
        return None

    def set(self, key: str, value: str) -> None:
        """Replace the first KEY= entry, or append one."""
        prefix = key + '='
        for i, entry in enumerate(self.entries):
            if entry.startswith(prefix):
                self.entries[i] = prefix + value
                return
        self.entries.append(prefix + value)

    def prepend(self, key: str, value: str) -> None:
        """Prepend value to an existing KEY= entry, or create it.

        No separator is inserted; PATH callers pass "dir:".
        """
        prefix = key + '='
        for i, entry in enumerate(self.entries):
            if entry.startswith(prefix):
                self.entries[i] = prefix + value + entry[len(prefix):]
                return
        self.entries.append(prefix + value)

    def clean(self, prefixes: Iterable[str]) -> None:
        """Drop every entry starting with one of the given prefixes."""
        prefixes = tuple(prefixes)
        self.entries = [entry for entry in self.entries if not entry.startswith(prefixes)]

    def as_dict(self, extra: Optional[Iterable[str]] = None) -> dict[str, str]:
        """Deduplicated mapping for subprocess; extra entries win."""
        merged = dedup_env([*(extra or []), *self.entries])
        return dict(entry.split('=', 1) for entry in merged)

    def look_path(self, prog: str) -> str:
        """Resolve prog against our PATH, not the parent's."""
        if os.path.isabs(prog):
            return prog
        for entry in self.entries:
            if not entry.startswith('PATH='):
                continue
            for directory in entry[5:].split(os.pathsep):
                if not directory:
                    continue
                candidate = Path(directory) / prog
                if candidate.is_file() and os.access(candidate, os.X_OK):
                    return str(candidate)
        return prog
