"""Persistent VM record store: one JSON file per VM."""

from __future__ import annotations

import json
from pathlib import Path
from typing import List

from vmm.constants import VM_NAME_RE
from vmm.exceptions import AlreadyExists, ManagerError, ValidationFailure, VMNotFound
from vmm.models import VMRecord
from vmm.utils import atomic_write_text, ensure_directory, exclusive_write_text, log


def validate_vm_name(name: str) -> str:
    if not name or not VM_NAME_RE.match(name):
        raise ValidationFailure(
            f"Invalid VM name '{name}': use letters, digits, '.', '_' or '-' (must start with a letter or digit)"
        )
    return name


class VMStore:
    """Addressable VM records under a single directory.

    :meth:`create` is exclusive across processes. There is no locking beyond
    the atomic rename performed by :meth:`save`, so concurrent writers to an
    existing record race with last-writer-wins.
    """

    suffix = ".json"

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        return self.directory / f"{validate_vm_name(name)}{self.suffix}"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def create(self, record: VMRecord) -> VMRecord:
        """Write a new record; fails if the name is taken, even by a concurrent writer."""
        ensure_directory(self.directory)
        payload = json.dumps(record.to_dict(), indent=2) + "\n"
        try:
            exclusive_write_text(self.path_for(record.name), payload)
        except FileExistsError:
            raise AlreadyExists(f"VM '{record.name}' already exists")
        return record

    def load(self, name: str) -> VMRecord:
        path = self.path_for(name)
        if not path.exists():
            raise VMNotFound(f"VM '{name}' not found")
        return self._read(path)

    def save(self, record: VMRecord) -> None:
        ensure_directory(self.directory)
        payload = json.dumps(record.to_dict(), indent=2) + "\n"
        atomic_write_text(self.path_for(record.name), payload)

    def delete(self, name: str) -> None:
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            raise VMNotFound(f"VM '{name}' not found")

    def list(self) -> List[VMRecord]:
        """Every readable record ordered by creation time; corrupt files are skipped."""
        if not self.directory.is_dir():
            return []
        records: List[VMRecord] = []
        for path in sorted(self.directory.glob(f"*{self.suffix}")):
            if not path.is_file():
                continue
            try:
                records.append(self._read(path))
            except ManagerError as exc:
                log("DEBUG", f"Skipping unreadable VM record {path.name}: {exc}")
        records.sort(key=lambda record: (record.created_at, record.name))
        return records

    def _read(self, path: Path) -> VMRecord:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")
            return VMRecord.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise ManagerError(f"Failed to read VM record {path}: {exc}") from exc
