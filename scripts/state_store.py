"""Environment state store.

One JSON document per environment name under <terraform_dir>/environments/,
each carrying a version counter. Writes are compare-and-swap on that
version, so two runs racing on the same environment cannot silently
overwrite each other. Per-PR environments get their own documents, which
keeps concurrent runs on disjoint files.

Records are never garbage-collected here; only an explicit teardown
deletes them.
"""
import json
import os
import re
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional

from pipeline_errors import PersistenceConflict

STATE_DIRNAME = "environments"
NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True)
class EnvironmentRecord:
    name: str
    image_id: str
    identity_token: str
    address_output: str
    definition_file: str
    pr_number: Optional[int] = None
    address: str = ""


@dataclass(frozen=True)
class VersionedRecord:
    record: EnvironmentRecord
    version: int


class StateStore:
    def __init__(self, root):
        self.root = Path(root)

    @classmethod
    def for_terraform_dir(cls, terraform_dir) -> "StateStore":
        return cls(Path(terraform_dir) / STATE_DIRNAME)

    def path_for(self, name: str) -> Path:
        if not NAME_RE.match(name):
            raise ValueError(f"Invalid environment name: {name!r}")
        return self.root / f"{name}.json"

    def names(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))

    def get(self, name: str) -> Optional[VersionedRecord]:
        path = self.path_for(name)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return VersionedRecord(record=EnvironmentRecord(**data["record"]),
                               version=int(data["version"]))

    def current_version(self, name: str) -> int:
        """0 means the environment has never been written."""
        existing = self.get(name)
        return existing.version if existing else 0

    def claimant(self, address_output: str) -> Optional[str]:
        """Name of the environment exporting address_output, if any."""
        for name in self.names():
            entry = self.get(name)
            if entry and entry.record.address_output == address_output:
                return name
        return None

    def ensure_address_available(self, name: str, address_output: str) -> None:
        owner = self.claimant(address_output)
        if owner is not None and owner != name:
            raise PersistenceConflict(
                f"Output '{address_output}' is already exported by '{owner}'")

    def put(self, record: EnvironmentRecord, expected_version: int) -> int:
        """Write record if the stored version still equals expected_version.

        Returns the new version.
        """
        current = self.current_version(record.name)
        if current != expected_version:
            raise PersistenceConflict(
                f"State for '{record.name}' is at version {current}, "
                f"expected {expected_version}")
        self.ensure_address_available(record.name, record.address_output)
        version = current + 1
        self._write(self.path_for(record.name),
                    {"version": version, "record": asdict(record)})
        return version

    def delete(self, name: str, expected_version: int) -> None:
        current = self.current_version(name)
        if current == 0:
            return
        if current != expected_version:
            raise PersistenceConflict(
                f"State for '{name}' is at version {current}, "
                f"expected {expected_version}")
        self.path_for(name).unlink()

    def _write(self, path: Path, payload: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
                f.write("\n")
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
