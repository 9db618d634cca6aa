"""
State store.

The state document records, for every applied resource, its provider id,
realized attributes and the arguments it was applied with. It is a
single JSON file next to the configuration:

    {
      "format_version": 1,
      "lineage": "<uuid of this state's history>",
      "serial": 7,
      "resources": {"aws_instance.web": {...}},
      "outputs": {"instance_ip": {"value": "...", "sensitive": false}},
      "checksum": "<sha256 of resources and outputs>"
    }

Writes replace the file atomically, so a crash leaves either the previous
or the new document. A separate lock file serializes invocations.
"""

import copy
import getpass
import hashlib
import json
import logging
import os
import shutil
import socket
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from ..errors import LockedStateError, StateCorruptError, StateError
from ..security import InputSanitizer

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


@dataclass
class StateEntry:
    """
    Last-applied form of one resource.

    Attributes:
        address: Resource address, e.g. "aws_instance.web"
        type: Resource type
        id: Provider-assigned identifier
        outputs: Realized attributes (arguments merged with computed values)
        arguments: Arguments the resource was last applied with
        dependencies: Addresses it depended on when applied
        deposed: Ids of replaced objects whose delete has not yet succeeded
    """
    address: str
    type: str
    id: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    arguments: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    deposed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateEntry":
        return cls(
            address=data["address"],
            type=data["type"],
            id=data["id"],
            outputs=data.get("outputs", {}),
            arguments=data.get("arguments", {}),
            dependencies=list(data.get("dependencies", [])),
            deposed=list(data.get("deposed", [])),
        )


@dataclass
class StateResource:
    """A single resource as listed by `state list`."""
    address: str
    type: str
    name: str
    id: str


def _who() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


def _checksum(resources: Dict[str, Any], outputs: Dict[str, Any]) -> str:
    payload = json.dumps({"resources": resources, "outputs": outputs}, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class StateStore:
    """
    File-backed state with atomic writes and a fail-fast lock.

    load/commit/remove are safe to call from executor worker threads;
    an in-process mutex serializes writes to the document.
    """

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self.lock_path = self.path + ".lock"
        self.backup_path = self.path + ".backup"
        self._mutex = threading.RLock()
        self._doc: Optional[Dict[str, Any]] = None
        self._lock_id: Optional[str] = None
        self._backed_up = False

    # ------------------------------------------------------------------
    # Document access
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def _empty_document(self) -> Dict[str, Any]:
        return {
            "format_version": FORMAT_VERSION,
            "lineage": None,
            "serial": 0,
            "resources": {},
            "outputs": {},
        }

    def _read_document(self) -> Dict[str, Any]:
        if not self.exists():
            logger.debug(f"No state at {self.path}, starting empty")
            return self._empty_document()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateCorruptError(f"State file {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise StateError(f"Failed to read state file {self.path}: {e}") from e

        version = doc.get("format_version")
        if version != FORMAT_VERSION:
            raise StateCorruptError(f"Unsupported state format version {version!r}")

        resources = doc.get("resources", {})
        outputs = doc.get("outputs", {})
        if doc.get("checksum") != _checksum(resources, outputs):
            raise StateCorruptError(f"State file {self.path} failed its checksum")

        doc.setdefault("serial", 0)
        doc.setdefault("lineage", str(uuid.uuid4()))
        return doc

    def _document(self) -> Dict[str, Any]:
        if self._doc is None:
            self._doc = self._read_document()
        return self._doc

    def load(self) -> Dict[str, StateEntry]:
        """
        Load the state from disk.

        Returns:
            Mapping of address to StateEntry (copies; safe to modify)

        Raises:
            StateCorruptError: If the document fails validation
        """
        with self._mutex:
            self._doc = self._read_document()
            return {
                address: StateEntry.from_dict(copy.deepcopy(data))
                for address, data in self._doc["resources"].items()
            }

    @property
    def lineage(self) -> Optional[str]:
        """History id of this state; None until the first write."""
        with self._mutex:
            return self._document()["lineage"]

    @property
    def serial(self) -> int:
        with self._mutex:
            return self._document()["serial"]

    def entries(self) -> Dict[str, StateEntry]:
        """Current entries as held in memory (loading once if needed)."""
        with self._mutex:
            return {
                address: StateEntry.from_dict(copy.deepcopy(data))
                for address, data in self._document()["resources"].items()
            }

    def commit(self, address: str, entry: StateEntry):
        """Record a successfully applied resource and persist immediately."""
        with self._mutex:
            doc = self._document()
            doc["resources"][address] = entry.to_dict()
            self._write(doc)
        logger.debug(f"Committed {address} (id={entry.id})")

    def remove(self, address: str):
        """Forget a resource and persist immediately."""
        with self._mutex:
            doc = self._document()
            if address not in doc["resources"]:
                return
            del doc["resources"][address]
            self._write(doc)
        logger.debug(f"Removed {address} from state")

    def outputs(self) -> Dict[str, Dict[str, Any]]:
        with self._mutex:
            return copy.deepcopy(self._document().get("outputs", {}))

    def set_outputs(self, outputs: Dict[str, Dict[str, Any]]):
        with self._mutex:
            doc = self._document()
            if doc.get("outputs", {}) == outputs:
                return
            doc["outputs"] = copy.deepcopy(outputs)
            self._write(doc)

    def _disk_serial(self) -> Optional[int]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f).get("serial", 0)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError, AttributeError, OSError):
            return None

    def _write(self, doc: Dict[str, Any]):
        serial = doc.get("serial", 0)
        on_disk = self._disk_serial()
        if on_disk is not None and on_disk != serial:
            raise StateError(
                f"State file {self.path} was changed by another invocation "
                f"(serial {on_disk}, expected {serial})"
            )

        lineage = doc.get("lineage") or str(uuid.uuid4())
        checksum = _checksum(doc["resources"], doc.get("outputs", {}))
        written = {**doc, "lineage": lineage, "serial": serial + 1, "checksum": checksum}

        directory = os.path.dirname(self.path)
        os.makedirs(directory, exist_ok=True)

        if not self._backed_up and self.exists():
            shutil.copy2(self.path, self.backup_path)
            self._backed_up = True

        fd, tmp_path = tempfile.mkstemp(prefix=".groundwork-state-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(written, f, indent=2, sort_keys=True)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StateError(f"Failed to write state file {self.path}: {e}") from e
        doc.update(written)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock(self, operation: str) -> Dict[str, Any]:
        """
        Acquire the state lock without waiting.

        Returns:
            The lock record written to the lock file

        Raises:
            LockedStateError: If another invocation holds the lock
        """
        info = {
            "id": str(uuid.uuid4()),
            "operation": operation,
            "who": _who(),
            "pid": os.getpid(),
            "created": datetime.now(timezone.utc).isoformat(),
            "path": self.path,
        }
        os.makedirs(os.path.dirname(self.lock_path), exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise LockedStateError(self.lock_info() or {"path": self.lock_path})

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info, f, indent=2)

        self._lock_id = info["id"]
        logger.debug(f"Acquired state lock {info['id']} for {operation}")
        return info

    def lock_info(self) -> Optional[Dict[str, Any]]:
        """Read the current lock record, or None if unlocked."""
        try:
            with open(self.lock_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError):
            return {"path": self.lock_path}

    def unlock(self):
        """Release a lock held by this store."""
        if self._lock_id is None:
            return
        try:
            os.remove(self.lock_path)
        except FileNotFoundError:
            logger.warning(f"State lock file {self.lock_path} was already removed")
        logger.debug(f"Released state lock {self._lock_id}")
        self._lock_id = None

    def force_unlock(self, lock_id: str):
        """
        Remove a stale lock left by a crashed invocation.

        Raises:
            StateError: If no lock is held or the id does not match
        """
        info = self.lock_info()
        if info is None:
            raise StateError("State is not locked")
        if info.get("id") != lock_id:
            raise StateError(f"Lock id mismatch: state is locked by {info.get('id', '?')}")
        os.remove(self.lock_path)
        logger.info(f"Force-released state lock {lock_id}")

    @contextmanager
    def locked(self, operation: str) -> Iterator[Dict[str, Any]]:
        """Hold the state lock for the duration of the block."""
        info = self.lock(operation)
        try:
            yield info
        finally:
            self.unlock()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def list_resources(self) -> List[StateResource]:
        """List all resources in state, ordered by address."""
        resources = []
        for address, entry in sorted(self.load().items()):
            res_type, res_name = InputSanitizer.sanitize_resource_address(address)
            resources.append(StateResource(address=address, type=res_type, name=res_name, id=entry.id))
        return resources

    def show(self, address: str) -> StateEntry:
        """
        Get one resource's state entry.

        Raises:
            SecurityError: If the address is malformed
            StateError: If the resource is not in state
        """
        InputSanitizer.sanitize_resource_address(address)
        entries = self.load()
        if address not in entries:
            raise StateError(f"No resource {address} in state")
        return entries[address]

    def rm(self, address: str):
        """
        Forget a resource without destroying it.

        Raises:
            StateError: If the resource is not in state
        """
        self.show(address)
        self.remove(address)
        logger.info(f"Removed {address} from state")
