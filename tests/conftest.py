"""Shared fixtures: an in-memory provider that records every call."""

import itertools
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import pytest

from groundwork.config import Settings
from groundwork.errors import NotFoundError
from groundwork.providers.base import Provider, ProviderRegistry, ResourceHandler, ResourceSchema


class FakeCloud:
    """
    Backend shared by all fake handlers.

    Objects are keyed by id; every fake resource has a "name" argument
    that calls are recorded under.
    """

    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.log: List[Tuple[str, str, str]] = []
        self.active = 0
        self.max_active = 0
        self._failures: Dict[Tuple[str, str], List[BaseException]] = {}
        self._delays: Dict[str, float] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def fail_on(self, operation: str, name: str, error: BaseException, times: int = 1):
        """Raise error for the next `times` calls of operation on name."""
        self._failures.setdefault((operation, name), []).extend([error] * times)

    def delay(self, name: str, seconds: float):
        self._delays[name] = seconds

    def calls_for(self, operation: str) -> List[str]:
        return [name for op, name in self.calls if op == operation]

    def names(self) -> List[str]:
        return sorted(obj["name"] for obj in self.objects.values())

    def by_name(self, name: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        for resource_id, obj in self.objects.items():
            if obj["name"] == name:
                return resource_id, obj
        return None

    def enter(self, operation: str, name: str):
        with self._lock:
            self.calls.append((operation, name))
            self.log.append(("start", operation, name))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            pending = self._failures.get((operation, name))
            error = pending.pop(0) if pending else None
        delay = self._delays.get(name)
        if delay:
            time.sleep(delay)
        if error is not None:
            self.leave(operation, name)
            raise error

    def leave(self, operation: str, name: str):
        with self._lock:
            self.active -= 1
            self.log.append(("end", operation, name))

    def next_id(self, prefix: str) -> str:
        with self._lock:
            return f"{prefix}-{next(self._ids)}"


class FakeHandler(ResourceHandler):
    prefix = "obj"

    @property
    def cloud(self) -> FakeCloud:
        return self.provider.cloud

    def create(self, arguments):
        name = arguments["name"]
        self.cloud.enter("create", name)
        try:
            resource_id = self.cloud.next_id(self.prefix)
            computed = {attr: f"{attr}-{resource_id}" for attr in sorted(self.schema.computed)}
            self.cloud.objects[resource_id] = {**arguments, **computed}
            return resource_id, computed
        finally:
            self.cloud.leave("create", name)

    def read(self, resource_id):
        if resource_id not in self.cloud.objects:
            raise NotFoundError(f"{resource_id} not found")
        self.cloud.calls.append(("read", self.cloud.objects[resource_id]["name"]))
        return dict(self.cloud.objects[resource_id])

    def update(self, resource_id, diff):
        obj = self.cloud.objects[resource_id]
        self.cloud.enter("update", obj["name"])
        try:
            for name, change in diff.items():
                obj[name] = change.after
            return dict(obj)
        finally:
            self.cloud.leave("update", obj["name"])

    def delete(self, resource_id):
        if resource_id not in self.cloud.objects:
            raise NotFoundError(f"{resource_id} not found")
        name = self.cloud.objects[resource_id]["name"]
        self.cloud.enter("delete", name)
        try:
            del self.cloud.objects[resource_id]
        finally:
            self.cloud.leave("delete", name)

    def lookup(self, arguments):
        if not self.schema.supports_lookup:
            return None
        found = self.cloud.by_name(arguments["name"])
        return found[0] if found else None


class FakeKeyHandler(FakeHandler):
    type_name = "fake_key"
    prefix = "key"
    schema = ResourceSchema(
        immutable=frozenset({"name", "public_key"}),
        computed=frozenset({"fingerprint", "private_key"}),
        required=frozenset({"name"}),
        supports_lookup=True,
        sensitive=frozenset({"private_key"}),
    )


class FakeGroupHandler(FakeHandler):
    type_name = "fake_group"
    prefix = "sg"
    schema = ResourceSchema(
        immutable=frozenset({"name"}),
        computed=frozenset({"arn"}),
        required=frozenset({"name"}),
    )

    @classmethod
    def normalize(cls, arguments):
        normalized = dict(arguments)
        if isinstance(normalized.get("ports"), list):
            normalized["ports"] = sorted(normalized["ports"])
        return normalized


class FakeInstanceHandler(FakeHandler):
    type_name = "fake_instance"
    prefix = "i"
    schema = ResourceSchema(
        immutable=frozenset({"name", "ami", "key_name"}),
        computed=frozenset({"public_ip"}),
        required=frozenset({"name", "ami"}),
    )


class FakeProvider(Provider):
    name = "fake"
    resource_types = {
        handler.type_name: handler
        for handler in (FakeKeyHandler, FakeGroupHandler, FakeInstanceHandler)
    }

    def __init__(self, config=None, cloud=None):
        super().__init__(config)
        self.cloud = cloud or FakeCloud()


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def registry(cloud):
    reg = ProviderRegistry()
    reg.register(FakeProvider, factory=lambda config: FakeProvider(config, cloud))
    return reg


@pytest.fixture
def settings(tmp_path):
    s = Settings(config_dir=str(tmp_path / "config"))
    s.set("retry.default.delay", 0.0)
    s.set("retry.default.max_delay", 0.0)
    return s


@pytest.fixture
def project(tmp_path):
    """Empty project directory; tests write main.tf into it."""
    path = tmp_path / "project"
    path.mkdir()
    return path


KEY_INSTANCE_TF = '''
variable "ami" {
  type    = string
  default = "ami-1111"
}

variable "instance_type" {
  type    = string
  default = "t3.micro"
}

resource "fake_key" "k1" {
  name = "deploy-key"
}

resource "fake_instance" "i1" {
  name          = "web"
  ami           = var.ami
  instance_type = var.instance_type
  key_name      = fake_key.k1.name
}

output "instance_ip" {
  value = fake_instance.i1.public_ip
}
'''


@pytest.fixture
def key_instance_project(project):
    (project / "main.tf").write_text(KEY_INSTANCE_TF)
    return project
