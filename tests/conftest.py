"""
Shared fixtures: an in-memory provider that records every API call, and a
state store in a temporary directory.
"""
import threading
import time
from contextlib import contextmanager

import pytest

from stackplan import planner
from stackplan.executor import Executor
from stackplan.models.resource import ResourceSpec
from stackplan.providers.base import ProviderHandle, ResourceCapability, ResourceKind
from stackplan.providers.registry import ProviderRegistry
from stackplan.store import LocalStateStore


class FakeCapability(ResourceCapability):
    poll_interval = 0.0

    def __init__(self, cloud, kind):
        self.cloud = cloud
        self.kind = kind

    def create(self, attributes):
        name = attributes.get("name", "?")
        with self.cloud.tracking("create", name):
            rid = f"{self.kind.value}-{name}"
            live = dict(attributes, id=rid, arn=f"arn:fake:{rid}")
            self.cloud.objects[rid] = live
            return dict(live)

    def read(self, resource_id):
        obj = self.cloud.objects.get(resource_id)
        name = obj.get("name", "?") if obj else "?"
        with self.cloud.tracking("read", name, record=False):
            return dict(obj) if obj is not None else None

    def update(self, resource_id, attributes, prior):
        with self.cloud.tracking("update", attributes.get("name", "?")):
            live = dict(attributes, id=resource_id, arn=f"arn:fake:{resource_id}")
            self.cloud.objects[resource_id] = live
            return dict(live)

    def delete(self, resource_id):
        name = self.cloud.objects.get(resource_id, {}).get("name", "?")
        with self.cloud.tracking("delete", name):
            self.cloud.objects.pop(resource_id, None)

    def is_ready(self, attributes):
        return attributes.get("name") not in self.cloud.never_ready


class FakeCloud(ProviderHandle):
    """Every resource kind, backed by a dict. Resources are identified by their ``name`` input."""

    def __init__(self, name="aws"):
        self.lock = threading.Lock()
        self.calls = []
        self.objects = {}
        self.fail = {}       # (verb, name) -> exception to raise
        self.delay = {}      # name -> seconds each call on it takes
        self.never_ready = set()  # names whose wait_until_ready never succeeds
        self.active = 0
        self.max_active = 0
        super().__init__(name, {kind: FakeCapability(self, kind) for kind in ResourceKind})

    @contextmanager
    def tracking(self, verb, name, record=True):
        with self.lock:
            if record:
                self.calls.append((verb, name))
                self.active += 1
                self.max_active = max(self.max_active, self.active)
        try:
            if record:
                time.sleep(self.delay.get(name, 0))
            exc = self.fail.get((verb, name))
            if exc is not None:
                raise exc
            yield
        finally:
            if record:
                with self.lock:
                    self.active -= 1

    def verbs(self, verb):
        return [name for v, name in self.calls if v == verb]


def make_spec(name, resource_type="aws_s3_bucket", protected=False, depends_on=None, **attrs):
    attributes = {"name": name}
    attributes.update(attrs)
    return ResourceSpec(
        resource_type=resource_type,
        name=name,
        attributes=attributes,
        depends_on=list(depends_on or []),
        protected=protected,
    )


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def registry(cloud):
    reg = ProviderRegistry()
    reg.register(cloud)
    return reg


@pytest.fixture
def store(tmp_path):
    return LocalStateStore(str(tmp_path / "state"), stack="test")


@pytest.fixture
def spec():
    return make_spec


@pytest.fixture
def apply_stack(registry, store):
    """Diff + Execute under the lease, the way the CLI does it."""

    def run(resources, outputs=(), destroy=False, **executor_kwargs):
        stack = planner.load(resources, outputs, registry)
        with store.lock("tester", "apply") as lease:
            snapshot = store.read()
            plan = planner.diff(stack, snapshot, destroy=destroy)
            result = Executor(registry, store, lease, **executor_kwargs).execute(plan, stack, snapshot)
        return plan, result

    return run
