"""
Executor tests: ordering, propagation, idempotence and failure handling.
"""
import threading
import time

import pytest

from stackplan import planner
from stackplan.errors import (
    LockHeldError,
    OperationTimeoutError,
    ProtectedResourceError,
    ProvisionError,
)
from stackplan.executor import Executor
from stackplan.expressions import Interpolation, Reference
from stackplan.models.plan import Action
from stackplan.models.resource import OutputSpec
from stackplan.store import LocalStateStore


def _chain(spec, names):
    """a <- b <- c ...: each resource takes the previous one's id."""
    specs = [spec(names[0])]
    for prev, name in zip(names, names[1:]):
        specs.append(spec(name, upstream=Reference(f"aws_s3_bucket.{prev}", ("id",))))
    return specs


# --------------------------------------------------------- propagation
class TestPropagation:
    def test_dependency_created_before_dependent(self, cloud, spec, apply_stack):
        resources = [
            spec("policy", resource_type="aws_s3_bucket_policy",
                 bucket_arn=Reference("aws_s3_bucket.site", ("arn",))),
            spec("site"),
        ]
        apply_stack(resources)
        assert cloud.verbs("create") == ["site", "policy"]

    def test_live_value_reaches_dependent(self, cloud, spec, apply_stack):
        resources = [
            spec("site"),
            spec("policy", resource_type="aws_s3_bucket_policy",
                 resource=Interpolation((Reference("aws_s3_bucket.site", ("arn",)), "/*"))),
        ]
        apply_stack(resources)
        policy = cloud.objects["access-policy-policy"]
        assert policy["resource"] == "arn:fake:object-storage-bucket-site/*"

    def test_state_records_dependencies(self, spec, store, apply_stack):
        apply_stack(_chain(spec, ["a", "b"]))
        snapshot = store.read()
        assert snapshot.resources["aws_s3_bucket.b"].dependencies == ["aws_s3_bucket.a"]
        assert snapshot.resources["aws_s3_bucket.b"].inputs["upstream"] == "object-storage-bucket-a"

    def test_outputs_evaluated_from_live_state(self, spec, store, apply_stack):
        outputs = [
            OutputSpec(name="arn", value=Reference("aws_s3_bucket.site", ("arn",))),
            OutputSpec(name="secret", value="hunter2", sensitive=True),
        ]
        _, result = apply_stack([spec("site")], outputs)
        assert result.outputs["arn"]["value"] == "arn:fake:object-storage-bucket-site"
        assert result.outputs["secret"]["sensitive"] is True
        assert store.read().outputs == result.outputs

    def test_upstream_update_promotes_unchanged_dependent(self, cloud, spec, apply_stack, store):
        apply_stack([
            spec("a", version="1"),
            spec("b", copied=Reference("aws_s3_bucket.a", ("version",))),
        ])
        plan, result = apply_stack([
            spec("a", version="2"),
            spec("b", copied=Reference("aws_s3_bucket.a", ("version",))),
        ])
        assert plan.get("aws_s3_bucket.b").action == Action.UPDATE
        assert plan.get("aws_s3_bucket.b").reason == "upstream value changed"
        assert cloud.verbs("update") == ["a", "b"]
        assert store.read().resources["aws_s3_bucket.b"].inputs["copied"] == "2"


# --------------------------------------------------------- idempotence
class TestIdempotence:
    def test_second_apply_makes_no_calls(self, cloud, spec, store, apply_stack):
        resources = _chain(spec, ["a", "b", "c"])
        apply_stack(resources)
        serial = store.read().serial
        calls = len(cloud.calls)

        plan, result = apply_stack(resources)
        assert plan.is_empty
        assert result.applied == []
        assert len(cloud.calls) == calls
        assert store.read().serial == serial

    def test_update_skipped_when_live_inputs_match(self, cloud, spec, apply_stack):
        apply_stack(_chain(spec, ["a", "b"]))
        # a changes in a way b does not read, so b's re-resolved inputs are identical
        plan, result = apply_stack([
            spec("a", tag="new"),
            spec("b", upstream=Reference("aws_s3_bucket.a", ("id",))),
        ])
        assert plan.get("aws_s3_bucket.b").action == Action.NOOP
        assert result.skipped == []
        assert cloud.verbs("update") == ["a"]

    def test_update_skipped_when_recreated_dependency_keeps_its_id(self, cloud, spec, store, apply_stack):
        apply_stack(_chain(spec, ["a", "b"]))
        with store.lock("tester", "refresh") as lease:
            snapshot = store.read()
            del snapshot.resources["aws_s3_bucket.a"]
            store.write(snapshot, lease)
        cloud.objects.pop("object-storage-bucket-a")

        plan, result = apply_stack(_chain(spec, ["a", "b"]))
        assert plan.get("aws_s3_bucket.b").action == Action.UPDATE
        assert result.skipped == ["aws_s3_bucket.b"]
        assert cloud.verbs("update") == []


# --------------------------------------------------------- failures
class TestFailFast:
    def test_third_of_five_fails(self, cloud, spec, store, apply_stack):
        names = ["a", "b", "c", "d", "e"]
        cloud.fail[("create", "c")] = RuntimeError("AccessDenied")

        with pytest.raises(ProvisionError) as exc_info:
            apply_stack(_chain(spec, names))
        assert exc_info.value.address == "aws_s3_bucket.c"
        assert "AccessDenied" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        assert sorted(store.read().resources) == ["aws_s3_bucket.a", "aws_s3_bucket.b"]
        assert cloud.verbs("create") == ["a", "b", "c"]

    def test_rerun_resumes_after_failure(self, cloud, spec, store, apply_stack):
        names = ["a", "b", "c", "d", "e"]
        cloud.fail[("create", "c")] = RuntimeError("AccessDenied")
        with pytest.raises(ProvisionError):
            apply_stack(_chain(spec, names))

        del cloud.fail[("create", "c")]
        plan, _ = apply_stack(_chain(spec, names))
        assert [op.address for op in plan.changes] == [
            "aws_s3_bucket.c", "aws_s3_bucket.d", "aws_s3_bucket.e"
        ]
        assert plan.summary()["no-op"] == 2
        assert len(store.read().resources) == 5

    def test_no_rollback_of_completed_operations(self, cloud, spec, apply_stack):
        cloud.fail[("create", "b")] = RuntimeError("boom")
        with pytest.raises(ProvisionError):
            apply_stack(_chain(spec, ["a", "b"]))
        assert cloud.verbs("delete") == []
        assert "object-storage-bucket-a" in cloud.objects

    def test_failed_wait_keeps_created_resource(self, cloud, spec, store, apply_stack):
        cloud.fail[("read", "x")] = RuntimeError("throttled")
        with pytest.raises(ProvisionError):
            apply_stack([spec("x")])

        recorded = store.read().resources["aws_s3_bucket.x"]
        assert recorded.resource_id == "object-storage-bucket-x"
        assert recorded.spec_hash == ""

        del cloud.fail[("read", "x")]
        plan, _ = apply_stack([spec("x")])
        assert plan.get("aws_s3_bucket.x").action == Action.UPDATE
        assert cloud.verbs("create") == ["x"]

    def test_operation_timeout(self, cloud, spec, store, apply_stack):
        cloud.delay["slow"] = 1.0
        with pytest.raises(OperationTimeoutError) as exc_info:
            apply_stack([spec("slow")], operation_timeout=0.1)
        assert exc_info.value.address == "aws_s3_bucket.slow"
        assert isinstance(exc_info.value, TimeoutError)
        assert "0.1s" in str(exc_info.value)

    def test_late_create_is_still_recorded(self, cloud, spec, store, apply_stack):
        cloud.delay["slow"] = 0.5
        with pytest.raises(OperationTimeoutError):
            apply_stack([spec("slow")], operation_timeout=0.1)
        assert store.read().resources["aws_s3_bucket.slow"].resource_id == "object-storage-bucket-slow"

        plan, _ = apply_stack([spec("slow")])
        assert plan.get("aws_s3_bucket.slow").action == Action.NOOP
        assert cloud.verbs("create") == ["slow"]

    def test_create_never_ready_is_recorded_tainted(self, cloud, spec, store, apply_stack):
        cloud.never_ready.add("cdn")
        with pytest.raises(OperationTimeoutError):
            apply_stack([spec("cdn")], operation_timeout=0.2)

        recorded = store.read().resources["aws_s3_bucket.cdn"]
        assert recorded.resource_id == "object-storage-bucket-cdn"
        assert recorded.spec_hash == ""

        cloud.never_ready.clear()
        plan, _ = apply_stack([spec("cdn")])
        assert plan.get("aws_s3_bucket.cdn").action == Action.UPDATE
        assert cloud.verbs("create") == ["cdn"]
        assert len(cloud.objects) == 1

    def test_create_still_running_is_abandoned(self, cloud, spec, store, apply_stack):
        cloud.delay["hung"] = 1.0
        with pytest.raises(OperationTimeoutError):
            apply_stack([spec("hung")], operation_timeout=0.1, settle_timeout=0.1)
        assert "aws_s3_bucket.hung" not in store.read().resources


# --------------------------------------------------------- protected resources
class TestProtected:
    def test_protected_delete_refused_before_any_call(self, cloud, spec, store, apply_stack):
        apply_stack([spec("keep", protected=True), spec("other")])
        calls = list(cloud.calls)

        with pytest.raises(ProtectedResourceError) as exc_info:
            apply_stack([])
        assert exc_info.value.address == "aws_s3_bucket.keep"
        assert cloud.calls == calls
        assert len(store.read().resources) == 2

    def test_protection_recorded_without_api_call(self, cloud, spec, store, apply_stack):
        apply_stack([spec("keep")])
        calls = len(cloud.calls)
        apply_stack([spec("keep", protected=True)])
        assert len(cloud.calls) == calls
        assert store.read().resources["aws_s3_bucket.keep"].protected is True

    def test_unprotected_resource_can_be_destroyed(self, cloud, spec, store, apply_stack):
        apply_stack(_chain(spec, ["a", "b"]))
        apply_stack(_chain(spec, ["a", "b"]), destroy=True)
        assert cloud.verbs("delete") == ["b", "a"]
        assert store.read().resources == {}


# --------------------------------------------------------- concurrency
class TestParallelism:
    def test_independent_branches_run_concurrently(self, cloud, spec, apply_stack):
        for name in ("a", "b", "c"):
            cloud.delay[name] = 0.2
        apply_stack([spec("a"), spec("b"), spec("c")], parallelism=3)
        assert cloud.max_active == 3

    def test_parallelism_one_is_sequential(self, cloud, spec, apply_stack):
        for name in ("a", "b", "c"):
            cloud.delay[name] = 0.05
        apply_stack([spec("a"), spec("b"), spec("c")], parallelism=1)
        assert cloud.max_active == 1
        assert cloud.verbs("create") == ["a", "b", "c"]

    def test_dependents_wait_for_their_dependency(self, cloud, spec, apply_stack):
        cloud.delay["a"] = 0.2
        apply_stack(_chain(spec, ["a", "b"]) + [spec("z")], parallelism=4)
        creates = cloud.verbs("create")
        assert creates.index("a") < creates.index("b")

    def test_events_reported(self, spec, registry, store):
        events = []
        stack = planner.load([spec("a")], (), registry)
        with store.lock("tester", "apply") as lease:
            snapshot = store.read()
            plan = planner.diff(stack, snapshot)
            Executor(registry, store, lease, on_event=lambda k, op: events.append((k, op.address))) \
                .execute(plan, stack, snapshot)
        assert events == [("start", "aws_s3_bucket.a"), ("done", "aws_s3_bucket.a")]


# --------------------------------------------------------- lease
class TestLease:
    def test_lease_held_for_a_run_longer_than_its_ttl(self, cloud, spec, registry, tmp_path):
        store = LocalStateStore(str(tmp_path / "state"), stack="test", lease_ttl=0.3)
        cloud.delay["slow"] = 1.0
        stack = planner.load([spec("slow")], (), registry)
        with store.lock("alice", "apply") as lease:
            snapshot = store.read()
            plan = planner.diff(stack, snapshot)
            run = threading.Thread(
                target=Executor(registry, store, lease).execute, args=(plan, stack, snapshot)
            )
            run.start()
            time.sleep(0.6)
            rival = LocalStateStore(store.directory, stack="test", lease_ttl=0.3)
            with pytest.raises(LockHeldError):
                rival.acquire("bob", "apply")
            run.join()
        assert "aws_s3_bucket.slow" in store.read().resources
