"""Unit tests for applying plans: retries, failure policies, concurrency, cancellation."""
import threading

import pytest

from infra_reconciler.exceptions import OperationFailed, RemoteRejection, TransientRemoteError
from infra_reconciler.executor import Executor, FailurePolicy, OperationStatus
from infra_reconciler.loader import parse_document
from infra_reconciler.models import Action, ResourceKey, ResourceKind
from infra_reconciler.planner import PlanBuilder
from tests.fixtures.control_plane_fixtures import (
    CHAIN_DOCUMENT,
    HELLO_WEB_DOCUMENT,
    BrokenCreateControlPlane,
    FlakyControlPlane,
    RecordingControlPlane,
    cluster,
)


def transient(name="c1"):
    return TransientRemoteError("rate exceeded", kind=ResourceKind.CLUSTER, name=name)


def make_executor(plane, observed, settings, **kwargs):
    sleeps = []
    executor = Executor(plane, observed, settings=settings, sleep=sleeps.append, **kwargs)
    return executor, sleeps


class TestApply:
    def test_creates_every_resource_and_records_observed_state(self, local_plane, observed, settings):
        desired = parse_document(HELLO_WEB_DOCUMENT)
        executor, _ = make_executor(local_plane, observed, settings)

        report = executor.execute(PlanBuilder().build(desired, observed))

        assert report.ok
        assert len(report.by_status(OperationStatus.SUCCEEDED)) == 6
        assert len(local_plane.mutating_calls) == 6
        service = observed.get(ResourceKey(ResourceKind.SERVICE, "hello-service"))
        assert service["desired_count"] == 2

    def test_second_apply_is_all_noop_and_issues_no_mutating_calls(self, local_plane, observed, settings):
        desired = parse_document(HELLO_WEB_DOCUMENT)
        executor, _ = make_executor(local_plane, observed, settings)
        executor.execute(PlanBuilder().build(desired, observed))
        calls_after_first_apply = len(local_plane.mutating_calls)

        observed.refresh(local_plane, desired.specs)
        second_plan = PlanBuilder().build(desired, observed)
        report = executor.execute(second_plan)

        assert all(op.action is Action.NOOP for op in second_plan)
        assert report.ok
        assert report.mutating_calls == 0
        assert len(local_plane.mutating_calls) == calls_after_first_apply
        assert {r.status for r in report.results} == {OperationStatus.UNCHANGED}

    def test_update_applies_only_changed_attributes(self, local_plane, observed, settings):
        desired = parse_document(CHAIN_DOCUMENT)
        executor, _ = make_executor(local_plane, observed, settings)
        executor.execute(PlanBuilder().build(desired, observed))
        local_plane.set_attributes(ResourceKind.SERVICE, "s1", desired_count=4)
        observed.refresh(local_plane, desired.specs)

        report = executor.execute(PlanBuilder().build(desired, observed))

        assert report.ok
        assert local_plane.mutating_calls[-1] == ("update", ResourceKey(ResourceKind.SERVICE, "s1"))
        assert observed.get(ResourceKey(ResourceKind.SERVICE, "s1"))["desired_count"] == 2


class TestRetries:
    def test_three_retries_then_operation_failed_on_fourth_failure(self, observed, settings):
        plane = FlakyControlPlane({"c1": [transient() for _ in range(4)]})
        executor, sleeps = make_executor(plane, observed, settings, base_delay=0.5, backoff=2.0)
        operation = PlanBuilder().build(parse_document([cluster("c1")])).operations[0]

        with pytest.raises(OperationFailed) as excinfo:
            executor.apply_operation(operation)

        assert plane.attempts["c1"] == 4
        assert excinfo.value.attempts == 4
        assert isinstance(excinfo.value.cause, TransientRemoteError)
        assert excinfo.value.name == "c1"
        assert excinfo.value.kind is ResourceKind.CLUSTER
        assert sleeps == [0.5, 1.0, 2.0]
        assert ResourceKey(ResourceKind.CLUSTER, "c1") not in observed

    def test_recovers_when_a_retry_succeeds(self, observed, settings):
        plane = FlakyControlPlane({"c1": [transient(), transient()]})
        executor, sleeps = make_executor(plane, observed, settings)

        report = executor.execute(PlanBuilder().build(parse_document([cluster("c1")])))

        assert report.ok
        assert report.results[0].attempts == 3
        assert len(sleeps) == 2
        assert ResourceKey(ResourceKind.CLUSTER, "c1") in observed

    def test_rejection_is_not_retried(self, observed, settings):
        rejection = RemoteRejection("invalid parameter", kind=ResourceKind.CLUSTER, name="c1")
        plane = FlakyControlPlane({"c1": [rejection]})
        executor, sleeps = make_executor(plane, observed, settings)

        report = executor.execute(PlanBuilder().build(parse_document([cluster("c1")])))

        assert not report.ok
        assert report.failures[0].attempts == 1
        assert report.failures[0].cause is rejection
        assert sleeps == []
        with pytest.raises(OperationFailed):
            report.raise_for_failure()


class TestFailurePolicy:
    DOCUMENT = [cluster("a"), cluster("a-child", "a"), cluster("b"), cluster("b-child", "b")]

    def test_halt_stops_everything_after_first_failure(self, observed, settings):
        plane = FlakyControlPlane({"a": [RemoteRejection("no", name="a")]})
        executor, _ = make_executor(plane, observed, settings, max_workers=1,
                                    failure_policy=FailurePolicy.HALT)

        report = executor.execute(PlanBuilder().build(parse_document(self.DOCUMENT)))

        statuses = {r.key.name: r.status for r in report.results}
        assert statuses == {
            "a": OperationStatus.FAILED,
            "a-child": OperationStatus.SKIPPED,
            "b": OperationStatus.SKIPPED,
            "b-child": OperationStatus.SKIPPED,
        }
        assert plane.mutating_calls == []

    def test_continue_runs_independent_branches(self, observed, settings):
        plane = FlakyControlPlane({"a": [RemoteRejection("no", name="a")]})
        executor, _ = make_executor(plane, observed, settings, max_workers=1,
                                    failure_policy="continue")

        report = executor.execute(PlanBuilder().build(parse_document(self.DOCUMENT)))

        statuses = {r.key.name: r.status for r in report.results}
        assert statuses["a"] is OperationStatus.FAILED
        assert statuses["a-child"] is OperationStatus.SKIPPED
        assert statuses["b"] is OperationStatus.SUCCEEDED
        assert statuses["b-child"] is OperationStatus.SUCCEEDED
        assert "a" in report.get(ResourceKey(ResourceKind.CLUSTER, "a-child")).reason

    def test_continue_skips_transitive_dependents(self, observed, settings):
        plane = FlakyControlPlane({"a": [RemoteRejection("no", name="a")]})
        executor, _ = make_executor(plane, observed, settings, failure_policy="continue")
        document = [cluster("a"), cluster("b", "a"), cluster("c", "b"), cluster("d")]

        report = executor.execute(PlanBuilder().build(parse_document(document)))

        statuses = {r.key.name: r.status for r in report.results}
        assert statuses == {
            "a": OperationStatus.FAILED,
            "b": OperationStatus.SKIPPED,
            "c": OperationStatus.SKIPPED,
            "d": OperationStatus.SUCCEEDED,
        }

    def test_unexpected_error_becomes_a_failed_result(self, observed, settings):
        plane = BrokenCreateControlPlane({"a": ValueError("invalid literal for int() with base 10: 'two'")})
        executor, sleeps = make_executor(plane, observed, settings, max_workers=1,
                                         failure_policy="continue")

        report = executor.execute(PlanBuilder().build(parse_document([cluster("a"), cluster("b")])))

        failed = report.get(ResourceKey(ResourceKind.CLUSTER, "a"))
        assert failed.status is OperationStatus.FAILED
        assert isinstance(failed.error, OperationFailed)
        assert isinstance(failed.error.cause, ValueError)
        assert failed.attempts == 1
        assert sleeps == []
        assert report.get(ResourceKey(ResourceKind.CLUSTER, "b")).status is OperationStatus.SUCCEEDED
        assert not report.ok


class TestConcurrency:
    def test_independent_operations_run_concurrently(self, observed, settings):
        barrier = threading.Barrier(2, timeout=5)
        plane = RecordingControlPlane(barrier=barrier)
        executor, _ = make_executor(plane, observed, settings, max_workers=2)

        report = executor.execute(PlanBuilder().build(parse_document([cluster("a"), cluster("b")])))

        assert report.ok
        assert not barrier.broken

    def test_dependents_start_only_after_dependencies_finish(self, observed, settings):
        plane = RecordingControlPlane()
        executor, _ = make_executor(plane, observed, settings, max_workers=4)
        desired = parse_document(HELLO_WEB_DOCUMENT)

        report = executor.execute(PlanBuilder().build(desired))

        assert report.ok
        for spec in desired:
            for dep in desired.dependencies_of(spec.key):
                assert plane.index_of("finish", dep) < plane.index_of("start", spec.key)

    def test_single_worker_follows_plan_order(self, observed, settings):
        plane = RecordingControlPlane()
        executor, _ = make_executor(plane, observed, settings, max_workers=1)
        plan = PlanBuilder().build(parse_document(HELLO_WEB_DOCUMENT))

        executor.execute(plan)

        started = [key for event, key in plane.events if event == "start"]
        assert started == plan.order


class TestCancellation:
    def test_cancelled_before_start_issues_no_calls(self, local_plane, observed, settings):
        cancel = threading.Event()
        cancel.set()
        executor, _ = make_executor(local_plane, observed, settings)

        report = executor.execute(PlanBuilder().build(parse_document(CHAIN_DOCUMENT)), cancel_event=cancel)

        assert report.cancelled
        assert {r.status for r in report.results} == {OperationStatus.CANCELLED}
        assert local_plane.mutating_calls == []

    def test_cancel_between_operations_lets_in_flight_call_finish(self, observed, settings):
        cancel = threading.Event()
        plane = RecordingControlPlane(on_create=lambda spec: cancel.set())
        executor, _ = make_executor(plane, observed, settings, max_workers=1)

        report = executor.execute(PlanBuilder().build(parse_document(CHAIN_DOCUMENT)), cancel_event=cancel)

        statuses = [r.status for r in report.results]
        assert statuses == [OperationStatus.SUCCEEDED, OperationStatus.CANCELLED, OperationStatus.CANCELLED]
        assert ResourceKey(ResourceKind.CLUSTER, "c1") in observed
