"""Tests for the convergence applier."""

import threading
from concurrent.futures import ThreadPoolExecutor as StdThreadPoolExecutor

import pytest

from stackforge.engine import StackRunner
from stackforge.engine.applier import ConvergenceApplier, deposed_key
from stackforge.engine.planner import Planner
from stackforge.errors import ActionTimeoutError, DriftError, PlatformError
from stackforge.graph import GraphBuilder
from stackforge.stack import Stack
from stackforge.types import Action, Lifecycle, ResourceStatus
from stackforge.utils.faults import FaultConfig, FaultType

LOG_GROUP = "aws_cloudwatch_log_group.app"
PROFILE = "aws_iam_instance_profile.app"
ROLE = "aws_iam_role.app"


def _runner(stack, platform, tmp_path, config):
    return StackRunner(stack, platform=platform, state_file=str(tmp_path / "state.json"), config=config)


def _statuses(result, status):
    return [e.address for e in result.events if e.status == status]


def _log_group_stack(create_before_destroy: bool) -> Stack:
    stack = Stack("logs")
    name = stack.variable("name", default="/app")
    stack.resource(
        "aws_cloudwatch_log_group",
        "app",
        {"name": name, "retention_in_days": 7},
        lifecycle=Lifecycle(create_before_destroy=create_before_destroy),
    )
    return stack


class TestApply:
    def test_creates_in_dependency_order(self, chain_runner, platform):
        result = chain_runner.apply()
        assert result.succeeded
        applied = _statuses(result, ResourceStatus.APPLIED)
        assert applied.index(ROLE) < applied.index(PROFILE)
        assert sorted(platform.managed()) == ["/app", "demo-profile", "demo-role"]

    def test_events_per_resource(self, chain_runner):
        result = chain_runner.apply()
        role_events = [e.status for e in result.events if e.address == ROLE]
        assert role_events == [ResourceStatus.APPLYING, ResourceStatus.APPLIED]

    def test_state_persisted_after_apply(self, chain_runner):
        chain_runner.apply()
        state = chain_runner.load_state()
        assert state.addresses() == [LOG_GROUP, PROFILE, ROLE]
        assert state.get(PROFILE).dependencies == [ROLE]
        assert state.get(ROLE).token is not None
        assert state.stack == "chain"

    def test_reapply_makes_no_writes(self, chain_runner, platform):
        chain_runner.apply()
        serial = chain_runner.load_state().serial
        platform.reset_calls()

        result = chain_runner.apply()
        assert result.succeeded
        assert platform.write_calls == []
        assert sorted(result.unchanged) == [LOG_GROUP, PROFILE, ROLE]
        assert result.applied == []
        assert chain_runner.load_state().serial == serial

    def test_outputs_projected(self, chain_runner):
        result = chain_runner.apply()
        assert result.outputs["profile_arn"].value == (
            "arn:aws:iam::123456789012:instance-profile/demo-profile"
        )

    def test_update_in_place(self, make_chain, platform, tmp_path, config):
        _runner(make_chain(), platform, tmp_path, config).apply()
        platform.reset_calls()
        result = _runner(make_chain(retention=30), platform, tmp_path, config).apply()
        assert result.applied == [LOG_GROUP]
        assert platform.write_calls == [("update", "aws_cloudwatch_log_group")]
        assert platform.resources["/app"]["inputs"]["retention_in_days"] == 30


class TestReplacement:
    def test_create_before_destroy_order(self, platform, tmp_path, config):
        runner = _runner(_log_group_stack(True), platform, tmp_path, config)
        runner.apply()
        result = runner.apply({"name": "/app-v2"})

        assert result.succeeded
        events = [(e.address, e.status) for e in result.events]
        applied = events.index((LOG_GROUP, ResourceStatus.APPLIED))
        destroying = events.index((deposed_key(LOG_GROUP, "/app"), ResourceStatus.DESTROYING))
        assert applied < destroying
        assert platform.managed("aws_cloudwatch_log_group") == ["/app-v2"]
        assert runner.load_state().deposed == {}

    def test_destroy_before_create_order(self, platform, tmp_path, config):
        runner = _runner(_log_group_stack(False), platform, tmp_path, config)
        runner.apply()
        result = runner.apply({"name": "/app-v2"})

        statuses = [e.status for e in result.events if e.address == LOG_GROUP]
        assert statuses.index(ResourceStatus.DESTROYED) < statuses.index(ResourceStatus.APPLIED)
        assert platform.managed("aws_cloudwatch_log_group") == ["/app-v2"]

    def test_failed_replacement_keeps_old_object(self, platform, tmp_path, config):
        runner = _runner(_log_group_stack(True), platform, tmp_path, config)
        runner.apply()
        platform.faults.configure(
            "create:aws_cloudwatch_log_group", FaultConfig(FaultType.REJECTED)
        )
        result = runner.apply({"name": "/app-v2"})

        assert result.failed == [LOG_GROUP]
        assert platform.managed("aws_cloudwatch_log_group") == ["/app"]
        assert runner.load_state().get(LOG_GROUP).physical_id == "/app"

    def test_interrupted_replacements_cleaned_up_after_new_object(self, platform, tmp_path, config):
        runner = _runner(_log_group_stack(True), platform, tmp_path, config)
        runner.apply()
        platform.faults.configure("ready:aws_cloudwatch_log_group", FaultConfig(FaultType.REJECTED))
        result = runner.apply({"name": "/app-v2"})

        assert result.failed == [LOG_GROUP]
        state = runner.load_state()
        assert state.get(LOG_GROUP).tainted
        assert [r.physical_id for r in state.deposed[LOG_GROUP]] == ["/app"]

        # The tainted /app-v2 is replaced too, so two old objects are pending
        result = runner.apply({"name": "/app-v3"})

        assert result.succeeded
        events = [(e.address, e.status) for e in result.events]
        applied = events.index((LOG_GROUP, ResourceStatus.APPLIED))
        for old in ("/app", "/app-v2"):
            assert applied < events.index((deposed_key(LOG_GROUP, old), ResourceStatus.DESTROYING))
        assert platform.managed("aws_cloudwatch_log_group") == ["/app-v3"]
        assert runner.load_state().deposed == {}

    def test_old_objects_kept_while_replacement_fails(self, platform, tmp_path, config):
        runner = _runner(_log_group_stack(True), platform, tmp_path, config)
        runner.apply()
        platform.faults.configure("ready:aws_cloudwatch_log_group", FaultConfig(FaultType.REJECTED))
        runner.apply({"name": "/app-v2"})
        platform.faults.configure(
            "create:aws_cloudwatch_log_group", FaultConfig(FaultType.REJECTED)
        )
        result = runner.apply({"name": "/app-v3"})

        assert result.failed == [LOG_GROUP]
        assert result.results[deposed_key(LOG_GROUP, "/app")].status == ResourceStatus.SKIPPED
        assert platform.managed("aws_cloudwatch_log_group") == ["/app", "/app-v2"]


class TestRetries:
    def test_transient_errors_retried(self, chain_runner, platform):
        platform.faults.configure("create:aws_iam_role", FaultConfig(FaultType.THROTTLING, times=2))
        result = chain_runner.apply()
        assert result.succeeded
        assert result.results[ROLE].attempts == 3
        assert platform.managed("aws_iam_role") == ["demo-role"]

    def test_bounded_attempts_then_dependents_skipped(self, chain_runner, platform):
        platform.faults.configure("create:aws_iam_role", FaultConfig(FaultType.THROTTLING, times=5))
        result = chain_runner.apply()

        assert not result.succeeded
        assert result.failed == [ROLE]
        assert result.results[ROLE].attempts == 3
        assert result.skipped == [PROFILE]
        assert result.applied == [LOG_GROUP]
        assert platform.faults.fired("create:aws_iam_role") == 3

    def test_permanent_error_not_retried(self, chain_runner, platform):
        platform.faults.configure("create:aws_iam_role", FaultConfig(FaultType.REJECTED))
        result = chain_runner.apply()
        assert result.results[ROLE].attempts == 1
        assert isinstance(result.results[ROLE].error, PlatformError)

    def test_outputs_unavailable_after_failure(self, chain_runner, platform):
        platform.faults.configure("create:aws_iam_role", FaultConfig(FaultType.REJECTED))
        result = chain_runner.apply()
        output = result.outputs["profile_arn"]
        assert not output.available
        assert "aws_iam_role.app failed" in output.reason

    def test_outputs_from_state_hide_resource_never_ready(self, chain_runner, platform):
        platform.faults.configure("ready:aws_iam_instance_profile", FaultConfig(FaultType.REJECTED))
        result = chain_runner.apply()
        assert result.failed == [PROFILE]
        assert chain_runner.load_state().get(PROFILE).tainted

        output = chain_runner.outputs()["profile_arn"]
        assert not output.available
        assert output.value is None
        assert output.reason == f"{PROFILE} failed"

    def test_partial_progress_kept_for_next_run(self, chain_runner, platform):
        platform.faults.configure("create:aws_iam_role", FaultConfig(FaultType.REJECTED))
        chain_runner.apply()
        platform.reset_calls()

        result = chain_runner.apply()
        assert result.succeeded
        assert ("create", "aws_cloudwatch_log_group") not in platform.write_calls


class TestTimeouts:
    def test_timed_out_create_not_duplicated(self, make_chain, platform, tmp_path, config_factory):
        config = config_factory(action_timeout_seconds=0.1)
        platform.faults.configure(
            "create:aws_cloudwatch_log_group",
            FaultConfig(FaultType.SLOW_RESPONSE, times=1, delay_seconds=0.5),
        )
        result = _runner(make_chain(), platform, tmp_path, config).apply()

        assert result.succeeded
        assert result.results[LOG_GROUP].attempts == 2
        assert platform.managed("aws_cloudwatch_log_group") == ["/app"]


    def test_queued_call_timed_from_its_start(self, make_chain, platform, store, config_factory):
        config = config_factory(action_timeout_seconds=0.2)
        built = GraphBuilder(platform).build(make_chain(), {})
        applier = ConvergenceApplier(built, platform, store, store.load(), config=config)
        applier._calls = StdThreadPoolExecutor(max_workers=1)
        release = threading.Event()

        try:
            # A stuck call keeps its thread after timing out
            with pytest.raises(ActionTimeoutError):
                applier._call("stuck", release.wait, timeout=0.05)

            timer = threading.Timer(0.4, release.set)
            timer.start()
            assert applier._call("quick", lambda: "done") == "done"
        finally:
            release.set()
            applier._calls.shutdown(wait=True)


class TestCancellation:
    def test_nothing_new_starts_after_cancel(self, make_chain, platform, tmp_path, config_factory):
        runner = _runner(make_chain(), platform, tmp_path, config_factory(max_parallelism=1))

        def cancel_on_first_apply(event):
            if event.status == ResourceStatus.APPLIED:
                runner.cancel()

        runner.on_event = cancel_on_first_apply
        result = runner.apply()

        assert result.cancelled
        assert not result.succeeded
        assert result.applied == [ROLE]
        assert result.not_started == [PROFILE, LOG_GROUP]
        assert runner.load_state().addresses() == [ROLE]


class TestDrift:
    def test_drift_fails_resource(self, chain_runner, platform):
        chain_runner.apply()
        platform.tamper("/app", retention_in_days=30)

        result = chain_runner.apply()
        assert result.failed == [LOG_GROUP]
        assert isinstance(result.results[LOG_GROUP].error, DriftError)
        assert platform.resources["/app"]["inputs"]["retention_in_days"] == 30

    def test_overwrite_restores_declaration(self, make_chain, platform, tmp_path, config_factory):
        runner = _runner(make_chain(), platform, tmp_path, config_factory(overwrite_drift=True))
        runner.apply()
        platform.tamper("/app", retention_in_days=30)

        result = runner.apply()
        assert result.succeeded
        assert result.results[LOG_GROUP].action == Action.UPDATE
        assert platform.resources["/app"]["inputs"]["retention_in_days"] == 7


class TestConcurrency:
    def test_parallelism_limit(self, ollama_stack, platform, store, variables, config_factory):
        config = config_factory(max_parallelism=2)
        for resource_type in ("aws_iam_role", "aws_security_group", "aws_cloudwatch_log_group"):
            platform.faults.configure(
                f"create:{resource_type}",
                FaultConfig(FaultType.SLOW_RESPONSE, times=None, probability=1.0, delay_seconds=0.05),
            )

        built = GraphBuilder(platform).build(ollama_stack, variables)
        state = store.load()
        planner = Planner(built, platform, state)
        applier = ConvergenceApplier(built, platform, store, state, config=config)
        result = applier.apply(planner.plan(), planner.refreshed)

        assert result.succeeded
        stats = applier.get_stats()
        assert 1 < stats["peak_concurrent"] <= 2
        assert stats["active"] == 0

    def test_external_cancel_event(self, chain_runner, platform):
        event = threading.Event()
        event.set()
        chain_runner.cancel_event = event
        result = chain_runner.apply()
        assert result.cancelled
        assert len(result.not_started) == 3
        assert platform.write_calls == []


class TestDestroy:
    def test_dependents_deleted_first(self, chain_runner, platform):
        chain_runner.apply()
        result = chain_runner.destroy()

        assert result.succeeded
        destroyed = _statuses(result, ResourceStatus.DESTROYED)
        assert destroyed.index(PROFILE) < destroyed.index(ROLE)
        assert platform.managed() == []
        assert chain_runner.load_state().resources == {}

    def test_failed_delete_keeps_producer(self, chain_runner, platform):
        chain_runner.apply()
        platform.faults.configure("delete:aws_iam_instance_profile", FaultConfig(FaultType.REJECTED))
        result = chain_runner.destroy()

        assert result.failed == [PROFILE]
        assert result.skipped == [ROLE]
        assert platform.managed("aws_iam_role") == ["demo-role"]
        assert chain_runner.load_state().addresses() == [PROFILE, ROLE]
