"""Tests for BackoffPolicy and ConnectionSupervisor."""

import threading
import time

import pytest

from smibar.errors import AUTH_FAILED, INVALID_TARGET, REFUSED, RemoteCommandError
from smibar.events import EVENT_ERROR, EVENT_META, EVENT_SNAPSHOT
from smibar.models import ConnectionStatus, GPUSnapshot
from smibar.supervisor import BackoffPolicy, ConnectionSupervisor

from conftest import RecordingSink, ScriptedClient

REFUSED_ERROR = RemoteCommandError("ssh: connect to host gpuhost port 22: Connection refused")


def make_supervisor(client, sink, clock, **kwargs):
    return ConnectionSupervisor(client, sink, clock=clock, **kwargs)


class TestBackoffPolicy:
    """Test BackoffPolicy."""

    def test_default_schedule(self):
        policy = BackoffPolicy()
        assert [policy.delay_for(n) for n in range(1, 8)] == [2, 5, 10, 20, 30, 30, 30]

    def test_no_failures_no_delay(self):
        assert BackoffPolicy().delay_for(0) == 0

    def test_custom_schedule(self):
        policy = BackoffPolicy(schedule=(1, 3))
        assert [policy.delay_for(n) for n in range(1, 4)] == [1, 3, 3]

    def test_never_succeeded_is_error(self):
        assert BackoffPolicy().status_after_failure(False, 1) == ConnectionStatus.ERROR

    def test_stale_until_threshold(self):
        policy = BackoffPolicy()
        assert policy.status_after_failure(True, 5) == ConnectionStatus.STALE
        assert policy.status_after_failure(True, 6) == ConnectionStatus.ERROR


class TestConnectionSupervisor:
    """Test the poll cycle driven directly through poll_once()."""

    def test_initial_state_idle(self, sink, clock):
        supervisor = make_supervisor(ScriptedClient(GPUSnapshot()), sink, clock)

        meta = supervisor.metadata()

        assert meta.status == ConnectionStatus.IDLE
        assert meta.active_target == ""
        assert not supervisor.is_running

    def test_idle_cycle_emits_meta_without_query(self, sink, clock):
        client = ScriptedClient(GPUSnapshot())
        supervisor = make_supervisor(client, sink, clock)

        supervisor.poll_once()

        assert client.calls == []
        assert sink.events == [(EVENT_META, supervisor.metadata().to_dict())]
        assert sink.named(EVENT_META)[0]["status"] == "idle"

    def test_auth_failure_end_to_end(self, sink, clock, auth_error):
        supervisor = make_supervisor(ScriptedClient(auth_error), sink, clock)

        supervisor.set_target("gpuhost")
        supervisor.poll_once()

        names = [name for name, _ in sink.events]
        assert names == [EVENT_META, EVENT_ERROR, EVENT_META]
        assert sink.events[0][1]["status"] == "connecting"

        meta = sink.events[-1][1]
        assert meta["status"] == "error"
        assert meta["errorCode"] == AUTH_FAILED
        assert meta["consecutiveFailures"] == 1
        assert meta["nextRetryInSec"] == 2
        assert meta["lastSuccessTs"] == 0
        assert meta["activeTarget"] == "gpuhost"
        assert sink.named(EVENT_ERROR) == [meta["errorMessage"]]

    def test_success_emits_snapshot_then_live_meta(self, sink, clock, sample_snapshot):
        supervisor = make_supervisor(ScriptedClient(sample_snapshot), sink, clock)

        supervisor.set_target("gpuhost", 2222)
        supervisor.poll_once()

        names = [name for name, _ in sink.events]
        assert names == [EVENT_META, EVENT_SNAPSHOT, EVENT_META]
        assert sink.named(EVENT_SNAPSHOT)[0] == sample_snapshot.to_list()

        meta = sink.events[-1][1]
        assert meta["status"] == "live"
        assert meta["lastSuccessTs"] == int(clock())
        assert meta["consecutiveFailures"] == 0
        assert meta["nextRetryInSec"] == 0
        assert meta["activePort"] == 2222

    def test_query_uses_target_and_port(self, sink, clock, sample_snapshot):
        client = ScriptedClient(sample_snapshot)
        supervisor = make_supervisor(client, sink, clock)

        supervisor.set_target("  user@gpuhost  ", 2222)
        supervisor.poll_once()

        assert client.calls == [("user@gpuhost", 2222)]

    def test_nonpositive_port_means_default(self, sink, clock, sample_snapshot):
        client = ScriptedClient(sample_snapshot)
        supervisor = make_supervisor(client, sink, clock)

        supervisor.set_target("gpuhost", -5)
        supervisor.poll_once()

        assert client.calls == [("gpuhost", 0)]
        assert supervisor.metadata().active_port == 0

    def test_backoff_progression(self, sink, clock):
        supervisor = make_supervisor(ScriptedClient(REFUSED_ERROR), sink, clock)
        supervisor.set_target("gpuhost")

        delays = []
        for _ in range(6):
            supervisor.poll_once()
            meta = supervisor.metadata()
            delays.append(meta.next_retry_in_sec)
            clock.advance(meta.next_retry_in_sec)

        assert delays == [2, 5, 10, 20, 30, 30]
        assert supervisor.metadata().consecutive_failures == 6
        assert supervisor.metadata().error_code == REFUSED

    def test_waits_for_backoff_deadline(self, sink, clock):
        client = ScriptedClient(REFUSED_ERROR)
        supervisor = make_supervisor(client, sink, clock)
        supervisor.set_target("gpuhost")
        supervisor.poll_once()
        sink.clear()

        clock.advance(0.5)
        supervisor.poll_once()

        assert len(client.calls) == 1
        assert sink.events == [(EVENT_META, supervisor.metadata().to_dict())]
        assert sink.named(EVENT_META)[0]["nextRetryInSec"] == 2

    def test_forced_poll_bypasses_backoff(self, sink, clock):
        client = ScriptedClient(REFUSED_ERROR)
        supervisor = make_supervisor(client, sink, clock)
        supervisor.set_target("gpuhost")
        supervisor.poll_once()

        supervisor.poll_once(forced=True)

        assert len(client.calls) == 2
        assert supervisor.metadata().consecutive_failures == 2

    def test_next_retry_rounds_up(self, sink, clock):
        supervisor = make_supervisor(ScriptedClient(REFUSED_ERROR), sink, clock)
        supervisor.set_target("gpuhost")
        supervisor.poll_once()

        clock.advance(1.9)
        assert supervisor.metadata().next_retry_in_sec == 1
        clock.advance(0.5)
        assert supervisor.metadata().next_retry_in_sec == 0

    def test_stale_then_error_after_success(self, sink, clock, sample_snapshot):
        client = ScriptedClient(sample_snapshot, *([REFUSED_ERROR] * 6))
        supervisor = make_supervisor(client, sink, clock)
        supervisor.set_target("gpuhost")
        supervisor.poll_once()
        assert supervisor.metadata().status == ConnectionStatus.LIVE

        statuses = []
        for _ in range(6):
            clock.advance(supervisor.metadata().next_retry_in_sec)
            supervisor.poll_once()
            statuses.append(supervisor.metadata().status)

        assert statuses == [ConnectionStatus.STALE] * 5 + [ConnectionStatus.ERROR]
        assert supervisor.metadata().last_success_ts > 0

    def test_no_connecting_announcement_after_success(self, sink, clock, sample_snapshot):
        supervisor = make_supervisor(ScriptedClient(sample_snapshot), sink, clock)
        supervisor.set_target("gpuhost")
        supervisor.poll_once()
        sink.clear()

        clock.advance(1)
        supervisor.poll_once()

        assert [name for name, _ in sink.events] == [EVENT_SNAPSHOT, EVENT_META]

    def test_recovery_clears_error(self, sink, clock, sample_snapshot):
        client = ScriptedClient(REFUSED_ERROR, sample_snapshot)
        supervisor = make_supervisor(client, sink, clock)
        supervisor.set_target("gpuhost")
        supervisor.poll_once()

        supervisor.poll_once(forced=True)

        meta = supervisor.metadata()
        assert meta.status == ConnectionStatus.LIVE
        assert meta.consecutive_failures == 0
        assert meta.error_code == ""
        assert meta.error_message == ""
        assert meta.next_retry_in_sec == 0

    def test_target_change_resets_session(self, sink, clock, sample_snapshot):
        client = ScriptedClient(sample_snapshot, REFUSED_ERROR, sample_snapshot)
        supervisor = make_supervisor(client, sink, clock)
        supervisor.set_target("gpu-a")
        supervisor.poll_once()
        clock.advance(1)
        supervisor.poll_once()
        assert supervisor.metadata().status == ConnectionStatus.STALE

        supervisor.set_target("gpu-b", 22)

        meta = supervisor.metadata()
        assert meta.status == ConnectionStatus.CONNECTING
        assert meta.consecutive_failures == 0
        assert meta.last_success_ts == 0
        assert meta.error_code == ""
        assert meta.active_target == "gpu-b"

        # The new session is attempted right away despite the old backoff.
        sink.clear()
        supervisor.poll_once()
        assert client.calls[-1] == ("gpu-b", 22)
        assert sink.events[0][1]["status"] == "connecting"

    def test_setting_same_target_again_restarts(self, sink, clock):
        client = ScriptedClient(REFUSED_ERROR)
        supervisor = make_supervisor(client, sink, clock)
        supervisor.set_target("gpuhost")
        supervisor.poll_once()

        supervisor.set_target("gpuhost")
        supervisor.poll_once()

        assert len(client.calls) == 2
        assert supervisor.metadata().consecutive_failures == 1

    def test_clearing_target_goes_idle(self, sink, clock, sample_snapshot):
        client = ScriptedClient(sample_snapshot)
        supervisor = make_supervisor(client, sink, clock)
        supervisor.set_target("gpuhost")
        supervisor.poll_once()

        supervisor.set_target("")
        sink.clear()
        supervisor.poll_once()

        assert len(client.calls) == 1
        meta = sink.named(EVENT_META)[0]
        assert meta["status"] == "idle"
        assert meta["activeTarget"] == ""
        assert meta["lastSuccessTs"] == 0

    def test_result_discarded_when_target_changes_mid_query(self, sink, clock, sample_snapshot):
        class SwitchingClient:
            def __init__(self):
                self.supervisor = None
                self.calls = []

            def query(self, target, port=0):
                self.calls.append(target)
                if target == "old":
                    self.supervisor.set_target("new")
                    raise REFUSED_ERROR
                return sample_snapshot

        client = SwitchingClient()
        supervisor = make_supervisor(client, sink, clock)
        client.supervisor = supervisor

        supervisor.set_target("old")
        supervisor.poll_once()

        assert sink.named(EVENT_ERROR) == []
        meta = supervisor.metadata()
        assert meta.active_target == "new"
        assert meta.consecutive_failures == 0
        assert meta.status == ConnectionStatus.CONNECTING

        supervisor.poll_once()
        assert client.calls == ["old", "new"]
        assert supervisor.metadata().status == ConnectionStatus.LIVE

    def test_retry_requests_coalesce(self, sink, clock):
        supervisor = make_supervisor(ScriptedClient(GPUSnapshot()), sink, clock)

        supervisor.retry_now()
        supervisor.retry_now()

        assert supervisor._take_wake() is True
        assert supervisor._take_wake() is False


class TestTestTarget:
    """Test the one-shot connection probe."""

    def test_success(self, sink, clock, sample_snapshot):
        client = ScriptedClient(sample_snapshot)
        supervisor = make_supervisor(client, sink, clock)

        result = supervisor.test_target(" gpuhost ", 2222)

        assert result.success is True
        assert result.gpu_count == 2
        assert result.message == "Connected: 2 GPU(s) found"
        assert client.calls == [("gpuhost", 2222)]

    def test_failure_is_classified(self, sink, clock, auth_error):
        supervisor = make_supervisor(ScriptedClient(auth_error), sink, clock)

        result = supervisor.test_target("gpuhost")

        assert result.success is False
        assert result.code == AUTH_FAILED
        assert result.message

    @pytest.mark.parametrize("host", ["", "   ", None])
    def test_missing_target(self, sink, clock, host):
        client = ScriptedClient(GPUSnapshot())
        supervisor = make_supervisor(client, sink, clock)

        result = supervisor.test_target(host)

        assert result.success is False
        assert result.code == INVALID_TARGET
        assert client.calls == []

    def test_does_not_touch_session(self, sink, clock, auth_error):
        supervisor = make_supervisor(ScriptedClient(auth_error), sink, clock)
        supervisor.set_target("other")
        before = supervisor.metadata()

        supervisor.test_target("gpuhost")

        assert supervisor.metadata() == before
        assert sink.events == []


@pytest.mark.slow
class TestWorkerThread:
    """Test the background worker with a real clock."""

    def test_start_polls_and_stop_joins(self, sample_snapshot):
        live = threading.Event()

        class Sink(RecordingSink):
            def emit(self, name, payload):
                super().emit(name, payload)
                if name == EVENT_META and payload["status"] == "live":
                    live.set()

        supervisor = ConnectionSupervisor(
            ScriptedClient(sample_snapshot), Sink(), poll_interval=0.05
        )
        supervisor.start()
        try:
            assert supervisor.is_running
            supervisor.set_target("gpuhost")
            assert live.wait(2.0)
        finally:
            supervisor.stop(timeout=2.0)

        assert not supervisor.is_running

    def test_start_is_idempotent(self):
        supervisor = ConnectionSupervisor(
            ScriptedClient(GPUSnapshot()), RecordingSink(), poll_interval=0.05
        )
        supervisor.start()
        try:
            first = supervisor._thread
            supervisor.start()
            assert supervisor._thread is first
        finally:
            supervisor.stop(timeout=2.0)

    def test_worker_survives_unexpected_error(self, sample_snapshot):
        calls = []

        class FlakyClient:
            def query(self, target, port=0):
                calls.append(target)
                if len(calls) == 1:
                    raise RuntimeError("boom")
                return sample_snapshot

        supervisor = ConnectionSupervisor(FlakyClient(), RecordingSink(), poll_interval=0.02)
        supervisor.set_target("gpuhost")
        supervisor.start()
        try:
            deadline = time.monotonic() + 2.0
            while len(calls) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            supervisor.stop(timeout=2.0)

        assert len(calls) >= 2
