"""Unit tests for the orchestrator job lifecycle (fake engine, no processes)."""
import threading
import pytest
from vtc.domain.errors import DuplicateJobError
from vtc.domain.events import (
    JobCancelled,
    JobCompleted,
    JobEvent,
    JobFailed,
    JobFinished,
    JobProgressUpdated,
    JobStarted,
)
from vtc.domain.models import (
    CompressOptions,
    ExtractAudioOptions,
    JobStatus,
    OperationKind,
    OperationRequest,
)
from vtc.infrastructure.event_bus import EventBus
from vtc.pipeline.orchestrator import Orchestrator
from vtc.pipeline.registry import JobRegistry
from conftest import FakeEngine


def compress_request(tmp_path, input_video, name="out.mp4", quality=23, preset="medium"):
    return OperationRequest(
        kind=OperationKind.COMPRESS,
        input_path=input_video,
        output_path=tmp_path / name,
        options=CompressOptions(quality=quality, preset=preset),
    )


@pytest.fixture
def recorded(event_bus):
    events = []
    event_bus.subscribe(JobEvent, events.append)
    return events


def events_for(events, job_id):
    return [e for e in events if e.job_id == job_id]


class TestSuccessPath:

    def test_compress_success_delivers_progress_then_outcome(self, orchestrator, fake_engine, registry, recorded, tmp_path, input_video):
        ticket = orchestrator.submit(compress_request(tmp_path, input_video), job_id="job-1")

        assert ticket.status == JobStatus.RUNNING
        assert "job-1" in registry

        run = fake_engine.last
        run.progress(percent=12.5, timemark="00:00:01.25", target_size_kb=100)
        run.progress(percent=57.4, timemark="00:00:05.74", target_size_kb=400)
        run.complete()

        outcome = ticket.result(timeout=1)
        assert outcome.status == JobStatus.SUCCEEDED
        assert outcome.output_path == tmp_path / "out.mp4"
        assert (tmp_path / "out.mp4").read_bytes() == b"encoded"
        assert not run.temp_path.exists()
        assert "job-1" not in registry
        assert ticket.status == JobStatus.SUCCEEDED

        percents = [e.percent for e in ticket.events()]
        assert percents == [13, 57, 100]

        kinds = [type(e) for e in events_for(recorded, "job-1")]
        assert kinds[0] is JobStarted
        assert kinds[-1] is JobCompleted
        assert kinds.count(JobProgressUpdated) == 3

    def test_final_progress_not_duplicated_when_engine_reached_100(self, orchestrator, fake_engine, tmp_path, input_video):
        ticket = orchestrator.submit(compress_request(tmp_path, input_video))
        fake_engine.last.progress(percent=100.0, timemark="00:00:10.00")
        fake_engine.last.complete()

        assert [e.percent for e in ticket.events()] == [100]

    def test_final_progress_keeps_last_timemark(self, orchestrator, fake_engine, tmp_path, input_video):
        ticket = orchestrator.submit(compress_request(tmp_path, input_video))
        fake_engine.last.progress(percent=98.0, timemark="00:00:09.80", target_size_kb=900)
        fake_engine.last.complete()

        last = list(ticket.events())[-1]
        assert last.percent == 100
        assert last.timemark == "00:00:09.80"
        assert last.target_size_kb == 900

    def test_missing_engine_output_is_a_failure(self, orchestrator, fake_engine, tmp_path, input_video):
        ticket = orchestrator.submit(compress_request(tmp_path, input_video))
        fake_engine.last.complete(write_output=False)

        outcome = ticket.result(timeout=1)
        assert outcome.status == JobStatus.FAILED
        assert "Could not write" in outcome.error
        assert not (tmp_path / "out.mp4").exists()

    def test_existing_output_untouched_on_failure(self, orchestrator, fake_engine, tmp_path, input_video):
        existing = tmp_path / "out.mp4"
        existing.write_bytes(b"previous result")

        ticket = orchestrator.submit(compress_request(tmp_path, input_video))
        fake_engine.last.temp_path.write_bytes(b"partial")
        fake_engine.last.fail()

        assert ticket.result(timeout=1).status == JobStatus.FAILED
        assert existing.read_bytes() == b"previous result"
        assert not fake_engine.last.temp_path.exists()


class TestFailurePath:

    def test_engine_error_becomes_failure(self, orchestrator, fake_engine, registry, recorded, tmp_path, input_video):
        request = OperationRequest(
            kind=OperationKind.EXTRACT_AUDIO,
            input_path=input_video,
            output_path=tmp_path / "out.mp3",
            options=ExtractAudioOptions(format="mp3"),
        )
        ticket = orchestrator.submit(request, job_id="job-audio")
        fake_engine.last.fail("ffmpeg exited with code 1: Stream map '0:a:0' matches no streams.")

        outcome = ticket.result(timeout=1)
        assert outcome.status == JobStatus.FAILED
        assert "matches no streams" in outcome.error
        assert "job-audio" not in registry
        assert not (tmp_path / "out.mp3").exists()
        assert isinstance(events_for(recorded, "job-audio")[-1], JobFailed)

    def test_external_kill_while_registered_is_failure(self, orchestrator, fake_engine, tmp_path, input_video):
        ticket = orchestrator.submit(compress_request(tmp_path, input_video))
        fake_engine.last.process.returncode = -15
        fake_engine.last.exit_after_kill()

        outcome = ticket.result(timeout=1)
        assert outcome.status == JobStatus.FAILED
        assert "signal 15" in outcome.error

    def test_spawn_failure_settles_without_registering(self, event_bus, registry, recorded, tmp_path, input_video):
        engine = FakeEngine(spawn_error="Failed to start ffmpeg (ffmpeg): No such file or directory")
        orchestrator = Orchestrator(event_bus=event_bus, ffmpeg_adapter=engine, registry=registry)

        ticket = orchestrator.submit(compress_request(tmp_path, input_video), job_id="nospawn")

        outcome = ticket.result(timeout=1)
        assert outcome.status == JobStatus.FAILED
        assert "No such file" in outcome.error
        assert len(registry) == 0
        assert list(ticket.events()) == []
        assert [type(e) for e in recorded] == [JobFailed]

    def test_duplicate_job_id_is_rejected(self, orchestrator, tmp_path, input_video):
        orchestrator.submit(compress_request(tmp_path, input_video), job_id="dup")

        with pytest.raises(DuplicateJobError):
            orchestrator.submit(compress_request(tmp_path, input_video, name="other.mp4"), job_id="dup")


class TestCancellation:

    def test_cancel_before_progress_yields_cancelled(self, orchestrator, fake_engine, registry, recorded, tmp_path, input_video):
        ticket = orchestrator.submit(compress_request(tmp_path, input_video), job_id="c1")

        assert orchestrator.cancel("c1") is True

        outcome = ticket.result(timeout=1)
        assert outcome.status == JobStatus.CANCELLED
        assert "c1" not in registry
        assert fake_engine.last.process.kill_calls == 1
        assert list(ticket.events()) == []
        assert isinstance(events_for(recorded, "c1")[-1], JobCancelled)

    def test_kill_error_after_cancel_is_ignored(self, orchestrator, fake_engine, recorded, tmp_path, input_video):
        ticket = orchestrator.submit(compress_request(tmp_path, input_video), job_id="c2")
        fake_engine.last.temp_path.write_bytes(b"partial")
        orchestrator.cancel("c2")

        fake_engine.last.exit_after_kill()

        assert ticket.result(timeout=1).status == JobStatus.CANCELLED
        finished = [e for e in recorded if isinstance(e, JobFinished)]
        assert len(finished) == 1
        assert not fake_engine.last.temp_path.exists()

    def test_completion_racing_cancel_keeps_cancelled(self, orchestrator, fake_engine, tmp_path, input_video):
        ticket = orchestrator.submit(compress_request(tmp_path, input_video))
        orchestrator.cancel(ticket.job_id)

        fake_engine.last.complete()

        assert ticket.result(timeout=1).status == JobStatus.CANCELLED
        assert not (tmp_path / "out.mp4").exists()
        assert not fake_engine.last.temp_path.exists()

    def test_no_progress_after_terminal(self, orchestrator, fake_engine, recorded, tmp_path, input_video):
        ticket = orchestrator.submit(compress_request(tmp_path, input_video), job_id="c3")
        fake_engine.last.progress(percent=20)
        orchestrator.cancel("c3")
        fake_engine.last.progress(percent=40)

        assert [e.percent for e in ticket.events()] == [20]
        job_events = events_for(recorded, "c3")
        assert isinstance(job_events[-1], JobCancelled)
        assert sum(isinstance(e, JobProgressUpdated) for e in job_events) == 1

    def test_failing_cancel_listener_does_not_hide_result(self, orchestrator, event_bus, fake_engine, tmp_path, input_video):
        def broken(event):
            raise RuntimeError("listener bug")

        event_bus.subscribe(JobCancelled, broken)
        ticket = orchestrator.submit(compress_request(tmp_path, input_video), job_id="c4")

        assert orchestrator.cancel("c4") is True
        assert ticket.result(timeout=1).status == JobStatus.CANCELLED
        assert fake_engine.last.process.kill_calls == 1

    def test_cancel_unknown_or_finished_is_noop(self, orchestrator, fake_engine, tmp_path, input_video):
        assert orchestrator.cancel("never-existed") is False

        ticket = orchestrator.submit(compress_request(tmp_path, input_video))
        fake_engine.last.complete()
        assert orchestrator.cancel(ticket.job_id) is False
        assert orchestrator.cancel(ticket.job_id) is False
        assert ticket.result(timeout=1).status == JobStatus.SUCCEEDED

    def test_cancel_one_job_leaves_other_untouched(self, orchestrator, fake_engine, registry, tmp_path, input_video):
        first = orchestrator.submit(compress_request(tmp_path, input_video, name="a.mp4"), job_id="a")
        run_a = fake_engine.last
        second = orchestrator.submit(compress_request(tmp_path, input_video, name="b.mp4"), job_id="b")
        run_b = fake_engine.last

        run_a.progress(percent=10)
        run_b.progress(percent=30)
        orchestrator.cancel("a")

        assert "b" in registry
        assert run_b.process.kill_calls == 0
        run_b.progress(percent=60)
        run_b.complete()

        assert first.result(timeout=1).status == JobStatus.CANCELLED
        assert second.result(timeout=1).status == JobStatus.SUCCEEDED
        assert [e.percent for e in second.events()] == [30, 60, 100]

    def test_cancel_all(self, orchestrator, fake_engine, registry, tmp_path, input_video):
        tickets = [
            orchestrator.submit(compress_request(tmp_path, input_video, name=f"{i}.mp4"))
            for i in range(3)
        ]

        assert orchestrator.cancel_all() == 3
        assert len(registry) == 0
        assert all(t.result(timeout=1).status == JobStatus.CANCELLED for t in tickets)


class TestConcurrency:

    def test_cancel_racing_completion_settles_once(self, tmp_path, input_video):
        for i in range(50):
            bus = EventBus()
            finished = []
            bus.subscribe(JobFinished, finished.append)
            engine = FakeEngine()
            orchestrator = Orchestrator(event_bus=bus, ffmpeg_adapter=engine, registry=JobRegistry())
            ticket = orchestrator.submit(compress_request(tmp_path, input_video, name=f"race{i}.mp4"))
            run = engine.last
            barrier = threading.Barrier(2)

            def finish():
                barrier.wait()
                run.complete()

            def cancel():
                barrier.wait()
                orchestrator.cancel(ticket.job_id)

            threads = [threading.Thread(target=finish), threading.Thread(target=cancel)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(5)

            outcome = ticket.result(timeout=1)
            assert outcome.status in (JobStatus.SUCCEEDED, JobStatus.CANCELLED)
            assert len(finished) == 1
            assert finished[0].outcome == outcome
            assert len(orchestrator.registry) == 0
            assert (tmp_path / f"race{i}.mp4").exists() == (outcome.status == JobStatus.SUCCEEDED)

    def test_prefix_sharing_ids_use_separate_temp_files(self, orchestrator, fake_engine, tmp_path, input_video):
        first = orchestrator.submit(compress_request(tmp_path, input_video), job_id="compress-1")
        run_a = fake_engine.last
        second = orchestrator.submit(compress_request(tmp_path, input_video), job_id="compress-2")
        run_b = fake_engine.last
        assert run_a.temp_path != run_b.temp_path
        run_b.temp_path.write_bytes(b"partial")

        run_a.fail()

        assert first.result(timeout=1).status == JobStatus.FAILED
        assert run_b.temp_path.exists()
        run_b.complete()
        assert second.result(timeout=1).status == JobStatus.SUCCEEDED
        assert (tmp_path / "out.mp4").read_bytes() == b"encoded"

    def test_progress_is_normalized(self, orchestrator, fake_engine, tmp_path, input_video):
        ticket = orchestrator.submit(compress_request(tmp_path, input_video))
        fake_engine.last.progress(percent=None)
        fake_engine.last.progress(percent=-3)
        fake_engine.last.progress(percent=150.0)
        fake_engine.last.complete()

        assert [e.percent for e in ticket.events()] == [0, 0, 100]

    def test_active_jobs(self, orchestrator, fake_engine, tmp_path, input_video):
        orchestrator.submit(compress_request(tmp_path, input_video), job_id="x")
        assert orchestrator.active_jobs() == {"x": JobStatus.RUNNING}
        fake_engine.last.fail()
        assert orchestrator.active_jobs() == {}
