"""Tests for the capture engine process manager."""

import asyncio
import os
import signal
from pathlib import Path

import pytest

from rec_pilot.engine import (
    CaptureProcessManager,
    ControlMode,
    EngineEventKind,
    ProcessHandle,
    RecoveryAnchors,
    error_for_event,
    parse_engine_line,
)
from rec_pilot.errors import (
    AlreadyRecording,
    ExecutableNotFound,
    NoDeviceFound,
    PermissionDenied,
    SignalDeliveryFailed,
    SpawnFailed,
)
from rec_pilot.geometry import Rect

from tests.conftest import CRASHING_ENGINE, FAILING_ENGINE, requires_sh, write_script

DEAD_PID = 999999999


class TestParseEngineLine:
    """All engine output is translated in one place."""

    @pytest.mark.parametrize("line, kind", [
        ("REC_STARTED", EngineEventKind.STARTED),
        ("REC_STOPPED", EngineEventKind.STOPPED),
        ("REC_RECORDING", EngineEventKind.RECORDING),
        ("REC_IDLE", EngineEventKind.IDLE),
        ("ERR_PERMISSION_DENIED", EngineEventKind.PERMISSION_DENIED),
        ("ERR_ALREADY_RECORDING", EngineEventKind.ALREADY_RECORDING),
        ("ERR_NOT_RECORDING", EngineEventKind.NOT_RECORDING),
        ("ERR_NO_SCREEN_DEVICE", EngineEventKind.NO_SCREEN_DEVICE),
        ("ERR_FFMPEG_FAILED", EngineEventKind.ENGINE_FAILED),
        ("REC_ALREADY_RUNNING", EngineEventKind.ALREADY_RECORDING),
        ("REC_NOT_RUNNING", EngineEventKind.NOT_RECORDING),
        ("REC_START_ERR", EngineEventKind.START_FAILED),
        ("REC_STOP_ERR", EngineEventKind.WARNING),
    ])
    def test_sentinels(self, line, kind):
        assert parse_engine_line(f"{line}\n").kind == kind

    def test_saved_announcement(self):
        event = parse_engine_line("Recording saved: /tmp/rec/a b.mp4\n")
        assert event.kind == EngineEventKind.SAVED
        assert event.path == Path("/tmp/rec/a b.mp4")

    def test_pid_announcement(self):
        event = parse_engine_line("PID: 4242")
        assert event.kind == EngineEventKind.PID
        assert event.pid == 4242

    def test_output_announcement(self):
        event = parse_engine_line("Output: /tmp/rec/a.mp4")
        assert event.kind == EngineEventKind.OUTPUT
        assert event.path == Path("/tmp/rec/a.mp4")

    def test_other_stdout_is_info(self):
        event = parse_engine_line("Recording screen 1")
        assert event.kind == EngineEventKind.INFO
        assert event.text == "Recording screen 1"

    def test_stderr_is_warning(self):
        """Even a sentinel on stderr is only a warning."""
        assert parse_engine_line("REC_STARTED", "stderr").kind == EngineEventKind.WARNING

    def test_empty_line_ignored(self):
        assert parse_engine_line("   \n") is None

    def test_error_mapping(self):
        assert isinstance(error_for_event(parse_engine_line("ERR_PERMISSION_DENIED")), PermissionDenied)
        assert isinstance(error_for_event(parse_engine_line("ERR_NO_SCREEN_DEVICE")), NoDeviceFound)
        assert isinstance(error_for_event(parse_engine_line("REC_ALREADY_RUNNING")), AlreadyRecording)
        assert isinstance(error_for_event(parse_engine_line("ERR_FFMPEG_FAILED")), SpawnFailed)


class TestRecoveryAnchors:
    """Tests for the crash-recovery files."""

    def test_write_and_read(self, tmp_path):
        anchors = RecoveryAnchors(tmp_path / "recovery")
        anchors.write(1234, Path("/videos/a.mp4"))

        record = anchors.read()
        assert record.pid == 1234
        assert record.output_path == Path("/videos/a.mp4")
        assert (tmp_path / "recovery" / "rec.pid").read_text().strip() == "1234"
        assert (tmp_path / "recovery" / "rec.outpath").read_text().strip() == "/videos/a.mp4"

    def test_unknown_output_path(self, tmp_path):
        anchors = RecoveryAnchors(tmp_path)
        anchors.write(1234, None)
        assert anchors.read().output_path is None

    def test_clear(self, tmp_path):
        anchors = RecoveryAnchors(tmp_path)
        anchors.write(1234, None)
        anchors.clear()

        assert anchors.read() is None
        assert not anchors.exists()
        anchors.clear()  # Clearing twice is fine

    def test_malformed_pid_ignored(self, tmp_path):
        (tmp_path / "rec.pid").write_text("not-a-pid\n")
        assert RecoveryAnchors(tmp_path).read() is None

    def test_no_temp_files_left(self, tmp_path):
        RecoveryAnchors(tmp_path).write(1, Path("/a.mp4"))
        assert sorted(p.name for p in tmp_path.iterdir()) == ["rec.outpath", "rec.pid"]


class TestRecover:
    """Tests for CaptureProcessManager.recover."""

    def test_no_anchors(self, tmp_path):
        manager = CaptureProcessManager("rec-cli", RecoveryAnchors(tmp_path))
        assert manager.recover() is None

    def test_live_orphan(self, tmp_path):
        anchors = RecoveryAnchors(tmp_path)
        anchors.write(os.getpid(), Path("/videos/a.mp4"))
        manager = CaptureProcessManager("rec-cli", anchors)

        handle = manager.recover()

        assert handle.pid == os.getpid()
        assert handle.recovered
        assert handle.output_path == Path("/videos/a.mp4")
        assert anchors.exists()

    def test_stale_anchors_cleared(self, tmp_path):
        anchors = RecoveryAnchors(tmp_path)
        anchors.write(DEAD_PID, None)
        manager = CaptureProcessManager("rec-cli", anchors)

        assert manager.recover() is None
        assert not anchors.exists()

    def test_force_clear(self, tmp_path):
        anchors = RecoveryAnchors(tmp_path)
        anchors.write(os.getpid(), None)
        CaptureProcessManager("rec-cli", anchors).force_clear()
        assert not anchors.exists()


class TestBuildArgs:
    def test_fullscreen(self):
        manager = CaptureProcessManager("rec-cli", RecoveryAnchors(Path("/tmp")))
        assert manager.build_start_args(Path("/out")) == ["rec-cli", "start", "--output-dir", "/out"]

    def test_with_rect(self):
        manager = CaptureProcessManager("rec-cli", RecoveryAnchors(Path("/tmp")))
        args = manager.build_start_args(None, Rect(1, 2, 30, 40))
        assert args == ["rec-cli", "start", "--x", "1", "--y", "2", "--width", "30", "--height", "40"]


@requires_sh
class TestEngineProcess:
    """Drives a shell stand-in for the capture engine."""

    @pytest.fixture
    def output(self, tmp_path, monkeypatch) -> Path:
        path = tmp_path / "out.mp4"
        monkeypatch.setenv("FAKE_ENGINE_OUTPUT", str(path))
        return path

    def test_spawn_and_terminate(self, engine_script, output, tmp_path):
        """Anchors exist while running and are removed after a clean stop."""
        anchors = RecoveryAnchors(tmp_path / "recovery")
        manager = CaptureProcessManager(str(engine_script), anchors)

        async def scenario():
            handle = await manager.spawn(manager.build_start_args(tmp_path))
            record = anchors.read()
            running = handle.is_running
            stopped = await manager.terminate(handle)
            return handle, record, running, stopped

        handle, record, running, stopped = asyncio.run(scenario())

        assert running
        assert record.pid == handle.pid
        assert record.output_path == output
        assert stopped
        assert not anchors.exists()
        assert handle.saved_path == output
        assert output.read_bytes() == b"video"

    def test_pause_and_resume(self, engine_script, output, tmp_path):
        manager = CaptureProcessManager(str(engine_script), RecoveryAnchors(tmp_path / "recovery"))

        async def scenario():
            handle = await manager.spawn(manager.build_start_args(tmp_path))
            await manager.pause(handle)
            await manager.resume(handle)
            assert await manager.terminate(handle)
            # The engine is gone now
            with pytest.raises(SignalDeliveryFailed):
                await manager.pause(handle)

        asyncio.run(scenario())
        assert output.exists()

    def test_events_forwarded(self, engine_script, output, tmp_path):
        seen = []
        manager = CaptureProcessManager(
            str(engine_script),
            RecoveryAnchors(tmp_path / "recovery"),
            on_event=lambda handle, event: seen.append(event.kind),
        )

        async def scenario():
            handle = await manager.spawn(manager.build_start_args(tmp_path))
            await manager.terminate(handle)

        asyncio.run(scenario())
        assert EngineEventKind.STARTED in seen
        assert EngineEventKind.SAVED in seen

    def test_unexpected_exit_reported(self, engine_script, output, tmp_path):
        exited = []
        manager = CaptureProcessManager(
            str(engine_script),
            RecoveryAnchors(tmp_path / "recovery"),
            on_exit=exited.append,
        )

        async def scenario():
            handle = await manager.spawn(manager.build_start_args(tmp_path))
            handle.process.kill()
            await asyncio.wait_for(handle.exited.wait(), 5.0)
            return handle

        handle = asyncio.run(scenario())
        assert exited == [handle]

    def test_recovered_orphan_can_be_stopped(self, engine_script, output, tmp_path):
        """A second manager finds the engine through the anchors alone."""
        anchors_dir = tmp_path / "recovery"
        first = CaptureProcessManager(str(engine_script), RecoveryAnchors(anchors_dir))
        second = CaptureProcessManager(str(engine_script), RecoveryAnchors(anchors_dir))

        async def scenario():
            handle = await first.spawn(first.build_start_args(tmp_path))
            orphan = second.recover()
            assert orphan.pid == handle.pid
            assert orphan.recovered
            return await second.terminate(orphan)

        assert asyncio.run(scenario())
        assert not RecoveryAnchors(anchors_dir).exists()
        assert output.exists()

    def test_error_sentinel_raises(self, tmp_path):
        script = write_script(tmp_path / "denied-engine", FAILING_ENGINE)
        anchors = RecoveryAnchors(tmp_path / "recovery")
        manager = CaptureProcessManager(str(script), anchors)

        with pytest.raises(PermissionDenied):
            asyncio.run(manager.spawn(manager.build_start_args(tmp_path)))
        assert not anchors.exists()

    def test_exit_during_startup(self, tmp_path):
        script = write_script(tmp_path / "crashing-engine", CRASHING_ENGINE)
        anchors = RecoveryAnchors(tmp_path / "recovery")
        manager = CaptureProcessManager(str(script), anchors)

        with pytest.raises(SpawnFailed) as exc_info:
            asyncio.run(manager.spawn(manager.build_start_args(tmp_path)))
        assert "code 3" in str(exc_info.value)
        assert "device busy" in str(exc_info.value)
        assert not anchors.exists()

    def test_missing_executable(self, tmp_path):
        manager = CaptureProcessManager(str(tmp_path / "nope"), RecoveryAnchors(tmp_path))

        with pytest.raises(ExecutableNotFound):
            asyncio.run(manager.spawn(manager.build_start_args(tmp_path)))

    def test_status_and_devices(self, engine_script, tmp_path):
        manager = CaptureProcessManager(str(engine_script), RecoveryAnchors(tmp_path / "recovery"))

        assert asyncio.run(manager.status()) is False
        assert asyncio.run(manager.devices()) == ["[0] Capture screen 0"]

    def test_command_mode_error(self, engine_script, tmp_path):
        """In command mode a refused pause surfaces as SignalDeliveryFailed."""
        manager = CaptureProcessManager(
            str(engine_script), RecoveryAnchors(tmp_path / "recovery"), ControlMode.COMMAND
        )

        async def scenario():
            await manager.pause(ProcessHandle(pid=1))

        with pytest.raises(SignalDeliveryFailed):
            asyncio.run(scenario())


async def wait_detached(handle: ProcessHandle, timeout: float = 5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not handle.detached:
        assert asyncio.get_running_loop().time() < deadline, "engine never detached"
        await asyncio.sleep(0.05)


@requires_sh
class TestDetachingEngine:
    """`start` launches a background encoder and exits 0."""

    @pytest.fixture
    def output(self, tmp_path, monkeypatch) -> Path:
        path = tmp_path / "out.mp4"
        monkeypatch.setenv("FAKE_ENGINE_OUTPUT", str(path))
        return path

    def make_manager(self, script, tmp_path, pid_file=None, **kwargs) -> CaptureProcessManager:
        manager = CaptureProcessManager(
            str(script), RecoveryAnchors(tmp_path / "recovery"), pid_file=pid_file, **kwargs
        )
        # Wait for the start process itself instead of timing out first
        manager.STARTUP_WINDOW = 5.0
        return manager

    def test_encoder_is_anchored_and_signalled(self, detaching_engine, output, tmp_path):
        script, pid_file = detaching_engine
        exited = []
        manager = self.make_manager(script, tmp_path, pid_file, on_exit=exited.append)

        async def scenario():
            handle = await manager.spawn(manager.build_start_args(tmp_path))
            await wait_detached(handle)
            seen = {
                "encoder": int(pid_file.read_text()),
                "anchor": manager.anchors.read().pid,
                "running": handle.is_running,
                "exits": list(exited),
            }
            await manager.pause(handle)
            await manager.resume(handle)
            seen["stopped"] = await manager.terminate(handle)
            return handle, seen

        handle, seen = asyncio.run(scenario())

        assert handle.pid == seen["encoder"] == seen["anchor"]
        assert handle.pid != handle.process.pid
        assert handle.process.returncode == 0
        assert seen["running"]
        assert seen["exits"] == []
        assert seen["stopped"]
        assert exited == [handle]
        assert output.read_bytes() == b"video"
        assert not manager.anchors.exists()

    def test_late_handoff_rewrites_anchors(self, detaching_engine, output, tmp_path):
        """An engine slower than the startup window is re-anchored once it detaches."""
        script, pid_file = detaching_engine
        manager = self.make_manager(script, tmp_path, pid_file)
        manager.STARTUP_WINDOW = 0.0

        async def scenario():
            handle = await manager.spawn(manager.build_start_args(tmp_path))
            await wait_detached(handle)
            anchored = manager.anchors.read().pid
            await manager.terminate(handle)
            return handle, anchored

        handle, anchored = asyncio.run(scenario())

        assert anchored == handle.pid == int(pid_file.read_text())
        assert output.exists()

    def test_command_mode_always_runs_stop(self, detaching_engine, output, tmp_path):
        script, pid_file = detaching_engine
        manager = self.make_manager(script, tmp_path, pid_file, control=ControlMode.COMMAND)

        async def scenario():
            handle = await manager.spawn(manager.build_start_args(tmp_path))
            await wait_detached(handle)
            await manager.pause(handle)
            await manager.resume(handle)
            return handle, await manager.terminate(handle)

        handle, stopped = asyncio.run(scenario())

        assert stopped
        assert handle.saved_path == output
        assert output.read_bytes() == b"video"
        assert not pid_file.exists()

    def test_announced_pid(self, detaching_engine, output, tmp_path, monkeypatch):
        script, pid_file = detaching_engine
        monkeypatch.setenv("FAKE_ENGINE_ANNOUNCE_PID", "1")
        manager = self.make_manager(script, tmp_path)

        async def scenario():
            handle = await manager.spawn(manager.build_start_args(tmp_path))
            await wait_detached(handle)
            await manager.terminate(handle)
            return handle

        handle = asyncio.run(scenario())

        assert handle.encoder_pid == handle.pid == int(pid_file.read_text())
        assert output.exists()

    def test_unknown_encoder_fails_and_stops_it(self, detaching_engine, output, tmp_path):
        script, _ = detaching_engine
        manager = self.make_manager(script, tmp_path)

        with pytest.raises(SpawnFailed) as exc_info:
            asyncio.run(manager.spawn(manager.build_start_args(tmp_path)))

        assert "REC_ENGINE_PID_FILE" in str(exc_info.value)
        assert not manager.anchors.exists()
        # `<engine> stop` was issued so the encoder did not keep recording
        assert output.read_bytes() == b"video"

    def test_encoder_death_reported(self, detaching_engine, output, tmp_path):
        script, pid_file = detaching_engine
        exited = []
        manager = self.make_manager(script, tmp_path, pid_file, on_exit=exited.append)

        async def scenario():
            handle = await manager.spawn(manager.build_start_args(tmp_path))
            await wait_detached(handle)
            os.kill(handle.pid, signal.SIGKILL)
            await asyncio.wait_for(handle.exited.wait(), 5.0)
            return handle

        handle = asyncio.run(scenario())

        assert exited == [handle]
        assert not handle.is_running
