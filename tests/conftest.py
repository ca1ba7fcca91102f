import pytest
import threading
import yaml
from pathlib import Path
from typing import Callable, List, Optional
from vtc.config.models import AppConfig
from vtc.domain.errors import EngineRuntimeError
from vtc.infrastructure.event_bus import EventBus
from vtc.infrastructure.ffprobe import FFprobeAdapter
from vtc.pipeline.orchestrator import Orchestrator
from vtc.pipeline.registry import JobRegistry
from vtc.boundary.service import TranscodeService

# ============================================================================
# Fake engine
# ============================================================================

class FakeProcess:
    """Stands in for subprocess.Popen; kill() marks it as signalled."""

    def __init__(self, pid: int):
        self.pid = pid
        self.returncode: Optional[int] = None
        self.kill_calls = 0

    def poll(self):
        return self.returncode

    def kill(self):
        self.kill_calls += 1
        if self.returncode is None:
            self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


class FakeRun:
    """One spawned job; tests drive its callbacks by hand."""

    def __init__(self, cmd, process, on_progress, on_complete, on_error):
        self.cmd = cmd
        self.process = process
        self._on_progress = on_progress
        self._on_complete = on_complete
        self._on_error = on_error

    @property
    def temp_path(self) -> Path:
        return Path(self.cmd[-1])

    def progress(self, percent=None, timemark="00:00:01.00", target_size_kb=None):
        self._on_progress({"percent": percent, "timemark": timemark, "target_size_kb": target_size_kb})

    def complete(self, write_output: bool = True):
        if write_output:
            self.temp_path.write_bytes(b"encoded")
        if self.process.returncode is None:
            self.process.returncode = 0
        self._on_complete()

    def fail(self, message: str = "ffmpeg exited with code 1: Invalid data found when processing input"):
        if self.process.returncode is None:
            self.process.returncode = 1
        self._on_error(message)

    def exit_after_kill(self):
        self._on_error(f"ffmpeg was terminated by signal {-(self.process.returncode or -9)}")


class FakeEngine:
    """FFmpegAdapter replacement without processes or threads.

    With ``script`` set, each run is driven by that callable on a background
    thread, like the real reader thread.
    """

    def __init__(self, script: Optional[Callable[[FakeRun], None]] = None, spawn_error: Optional[str] = None):
        self.ffmpeg_path = "ffmpeg"
        self.runs: List[FakeRun] = []
        self.script = script
        self.spawn_error = spawn_error
        self.threads: List[threading.Thread] = []

    @property
    def last(self) -> FakeRun:
        return self.runs[-1]

    def run(self, cmd, on_spawn, on_progress, on_complete, on_error):
        if self.spawn_error:
            raise EngineRuntimeError(self.spawn_error)
        process = FakeProcess(pid=4000 + len(self.runs))
        on_spawn(process)
        run = FakeRun(cmd, process, on_progress, on_complete, on_error)
        self.runs.append(run)
        if self.script is not None:
            thread = threading.Thread(target=self.script, args=(run,), daemon=True)
            self.threads.append(thread)
            thread.start()
        return process

    def join(self, timeout: float = 5.0):
        for thread in self.threads:
            thread.join(timeout)


def scripted_success(run: FakeRun):
    for percent, timemark in ((10.0, "00:00:01.00"), (55.5, "00:00:05.55"), (99.2, "00:00:09.92")):
        run.progress(percent=percent, timemark=timemark, target_size_kb=int(percent * 10))
    run.complete()


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config():
    """Returns a sample AppConfig object for testing."""
    return AppConfig(
        general={"debug": False},
        compress={"quality": 28, "preset": "fast"},
        convert={"format": "mkv"},
        extract_audio={"format": "mp3", "bitrate": "128k"},
    )

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "vtc.yaml"

    content = {
        'general': {'debug': True, 'log_path': str(tmp_path / "logs" / "vtc.log")},
        'engine': {'ffmpeg_path': '/opt/ffmpeg/bin/ffmpeg', 'ffprobe_path': '/opt/ffmpeg/bin/ffprobe'},
        'compress': {'quality': 30, 'preset': 'slow'},
        'convert': {'format': 'webm'},
        'extract-audio': {'format': 'm4a', 'bitrate': '256k'},
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# Core Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

@pytest.fixture
def fake_engine():
    return FakeEngine()

@pytest.fixture
def registry():
    return JobRegistry()

@pytest.fixture
def orchestrator(event_bus, fake_engine, registry):
    return Orchestrator(event_bus=event_bus, ffmpeg_adapter=fake_engine, registry=registry)

@pytest.fixture
def input_video(tmp_path):
    path = tmp_path / "sample.mov"
    path.write_bytes(b"not really a movie")
    return path

def make_service(engine: FakeEngine, config: Optional[AppConfig] = None, bus: Optional[EventBus] = None) -> TranscodeService:
    orchestrator = Orchestrator(event_bus=bus or EventBus(), ffmpeg_adapter=engine, registry=JobRegistry())
    return TranscodeService(orchestrator, FFprobeAdapter("ffprobe"), config)

# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (integration tests with the real engine)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
