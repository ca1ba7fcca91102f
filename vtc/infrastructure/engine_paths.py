"""Locates the ffmpeg/ffprobe executables for this host.

Packaged builds (PyInstaller and similar, detected via ``sys.frozen``) ship
the engine under ``<resources>/engine/<platform>-<arch>/``. Development
builds use explicit config paths, then PATH, then the bare executable name.
Resolve once at start-up and pass the frozen result around.
"""

import os
import platform
import shutil
import sys
from functools import lru_cache
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, ConfigDict
from vtc.config.models import EngineConfig

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
}

class EnginePaths(BaseModel):
    model_config = ConfigDict(frozen=True)

    ffmpeg: str
    ffprobe: str
    packaged: bool = False

@lru_cache(maxsize=1)
def host_platform() -> str:
    """Platform-arch tag, e.g. linux-x64, darwin-arm64, win32-x64."""
    if sys.platform.startswith("win"):
        system = "win32"
    elif sys.platform == "darwin":
        system = "darwin"
    else:
        system = sys.platform.rstrip("0123456789") or sys.platform
    machine = platform.machine().lower()
    arch = _ARCH_ALIASES.get(machine, machine or "unknown")
    return f"{system}-{arch}"

def is_packaged_build() -> bool:
    return bool(getattr(sys, "frozen", False))

def _executable_name(name: str) -> str:
    return f"{name}.exe" if sys.platform.startswith("win") else name

def _bundled_path(name: str, resources_dir: Path) -> str:
    return str(resources_dir / "engine" / host_platform() / _executable_name(name))

def _development_path(name: str, configured: Optional[str]) -> str:
    if configured:
        return os.path.expanduser(configured)
    return shutil.which(name) or name

def resolve_engine_paths(config: Optional[EngineConfig] = None, packaged: Optional[bool] = None) -> EnginePaths:
    """Picks engine binaries for the current host.

    Args:
        config: Engine section of AppConfig (explicit paths, resources dir)
        packaged: Override packaged-build detection (tests)
    """
    config = config or EngineConfig()
    packaged = is_packaged_build() if packaged is None else packaged

    if packaged:
        resources = config.resources_dir or getattr(sys, "_MEIPASS", None) or os.path.dirname(sys.executable)
        resources_dir = Path(resources)
        return EnginePaths(
            ffmpeg=_bundled_path("ffmpeg", resources_dir),
            ffprobe=_bundled_path("ffprobe", resources_dir),
            packaged=True,
        )

    return EnginePaths(
        ffmpeg=_development_path("ffmpeg", config.ffmpeg_path),
        ffprobe=_development_path("ffprobe", config.ffprobe_path),
        packaged=False,
    )
