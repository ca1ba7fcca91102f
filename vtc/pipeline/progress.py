import math
import re
from typing import Any, Mapping, Optional
from vtc.domain.models import ProgressEvent

DEFAULT_TIMEMARK = "00:00:00.00"
_TIMEMARK_RE = re.compile(r"^-?\d+:\d{2}:\d{2}(?:\.\d+)?$")

def normalize_percent(raw: Any) -> int:
    """Clamps a raw engine percent into [0, 100] and rounds it.

    Missing or unparsable values become 0. Values above 100 (ffmpeg overshoots
    when the container duration is short) are clamped, never passed through.
    """
    if raw is None or isinstance(raw, bool):
        return 0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0
    if math.isnan(value):
        return 0
    value = min(100.0, max(0.0, value))
    # Half rounds up: 12.5 -> 13
    return int(math.floor(value + 0.5))

def normalize_timemark(raw: Any) -> str:
    if not raw:
        return DEFAULT_TIMEMARK
    text = str(raw).strip()
    if not _TIMEMARK_RE.match(text) or text.startswith("-"):
        return DEFAULT_TIMEMARK
    return text

def normalize_size(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or value < 0:
        return None
    return int(value)

def normalize_progress(job_id: str, raw: Mapping[str, Any]) -> ProgressEvent:
    """Builds a ProgressEvent from an engine progress dict of any completeness."""
    return ProgressEvent(
        job_id=job_id,
        percent=normalize_percent(raw.get("percent")),
        timemark=normalize_timemark(raw.get("timemark")),
        target_size_kb=normalize_size(raw.get("target_size_kb")),
    )
