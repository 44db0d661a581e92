"""
vzdump task log parsing.

A single vzdump task can back up several guests in sequence. The task log is
split into one segment per guest, and every segment is reduced to an
EntityBackupRecord (status, sizes, duration, throughput, compression).

Both steps are pure functions: lines in, data out, no I/O.
"""

import math
import re
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional

from proxmox2mqtt.utils.datetime_utils import parse_local_timestamp

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"

RESULT_OK = "OK"
RESULT_ERROR = "ERROR"

START_MARKER_RE = re.compile(r"Starting Backup of VM\s+(\d+)", re.IGNORECASE)
ERROR_MARKER_RE = re.compile(r"Backup of VM\s+(\d+)\s+failed", re.IGNORECASE)
FINISH_MARKER_RE = re.compile(
    r"Finished Backup of VM\s+(\d+).*?\((\d+:\d+:\d+)\)", re.IGNORECASE
)
ARCHIVE_SIZE_RE = re.compile(r"archive file size:\s*([\d.,]+)\s*([A-Za-z]+)", re.IGNORECASE)
STARTED_AT_RE = re.compile(
    r"backup started at (\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})", re.IGNORECASE
)
FINISHED_AT_RE = re.compile(
    r"backup finished at (\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})", re.IGNORECASE
)
TOTAL_BYTES_RE = re.compile(r"total bytes written:\s*(\d+)", re.IGNORECASE)

# Archive size units expressed as a factor to GiB
ARCHIVE_UNIT_TO_GIB = {
    "KB": 1 / (1024 * 1024),
    "MB": 1 / 1024,
    "GB": 1.0,
    "TB": 1024.0,
}
BYTES_PER_GIB = 1024 ** 3


@dataclass(frozen=True)
class LogLine:
    """One numbered line of a Proxmox task log."""

    line_number: int
    text: str

    @classmethod
    def from_api(cls, entry: Dict[str, Any]) -> "LogLine":
        """Build from the API's ``{"n": 1, "t": "..."}`` shape."""
        return cls(line_number=int(entry.get("n", 0)), text=str(entry.get("t") or ""))


@dataclass
class EntityBackupRecord:
    """Parsed backup state of one guest within one task."""

    status: str = STATUS_RUNNING
    result: Optional[str] = None
    error: Optional[str] = None
    size: Optional[float] = None          # compressed archive size, GiB
    total_size: Optional[float] = None    # uncompressed bytes written, GiB
    duration: Optional[str] = None        # H:MM:SS
    duration_seconds: Optional[int] = None
    speed: Optional[float] = None         # MiB/s
    compression: Optional[int] = None     # percent saved
    compression_ratio: Optional[float] = None
    start_time: Optional[float] = None    # epoch seconds
    end_time: Optional[float] = None

    def mark_interrupted(self, exit_status: str) -> None:
        """Force an unfinished record to error after its task stopped abnormally."""
        if self.status == STATUS_COMPLETED:
            return
        self.status = STATUS_ERROR
        self.result = RESULT_ERROR
        self.error = f"Task interrupted ({exit_status})"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _finite(value: float) -> Optional[float]:
    return value if math.isfinite(value) else None


def _normalize_decimal(value: str) -> str:
    """
    Turn a size capture into a float literal.

    When both "," and "." appear the last one is the decimal separator and the
    other groups thousands. Several commas alone group thousands. A single
    comma alone is a decimal comma.
    """
    if "," in value and "." in value:
        if value.rfind(",") > value.rfind("."):
            return value.replace(".", "").replace(",", ".")
        return value.replace(",", "")
    if value.count(",") > 1:
        return value.replace(",", "")
    return value.replace(",", ".")


def _round_half_up(value: float) -> int:
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def convert_archive_size(value: str, unit: str) -> Optional[float]:
    """
    Convert an "archive file size" capture to GiB, rounded to 2 decimals.

    Returns None for unknown units or values that do not parse to a finite number.
    """
    factor = ARCHIVE_UNIT_TO_GIB.get(unit.upper())
    if factor is None:
        return None
    try:
        number = float(_normalize_decimal(value))
    except ValueError:
        return None
    gib = _finite(number * factor)
    return round(gib, 2) if gib is not None else None


def parse_duration(duration: str) -> Optional[int]:
    """Convert "H:MM:SS" to seconds."""
    parts = duration.split(":")
    if len(parts) != 3:
        return None
    try:
        hours, minutes, seconds = (int(part) for part in parts)
    except ValueError:
        return None
    return hours * 3600 + minutes * 60 + seconds


def segment_logs(lines: Iterable[LogLine]) -> Dict[str, List[LogLine]]:
    """
    Split a task log into per-guest segments.

    A segment starts at "Starting Backup of VM <id>" and runs until the next
    start marker or the end of the log. Segments are not closed on "Finished"
    or "ERROR" lines because size, timing and failure details for the same
    guest follow those markers. Lines before the first start marker and empty
    lines are dropped.

    Returns:
        Mapping vmid -> lines, in first-seen order
    """
    segments: Dict[str, List[LogLine]] = {}
    current_vmid: Optional[str] = None
    current_lines: List[LogLine] = []

    for line in lines:
        text = line.text if line is not None else ""
        if not text:
            continue

        start_match = START_MARKER_RE.search(text)
        if start_match:
            if current_vmid is not None and current_lines:
                segments[current_vmid] = current_lines
            current_vmid = start_match.group(1)
            current_lines = [line]
            continue

        if current_vmid is not None:
            current_lines.append(line)

    if current_vmid is not None and current_lines:
        segments[current_vmid] = current_lines

    return segments


def parse_backup_log(lines: Iterable[LogLine]) -> EntityBackupRecord:
    """
    Reduce one guest's log segment to an EntityBackupRecord.

    An error marker always wins over a finish marker, whatever their order.
    Derived fields (compression, ratio, speed) stay None unless both of their
    inputs were found.
    """
    record = EntityBackupRecord()
    saw_error = False
    saw_finished = False
    error_line: Optional[str] = None
    finished_duration: Optional[str] = None

    for line in lines:
        text = line.text if line is not None else ""
        if not text:
            continue
        lower = text.lower()

        if ERROR_MARKER_RE.search(text):
            saw_error = True
            error_line = text

        finish_match = FINISH_MARKER_RE.search(text)
        if finish_match:
            saw_finished = True
            finished_duration = finish_match.group(2)

        if "archive file size:" in lower:
            size_match = ARCHIVE_SIZE_RE.search(text)
            if size_match:
                size = convert_archive_size(size_match.group(1), size_match.group(2))
                if size is not None:
                    record.size = size

        if "backup started at" in lower:
            started_match = STARTED_AT_RE.search(text)
            if started_match:
                record.start_time = parse_local_timestamp(started_match.group(1))

        if "backup finished at" in lower:
            finished_match = FINISHED_AT_RE.search(text)
            if finished_match:
                record.end_time = parse_local_timestamp(finished_match.group(1))

        if "total bytes written:" in lower:
            bytes_match = TOTAL_BYTES_RE.search(text)
            if bytes_match:
                written = int(bytes_match.group(1))
                if written > 0:
                    record.total_size = round(written / BYTES_PER_GIB, 2)

    if finished_duration:
        record.duration = finished_duration
        record.duration_seconds = parse_duration(finished_duration)

    if saw_error:
        record.status = STATUS_ERROR
        record.result = RESULT_ERROR
        record.error = error_line
    elif saw_finished:
        record.status = STATUS_COMPLETED
        record.result = RESULT_OK

    _compute_derived_fields(record)
    return record


def _compute_derived_fields(record: EntityBackupRecord) -> None:
    size = record.size
    total = record.total_size

    if size is not None and total is not None and total > 0:
        compression = _finite(100 * (total - size) / total)
        record.compression = _round_half_up(compression) if compression is not None else None
        if size > 0:
            ratio = _finite(total / size)
            record.compression_ratio = round(ratio, 2) if ratio is not None else None

    if record.duration_seconds and total is not None:
        speed = _finite((total * 1024) / record.duration_seconds)
        record.speed = round(speed, 2) if speed is not None else None
