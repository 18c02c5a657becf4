"""
Per-service progress parsing for `docker compose pull` output.

Compose prints different shapes depending on whether it has a TTY:

    TTY                                    non-TTY
    [+] Pulling 3/5                        web Pulling
     ✔ web Pulled             2.1s         abc123: Pulling from library/nginx
     - db Pulling             3.2s         abc123: Already exists
       ⠿ def456 Downloading [==>  ] 45%    def456: Downloading [==>  ] 50%
     ✔ cache image is up to date           web Pulled

Layer lines do not say which service they belong to, so layer progress is
applied to every service still in the matching phase.

The parser is a table of (pattern, transition) rules tried in order; the
first rule whose pattern matches and whose transition changes something
wins. Status only moves forward along PullStatus.rank, except that error
can be entered from any non-terminal status.
"""

import logging
import re
from typing import Callable, Dict, Iterable, List, Match, Optional, Pattern, Tuple

from .model import PullStatus, ServicePullProgress

logger = logging.getLogger(__name__)

DOWNLOAD_WEIGHT = 0.7
EXTRACT_WEIGHT = 0.3
EXTRACT_BASE = 70
MAX_IN_FLIGHT_PERCENT = 99
PULLING_START_PERCENT = 5
LAYER_STEP_PERCENT = 2
LAYER_STEP_CAP = 90

SPINNER = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏⠿"

SERVICE_PULLED_TTY = re.compile(r"^\s*[✔✓]\s+(\S+)\s+(Pulled|pulled)")
SERVICE_UP_TO_DATE_TTY = re.compile(r"^\s*[✔✓]\s+(\S+)\s+image is up to date", re.IGNORECASE)
SERVICE_PULLED_PLAIN = re.compile(r"^(\S+)\s+Pulled\s*$")
SERVICE_PULLING_TTY = re.compile(rf"^\s*[-{SPINNER}]\s+(\S+)\s+(Pulling|Waiting)")
SERVICE_PULLING_PLAIN = re.compile(r"^(\S+)\s+(Pulling|Waiting)\s*$")

_SIZE = r"(\d+(?:\.\d+)?)\s*([KMGT]?B)/(\d+(?:\.\d+)?)\s*([KMGT]?B)"
LAYER_DOWNLOADING_SIZE = re.compile(rf"^\s*(?:[{SPINNER}✔✓-]\s+)?[a-f0-9]+:?\s+Downloading\s+\[.*?\]\s+{_SIZE}", re.IGNORECASE)
LAYER_EXTRACTING_SIZE = re.compile(rf"^\s*(?:[{SPINNER}✔✓-]\s+)?[a-f0-9]+:?\s+Extracting\s+\[.*?\]\s+{_SIZE}", re.IGNORECASE)
LAYER_DOWNLOADING = re.compile(rf"^\s*(?:[{SPINNER}✔✓-]\s+)?(?:\S+:?\s+)?Downloading\s+(?:\[.*?\])?\s*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE)
LAYER_EXTRACTING = re.compile(rf"^\s*(?:[{SPINNER}✔✓-]\s+)?(?:\S+:?\s+)?Extracting\s+(?:\[.*?\])?\s*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE)
LAYER_DONE = re.compile(rf"^\s*(?:[{SPINNER}✔✓-]\s+)?\S+[:\s]+(Already exists|Download complete|Pull complete|Verifying Checksum)", re.IGNORECASE)

ERROR_KEYWORD = re.compile(r"\b(error|failed)\b", re.IGNORECASE)
ERROR_PHRASES = ("error pulling", "failed to", "error:")

_UNITS = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3, "TB": 1024 ** 4}


def size_to_bytes(value: str, unit: str) -> float:
    try:
        return float(value) * _UNITS.get(unit.upper(), 1)
    except ValueError:
        return 0.0


def size_percent(match: Match) -> float:
    current = size_to_bytes(match.group(1), match.group(2))
    total = size_to_bytes(match.group(3), match.group(4))
    return current / total * 100 if total > 0 else 0.0


def is_error_line(line: str) -> bool:
    lowered = line.lower()
    return bool(ERROR_KEYWORD.search(line)) and any(p in lowered for p in ERROR_PHRASES)


def overall_progress(services: Iterable[ServicePullProgress]) -> int:
    """Integer mean of per-service percentages."""
    items = list(services)
    if not items:
        return 0
    return sum(s.progress_percent for s in items) // len(items)


def phase_progress(phase: str, raw_progress: int) -> int:
    """Fold pull into the first half of overall progress and recreate into the second."""
    if phase == "recreate":
        return 50 + raw_progress // 2
    return raw_progress // 2


class PullProgressParser:
    """Stateful parser mapping streamed pull output onto ServicePullProgress records."""

    def __init__(self, service_names: Iterable[str]):
        self.services: Dict[str, ServicePullProgress] = {
            name: ServicePullProgress(service_name=name) for name in service_names
        }
        self._rules: List[Tuple[Pattern, Callable[[Match, str], bool]]] = [
            (SERVICE_PULLED_TTY, self._service_pulled),
            (SERVICE_UP_TO_DATE_TTY, self._service_pulled),
            (SERVICE_PULLED_PLAIN, self._service_pulled),
            (SERVICE_PULLING_TTY, self._service_pulling),
            (SERVICE_PULLING_PLAIN, self._service_pulling),
            (LAYER_DOWNLOADING_SIZE, lambda m, line: self._download(size_percent(m), line)),
            (LAYER_DOWNLOADING, lambda m, line: self._download(float(m.group(1)), line)),
            (LAYER_EXTRACTING_SIZE, lambda m, line: self._extract(size_percent(m), line)),
            (LAYER_EXTRACTING, lambda m, line: self._extract(float(m.group(1)), line)),
            (LAYER_DONE, self._layer_done),
        ]

    def progress_list(self) -> List[ServicePullProgress]:
        return list(self.services.values())

    def overall_progress(self) -> int:
        return overall_progress(self.services.values())

    def parse_line(self, line: str) -> bool:
        """Apply one output line; True when any service changed."""
        if not line or not line.strip():
            return False

        for pattern, transition in self._rules:
            match = pattern.search(line)
            if match and transition(match, line.strip()):
                return True

        if is_error_line(line):
            return self._error(line.strip())
        return False

    def mark_all(self, status: PullStatus, percent: int, message: Optional[str] = None,
                 only_pending: bool = False) -> None:
        """Force a status on every service, or only on services not yet pulled."""
        for progress in self.services.values():
            if only_pending and progress.status in (PullStatus.PULLED, PullStatus.COMPLETED):
                continue
            progress.status = status
            if status != PullStatus.ERROR:
                progress.progress_percent = percent
            progress.message = message

    def _service_pulled(self, match: Match, line: str) -> bool:
        progress = self.services.get(match.group(1))
        if progress is None or progress.status.is_terminal:
            return False
        progress.status = PullStatus.PULLED
        progress.progress_percent = 100
        progress.message = line
        logger.debug(f"Service {progress.service_name} marked as pulled")
        return True

    def _service_pulling(self, match: Match, line: str) -> bool:
        progress = self.services.get(match.group(1))
        if progress is None:
            return False
        target = PullStatus.WAITING if match.group(2).lower() == "waiting" else PullStatus.PULLING
        if progress.status == PullStatus.ERROR or progress.status.rank >= target.rank:
            return False
        progress.status = target
        progress.progress_percent = max(progress.progress_percent, PULLING_START_PERCENT)
        progress.message = line
        return True

    def _advance(self, sources: Tuple[PullStatus, ...], target: PullStatus, percent: int,
                 line: str) -> bool:
        changed = False
        for progress in self.services.values():
            if progress.status not in sources:
                continue
            progress.status = target
            progress.progress_percent = max(progress.progress_percent, percent)
            progress.message = line
            changed = True
        return changed

    def _download(self, percent: float, line: str) -> bool:
        scaled = min(MAX_IN_FLIGHT_PERCENT, int(round(percent * DOWNLOAD_WEIGHT)))
        return self._advance((PullStatus.PULLING, PullStatus.DOWNLOADING), PullStatus.DOWNLOADING, scaled, line)

    def _extract(self, percent: float, line: str) -> bool:
        scaled = min(MAX_IN_FLIGHT_PERCENT, EXTRACT_BASE + int(round(percent * EXTRACT_WEIGHT)))
        return self._advance((PullStatus.DOWNLOADING, PullStatus.EXTRACTING), PullStatus.EXTRACTING, scaled, line)

    def _layer_done(self, match: Match, line: str) -> bool:
        changed = False
        for progress in self.services.values():
            if progress.status in (PullStatus.PULLING, PullStatus.DOWNLOADING):
                progress.status = PullStatus.DOWNLOADING
                progress.progress_percent = max(
                    progress.progress_percent,
                    min(LAYER_STEP_CAP, progress.progress_percent + LAYER_STEP_PERCENT),
                )
                progress.message = line
                changed = True
        return changed

    def _error(self, line: str) -> bool:
        changed = False
        for progress in self.services.values():
            if progress.status in (PullStatus.PULLED, PullStatus.COMPLETED, PullStatus.ERROR):
                continue
            progress.status = PullStatus.ERROR
            progress.message = line
            changed = True
        if changed:
            logger.warning(f"Pull error reported: {line}")
        return changed
