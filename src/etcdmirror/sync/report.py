"""Per-item results and per-run reports for the sync components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class ItemResult:
    """Outcome of syncing one key/file."""

    key: str
    action: str  # "write", "delete", "upload", "scan", "skip"
    ok: bool = True
    error: str = ""

    @classmethod
    def failed(cls, key: str, action: str, error: Exception | str) -> ItemResult:
        return cls(key=key, action=action, ok=False, error=str(error))


@dataclass
class BootstrapReport:
    """Result of the initial download of every key under the prefix."""

    revision: int = 0
    written: list[str] = field(default_factory=list)
    failures: list[ItemResult] = field(default_factory=list)
    error: str = ""

    @property
    def success(self) -> bool:
        return not self.error


@dataclass
class CycleReport:
    """Result of one local poller cycle."""

    scanned: int = 0
    changed: list[str] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)
    failures: list[ItemResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # changed but outside the prefix
    started: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_seconds: float = 0.0

    @property
    def failed_keys(self) -> list[str]:
        return [f.key for f in self.failures]

    def summary(self) -> str:
        return (
            f"{self.scanned} scanned, {len(self.changed)} changed, "
            f"{len(self.uploaded)} uploaded, {len(self.failures)} failed"
        )

    def to_dict(self) -> dict:
        return {
            "started": self.started.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "scanned": self.scanned,
            "changed": list(self.changed),
            "uploaded": list(self.uploaded),
            "skipped": list(self.skipped),
            "failures": [{"key": f.key, "action": f.action, "error": f.error} for f in self.failures],
        }
