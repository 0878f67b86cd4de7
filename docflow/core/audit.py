"""
JSONL audit trail for docflow.

Every workflow creation, phase commit, task dispatch, reissue and completion
is appended as one JSON object per line. The module-level helpers are no-ops
until ``init_audit_logger`` has been called by the composition root, so the
engine can be used (and tested) without an audit file.
"""

import json
import traceback
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

_logger: Optional["AuditLogger"] = None


class AuditLogger:
    """
    Append-only JSONL audit logger.

    Entries look like::

        {"ts": "...", "session_id": "...", "category": "task",
         "action": "dispatch", "details": {"workflow_id": "...", "task_id": "..."}}
    """

    CATEGORIES = {
        "workflow": ["create", "resume", "supersede", "commit", "delete", "cleanup"],
        "phase": ["start", "complete", "failed"],
        "task": [
            "queue_init",
            "dispatch",
            "redispatch",
            "reissue",
            "complete",
            "duplicate",
            "fail",
            "retry",
            "blocked",
        ],
        "server": ["start", "tool_call"],
        "error": ["exception"],
    }

    def __init__(
        self,
        log_path: Path,
        retention_days: int = 30,
        session_id: Optional[str] = None,
    ):
        """
        Args:
            log_path: Path to the JSONL file
            retention_days: Days to retain entries (0 = forever)
            session_id: Identifier for this process (auto-generated if None)
        """
        self.log_path = Path(log_path)
        self.retention_days = retention_days
        self.session_id = session_id or datetime.now().strftime("%Y%m%d-%H%M%S")

        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        if retention_days > 0:
            self._cleanup_old_entries()

    def log(
        self,
        category: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an entry.

        Args:
            category: One of CATEGORIES
            action: Action within the category
            details: Optional structured details
        """
        if category not in self.CATEGORIES:
            raise ValueError(f"Invalid audit category: {category}")

        entry: Dict[str, Any] = {
            "ts": datetime.now().isoformat(),
            "session_id": self.session_id,
            "category": category,
            "action": action,
        }
        if details:
            entry["details"] = details

        self._write_entry(entry)

    def log_error(
        self,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log an exception with its traceback."""
        details: Dict[str, Any] = {
            "error_type": type(error).__name__,
            "error_message": str(error),
            "traceback": "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ),
        }
        if context:
            details["context"] = context

        self._write_entry(
            {
                "ts": datetime.now().isoformat(),
                "session_id": self.session_id,
                "category": "error",
                "action": "exception",
                "details": details,
            }
        )

    def _write_entry(self, entry: Dict[str, Any]) -> None:
        with open(self.log_path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def _cleanup_old_entries(self) -> int:
        """Drop entries older than the retention period.

        Returns:
            Number of entries removed
        """
        if not self.log_path.exists():
            return 0

        cutoff = (datetime.now() - timedelta(days=self.retention_days)).isoformat()
        kept = []
        removed = 0

        with open(self.log_path, "r") as f:
            for line in f:
                try:
                    entry = json.loads(line.strip())
                except json.JSONDecodeError:
                    kept.append(line)
                    continue
                if entry.get("ts", "") >= cutoff:
                    kept.append(line)
                else:
                    removed += 1

        if removed > 0:
            with open(self.log_path, "w") as f:
                f.writelines(kept)

        return removed

    def get_entries(
        self,
        category: Optional[str] = None,
        action: Optional[str] = None,
        workflow_id: Optional[str] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        """Read entries, newest first.

        Args:
            category: Filter by category
            action: Filter by action
            workflow_id: Filter by ``details.workflow_id``
            limit: Maximum entries to return
        """
        if not self.log_path.exists():
            return []

        entries = []
        with open(self.log_path, "r") as f:
            for line in f:
                try:
                    entry = json.loads(line.strip())
                except json.JSONDecodeError:
                    continue

                if category and entry.get("category") != category:
                    continue
                if action and entry.get("action") != action:
                    continue
                if workflow_id and entry.get("details", {}).get("workflow_id") != workflow_id:
                    continue
                entries.append(entry)

        return list(reversed(entries[-limit:]))


def get_logger() -> Optional[AuditLogger]:
    """Get the current audit logger, if initialized."""
    return _logger


def init_logger(
    log_path: Path,
    retention_days: int = 30,
    session_id: Optional[str] = None,
) -> AuditLogger:
    """Install a module-level logger writing to ``log_path``."""
    global _logger
    _logger = AuditLogger(log_path, retention_days, session_id)
    return _logger


def init_audit_logger(
    log_dir: Path,
    retention_days: int = 30,
    session_id: Optional[str] = None,
) -> AuditLogger:
    """Install a module-level logger writing to a dated file in ``log_dir``."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    if retention_days > 0:
        remove_expired_files(log_dir, retention_days)
    log_file = log_dir / f"audit_{datetime.now().strftime('%Y%m%d')}.jsonl"
    return init_logger(log_file, retention_days, session_id)


def remove_expired_files(log_dir: Path, retention_days: int) -> List[Path]:
    """Delete daily ``audit_YYYYMMDD.jsonl`` files dated before the retention cutoff.

    Returns:
        Paths of the removed files
    """
    cutoff = (datetime.now() - timedelta(days=retention_days)).date()
    removed = []
    for path in sorted(Path(log_dir).glob("audit_*.jsonl")):
        try:
            day = datetime.strptime(path.stem[len("audit_"):], "%Y%m%d").date()
        except ValueError:
            continue
        if day < cutoff:
            path.unlink()
            removed.append(path)
    return removed


def reset_logger() -> None:
    """Remove the module-level logger (audit calls become no-ops)."""
    global _logger
    _logger = None


def log_audit(
    category: str,
    action: str,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Log an entry with the module-level logger; no-op if not initialized."""
    if _logger:
        _logger.log(category, action, details)


def log_error(
    error: BaseException,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Log an exception with the module-level logger; no-op if not initialized."""
    if _logger:
        _logger.log_error(error, context)
