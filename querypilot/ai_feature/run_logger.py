import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AgentRunLogger:
    """Logger scoped to one agent run."""

    def __init__(self, run_id: Optional[str] = None):
        """
        Initialize a run logger.

        Args:
            run_id: Identifier shown on every console line. Generated when omitted.

        Example:
            run_log = AgentRunLogger()
            run_log.log(1, "Calling model")
        """
        self.run_id = run_id or uuid.uuid4().hex[:8]
        self.start_time = datetime.now()
        self.logs: List[Dict[str, Any]] = []

    def log(self, step: int, message: str, level: str = "info"):
        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "step": step,
            "message": message,
            "level": level,
            "elapsed_seconds": (datetime.now() - self.start_time).total_seconds(),
        }
        self.logs.append(log_entry)

        line = f"[Run {self.run_id}] step {step}: {message}"
        if level == "error":
            logger.error(line)
        elif level == "warning":
            logger.warning(line)
        else:
            logger.info(line)

    def get_summary(self, status: Optional[str] = None) -> Dict[str, Any]:
        """Compact overview of the run, logged once when it ends."""
        end_time = datetime.now()
        return {
            "run_id": self.run_id,
            "status": status,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": (end_time - self.start_time).total_seconds(),
            "total_logs": len(self.logs),
            "logs": self.logs,
        }
