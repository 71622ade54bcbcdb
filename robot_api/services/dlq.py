"""
Dead-letter directory for webhook deliveries that exhausted their retries
"""
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from .. import config

log = logging.getLogger("robot")


class DeadLetterQueue:
    def __init__(self, dlq_dir):
        self.dlq_dir = Path(dlq_dir)
        self.max_age_seconds = config.DLQ_MAX_AGE_DAYS * 24 * 60 * 60

    def write_failed_delivery(self,
                              target_url: str,
                              payload: Dict[str, Any],
                              error: str,
                              last_status: Optional[int] = None,
                              attempts: int = 0) -> str:
        """Write a failed delivery record and return its file name"""
        self.dlq_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now()
        job_id = str(payload.get("jobId", "unknown"))
        filename = f"{timestamp.strftime('%Y%m%d_%H%M%S_%f')}_{job_id}.jsonl"

        record = {
            "timestamp": timestamp.isoformat(),
            "target_url": target_url,
            "error": error,
            "last_status": last_status,
            "attempts": attempts,
            "payload": payload,
        }
        with open(self.dlq_dir / filename, 'w') as f:
            f.write(json.dumps(record, default=str) + '\n')

        log.warning("webhook delivery dead-lettered", extra={"component": "webhook", "file": filename, "job_id": job_id})
        return filename

    def get_dlq_stats(self) -> Dict[str, Any]:
        """Get DLQ statistics"""
        if not self.dlq_dir.exists():
            return {"total_files": 0, "total_size_kb": 0, "oldest_age_hours": 0}

        total_files = 0
        total_size = 0
        oldest = None
        for filepath in self.dlq_dir.glob("*.jsonl"):
            total_files += 1
            stat = filepath.stat()
            total_size += stat.st_size
            mtime = datetime.fromtimestamp(stat.st_mtime)
            if oldest is None or mtime < oldest:
                oldest = mtime

        oldest_age_hours = (datetime.now() - oldest).total_seconds() / 3600 if oldest else 0
        return {
            "total_files": total_files,
            "total_size_kb": round(total_size / 1024, 2),
            "oldest_age_hours": round(oldest_age_hours, 2),
        }

    def cleanup_old_records(self) -> int:
        """Clean up old DLQ records"""
        if not self.dlq_dir.exists():
            return 0
        cutoff_time = datetime.now() - timedelta(seconds=self.max_age_seconds)
        deleted_count = 0
        for filepath in self.dlq_dir.glob("*.jsonl"):
            try:
                if datetime.fromtimestamp(filepath.stat().st_mtime) < cutoff_time:
                    filepath.unlink()
                    deleted_count += 1
            except OSError as e:
                log.error("Error deleting DLQ file %s: %s", filepath, e)
        return deleted_count


def get_dlq() -> DeadLetterQueue:
    return DeadLetterQueue(Path(config.STORAGE_DIR) / "dlq" / "webhooks")
