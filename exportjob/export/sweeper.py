"""
Sweeper for temporary export artifacts.

Every attempt deletes its own temporary artifact, but a process killed
mid-export leaves the partial file behind. The sweeper removes export
artifacts older than the configured age, skipping local deliverables that
are still referenced by a succeeded job.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable

from .job import ARTIFACT_PREFIX, ARTIFACT_SUFFIX, utcnow


logger = logging.getLogger(__name__)


class ArtifactSweeper:
    """Deletes stale export artifacts from the temporary directory."""

    def __init__(self, temp_dir: str, max_age: timedelta, clock: Callable[[], datetime] = utcnow):
        self.temp_dir = Path(temp_dir)
        self.max_age = max_age
        self.clock = clock
        self.logs = []

    def sweep(self, protected_paths: Iterable[str] = ()) -> Dict[str, Any]:
        """
        Delete artifacts whose modification time is older than max_age.

        Args:
            protected_paths: Paths that must be kept (local deliverables)

        Returns:
            Dict with summary:
            {
                'deleted': int,
                'kept': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        summary = {
            'deleted': 0,
            'kept': 0,
            'errors': []
        }

        if not self.temp_dir.is_dir():
            self._log(f"Temporary directory does not exist, nothing to sweep: {self.temp_dir}")
            summary['logs'] = self.logs
            return summary

        protected = {Path(p).resolve() for p in protected_paths if p}
        cutoff = self.clock() - self.max_age

        for path in sorted(self.temp_dir.glob(f"{ARTIFACT_PREFIX}*{ARTIFACT_SUFFIX}")):
            if not path.is_file():
                continue

            if path.resolve() in protected:
                summary['kept'] += 1
                continue

            try:
                modified = datetime.utcfromtimestamp(path.stat().st_mtime)
                if modified >= cutoff:
                    summary['kept'] += 1
                    continue

                path.unlink()
                summary['deleted'] += 1
                self._log(f"Deleted stale artifact: {path.name}")
            except FileNotFoundError:
                # Removed by its own attempt in the meantime
                continue
            except OSError as e:
                error_msg = f"Failed to delete stale artifact {path.name}: {e}"
                self._log(error_msg, logging.WARNING)
                summary['errors'].append(error_msg)

        self._log(
            f"Artifact sweep complete. "
            f"Deleted: {summary['deleted']}, "
            f"Kept: {summary['kept']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = self.clock().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def sweep_stale_artifacts() -> Dict[str, Any]:
    """
    Sweep the configured temporary directory.

    Must be called within app context.
    """
    from flask import current_app
    from exportjob.models import ExportJob

    config = current_app.config
    protected = [
        job.artifact_path
        for job in ExportJob.query.filter(
            ExportJob.status == 'succeeded',
            ExportJob.artifact_path.isnot(None)
        ).all()
    ]

    sweeper = ArtifactSweeper(config['TEMP_DIR'], timedelta(hours=config['ARTIFACT_SWEEP_MAX_AGE_HOURS']))
    return sweeper.sweep(protected)
