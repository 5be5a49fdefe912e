"""
Monitor - Tracks pipeline runs in a JSON run log
"""

import json
import fcntl
from pathlib import Path
from datetime import datetime
from typing import Dict, List, Optional

from menu_intel.models import new_id

MAX_RUNS_KEPT = 500


class PipelineMonitor:
    """Records what each pipeline run did and summarizes recent activity"""

    def __init__(self, log_file: str = "output/logs/pipeline_log.json"):
        self.log_file = Path(log_file)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

        self.log = self._load_log()

    def _load_log(self) -> Dict:
        """Load run log with file locking"""
        if self.log_file.exists():
            with open(self.log_file, 'r') as f:
                try:
                    # Acquire shared lock for reading
                    fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                    return json.load(f)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)

        return {
            'runs': [],
            'failed': {},
            'stats': {
                'total_runs': 0,
                'total_failed': 0,
                'last_updated': None
            }
        }

    def _save_log(self):
        """Save run log with file locking"""
        self.log['stats']['last_updated'] = datetime.now().isoformat()
        self.log['runs'] = self.log['runs'][-MAX_RUNS_KEPT:]

        self.log_file.parent.mkdir(parents=True, exist_ok=True)

        with open(self.log_file, 'w') as f:
            try:
                # Acquire exclusive lock for writing
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                json.dump(self.log, f, indent=2)
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def _find_run(self, run_id: str) -> Dict:
        for run in reversed(self.log['runs']):
            if run['run_id'] == run_id:
                return run
        raise KeyError(f"Unknown run {run_id}")

    def start_run(self, mode: str, restaurant_id: Optional[str] = None) -> str:
        """Open a run entry and return its id"""
        run_id = new_id()
        self.log['runs'].append({
            'run_id': run_id,
            'mode': mode,
            'restaurant_id': restaurant_id,
            'status': 'in_progress',
            'started_at': datetime.now().isoformat(),
            'finished_at': None,
            'succeeded': 0,
            'failed': 0,
            'skipped': 0,
            'warnings': [],
            'error': None
        })
        self.log['stats']['total_runs'] += 1
        self._save_log()
        return run_id

    def finish_run(self, run_id: str, succeeded: int = 0, failed: int = 0, skipped: int = 0,
                   warnings: Optional[List[str]] = None):
        """Close a run; any failed or skipped item makes it partial"""
        run = self._find_run(run_id)
        run.update({
            'status': 'partial' if failed or skipped else 'completed',
            'finished_at': datetime.now().isoformat(),
            'succeeded': succeeded,
            'failed': failed,
            'skipped': skipped,
            'warnings': list(warnings or []),
        })

        # A successful run clears earlier failures for the same target
        target = run.get('restaurant_id') or '*'
        if target in self.log['failed'] and run['mode'] in self.log['failed'][target]:
            del self.log['failed'][target][run['mode']]
            if not self.log['failed'][target]:
                del self.log['failed'][target]

        self._save_log()

    def fail_run(self, run_id: str, error: str):
        """Close a run that raised"""
        run = self._find_run(run_id)
        run.update({
            'status': 'failed',
            'finished_at': datetime.now().isoformat(),
            'error': error,
        })

        target = run.get('restaurant_id') or '*'
        previous = self.log['failed'].get(target, {}).get(run['mode'], {})
        self.log['failed'].setdefault(target, {})[run['mode']] = {
            'timestamp': run['finished_at'],
            'error': error,
            'attempts': previous.get('attempts', 0) + 1
        }
        self.log['stats']['total_failed'] += 1

        self._save_log()

    def get_recent_runs(self, limit: int = 10) -> List[Dict]:
        runs = sorted(self.log['runs'], key=lambda r: r['started_at'], reverse=True)
        return runs[:limit]

    def get_status(self) -> Dict:
        """Get run status summary"""
        runs = self.log['runs']
        by_mode = {}
        for run in runs:
            mode_stats = by_mode.setdefault(run['mode'], {'runs': 0, 'completed': 0, 'partial': 0, 'failed': 0})
            mode_stats['runs'] += 1
            if run['status'] in mode_stats:
                mode_stats[run['status']] += 1

        return {
            'total_runs': self.log['stats']['total_runs'],
            'total_failed': self.log['stats']['total_failed'],
            'in_progress_count': sum(1 for run in runs if run['status'] == 'in_progress'),
            'items_succeeded': sum(run.get('succeeded', 0) for run in runs),
            'items_failed': sum(run.get('failed', 0) for run in runs),
            'items_skipped': sum(run.get('skipped', 0) for run in runs),
            'by_mode': by_mode,
            'failed_targets': self.log['failed'],
            'recent_runs': self.get_recent_runs(10),
            'last_updated': self.log['stats']['last_updated']
        }

    def get_report(self) -> str:
        """Plain-text report of the run log"""
        status = self.get_status()

        report = f"""
MENU INTELLIGENCE PIPELINE REPORT
=================================
Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}

OVERALL
-------
Runs: {status['total_runs']}
Failed Runs: {status['total_failed']}
In Progress: {status['in_progress_count']}
Items Succeeded: {status['items_succeeded']}
Items Failed: {status['items_failed']}
Items Skipped: {status['items_skipped']}

RUNS BY MODE
------------
"""
        for mode, stats in status['by_mode'].items():
            report += (
                f"{mode:12} {stats['runs']:4} runs  {stats['completed']:4} completed  "
                f"{stats['partial']:4} partial  {stats['failed']:4} failed\n"
            )

        if status['failed_targets']:
            report += "\nFAILED TARGETS\n"
            report += "--------------\n"
            for target, modes in status['failed_targets'].items():
                for mode, data in modes.items():
                    report += f"{target}/{mode}: {data['attempts']} attempts - {data.get('error', 'Unknown error')}\n"

        return report

    def reset_failed(self, restaurant_id: Optional[str] = None):
        """Forget failures for one restaurant, or all of them"""
        if restaurant_id:
            self.log['failed'].pop(restaurant_id, None)
        else:
            self.log['failed'] = {}

        self._save_log()
