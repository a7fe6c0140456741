"""
Progress tracking: the persisted job slot per entity type and the reporter
that derives percentage and time remaining from the job's counters
"""
import json
import math
import os
import time
from models import MigrationJob, JobStatus
from logger import setup_logger

logger = setup_logger(__name__)

CALCULATING = 'Calculating...'
COMPLETE = 'Complete'


def calculate_percentage(processed, total):
    """Percentage of processed items, capped at 100

    Args:
        processed: Records processed so far
        total: Best-effort total count

    Returns:
        float: 0 when total <= 0, otherwise min(100, round(100 * processed / total, 1))
    """
    if total <= 0:
        return 0
    processed = min(processed, total)
    return min(100, round(processed / total * 100, 1))


def _plural(value, singular, plural):
    return singular if value == 1 else plural


def format_time_remaining(elapsed, processed, total):
    """Estimate time remaining from the average time per processed record

    Args:
        elapsed: Seconds since the job started
        processed: Records processed so far
        total: Best-effort total count

    Returns:
        str: 'Calculating...', 'Complete', or 'N seconds' / 'N minutes' / 'X.Y hours'
    """
    if processed < 1 or elapsed <= 0:
        return CALCULATING

    processed = min(processed, total) if total > 0 else processed
    remaining_items = max(0, total - processed)
    estimated_seconds = (elapsed / processed) * remaining_items

    if estimated_seconds <= 0 or remaining_items == 0:
        return COMPLETE
    if estimated_seconds < 60:
        seconds = math.ceil(estimated_seconds)
        return f"{seconds} {_plural(seconds, 'second', 'seconds')}"
    if estimated_seconds < 3600:
        minutes = math.ceil(estimated_seconds / 60)
        return f"{minutes} {_plural(minutes, 'minute', 'minutes')}"
    hours = round(estimated_seconds / 3600, 1)
    return f"{hours} {_plural(hours, 'hour', 'hours')}"


class ProgressStore:
    """Single persisted slot per entity type

    Job slots are small and rewritten after every record. The natural keys a
    job has seen, together with the counters that match them, are kept apart
    and only written at checkpoints.

    Subclasses implement _read/_write over a dict of entity_type -> job dict,
    and _read_keys/_write_keys over a dict of entity_type -> {'id', 'keys', 'checkpoint'}.
    """

    def _read(self):
        raise NotImplementedError

    def _write(self, slots):
        raise NotImplementedError

    def _read_keys(self):
        raise NotImplementedError

    def _write_keys(self, keys):
        raise NotImplementedError

    @staticmethod
    def _slot(job):
        data = job.to_dict()
        data.pop('seen_keys', None)
        data.pop('checkpoint', None)
        return data

    def load(self, entity_type):
        """Return the stored MigrationJob for entity_type, or None"""
        data = self._read().get(entity_type)
        if not data:
            return None
        job = MigrationJob.from_dict(data)

        stored_keys = self._read_keys().get(entity_type) or {}
        if stored_keys.get('id') == job.id:
            job.seen_keys = list(stored_keys.get('keys') or [])
            job.checkpoint = dict(stored_keys.get('checkpoint') or {})
        return job

    def save(self, job, keys=False):
        """Write the job slot, and its seen_keys too when keys is True"""
        if keys:
            self._save_keys(job)
        slots = self._read()
        slots[job.entity_type] = self._slot(job)
        self._write(slots)

    def sync(self, job, keys=False):
        """Write the job slot, first carrying over a cancellation flagged on the stored slot

        The stored slot is read once, immediately before it is replaced.

        Returns:
            bool: True if the job is cancelled
        """
        if keys:
            self._save_keys(job)
        slots = self._read()
        stored = slots.get(job.entity_type) or {}
        if stored.get('id') == job.id and stored.get('status') == JobStatus.CANCELLED:
            job.status = JobStatus.CANCELLED
        slots[job.entity_type] = self._slot(job)
        self._write(slots)
        return job.status == JobStatus.CANCELLED

    def is_cancelled(self, job):
        """True if another caller flagged this job as cancelled"""
        stored = self._read().get(job.entity_type) or {}
        return stored.get('id') == job.id and stored.get('status') == JobStatus.CANCELLED

    def _save_keys(self, job):
        all_keys = self._read_keys()
        all_keys[job.entity_type] = {'id': job.id, 'keys': list(job.seen_keys), 'checkpoint': job.checkpoint}
        self._write_keys(all_keys)

    def request_cancel(self, entity_type):
        """Flag the stored job as cancelled; the running engine picks this up at its next poll

        Returns:
            bool: True if a job was flagged
        """
        slots = self._read()
        data = slots.get(entity_type)
        if not data or data.get('status') in JobStatus.FINISHED:
            return False
        data['status'] = JobStatus.CANCELLED
        self._write(slots)
        logger.info(f"Cancellation requested for {entity_type} migration")
        return True

    def reset(self, entity_type):
        slots = self._read()
        if slots.pop(entity_type, None) is not None:
            self._write(slots)
        all_keys = self._read_keys()
        if all_keys.pop(entity_type, None) is not None:
            self._write_keys(all_keys)


class MemoryProgressStore(ProgressStore):
    """In-process store, used for tests and one-shot runs"""

    def __init__(self):
        self._slots = {}
        self._keys = {}

    def _read(self):
        return json.loads(json.dumps(self._slots))

    def _write(self, slots):
        self._slots = json.loads(json.dumps(slots))

    def _read_keys(self):
        return json.loads(json.dumps(self._keys))

    def _write_keys(self, keys):
        self._keys = json.loads(json.dumps(keys))


class JsonProgressStore(ProgressStore):
    """Progress persisted to a JSON file so another process can poll or cancel

    Seen keys go to a sibling file, e.g. migration_progress.keys.json.
    """

    def __init__(self, path):
        self.path = path
        self.keys_path = f"{os.path.splitext(path)[0]}.keys.json"

    def _read_file(self, path):
        if not os.path.exists(path):
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except ValueError as e:
            logger.warning(f"Progress file {path} is not valid JSON, starting empty: {e}")
            return {}

    def _write_file(self, path, data, indent=None):
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=indent, default=str)
        os.replace(tmp_path, path)

    def _read(self):
        return self._read_file(self.path)

    def _write(self, slots):
        self._write_file(self.path, slots, indent=2)

    def _read_keys(self):
        return self._read_file(self.keys_path)

    def _write_keys(self, keys):
        self._write_file(self.keys_path, keys)


class ProgressReporter:
    """Recomputes derived progress fields and persists the job

    The reporter never changes counters. If the stored slot was flagged as
    cancelled by another caller, that status is carried into the job before
    it is written back.
    """

    LOG_EVERY_RECORDS = 50
    LOG_EVERY_PERCENT = 10

    def __init__(self, store, clock=time.time, progress_callback=None):
        self.store = store
        self.clock = clock
        self.progress_callback = progress_callback
        self._last_logged_step = None

    def sync_status(self, job):
        """Pull an externally set cancellation into the job

        Returns:
            bool: True if the job is now cancelled
        """
        if self.store.is_cancelled(job):
            job.status = JobStatus.CANCELLED
        return job.status == JobStatus.CANCELLED

    def report(self, job, current_item='', checkpoint=False):
        """Persist progress; with checkpoint=True the job's seen_keys are written as well"""
        job.current_item = current_item
        job.percentage = calculate_percentage(job.processed, job.total)

        elapsed = self.clock() - job.started_at if job.started_at else 0
        job.time_remaining = format_time_remaining(elapsed, job.processed, job.total)

        self.store.sync(job, keys=checkpoint)

        self._log(job, current_item)
        if self.progress_callback:
            self.progress_callback(job)

    def _log(self, job, current_item):
        step = int(job.percentage // self.LOG_EVERY_PERCENT)
        crossed_step = step != self._last_logged_step
        on_record_boundary = job.processed > 0 and job.processed % self.LOG_EVERY_RECORDS == 0

        message = (f"Progress {job.percentage}% ({job.processed}/{job.total} processed, "
                   f"{job.successful} successful, {job.failed} failed, {job.skipped} skipped) "
                   f"ETA {job.time_remaining} - {current_item or 'Starting...'}")
        if crossed_step or on_record_boundary:
            self._last_logged_step = step
            logger.info(message)
        else:
            logger.debug(message)
