"""
Value types shared by the migration engine, the Magento sources and the
WooCommerce destination
"""
import uuid
from dataclasses import dataclass, field, asdict, fields

ENTITY_TYPES = ('products', 'categories', 'customers', 'orders')


class JobStatus:
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETE = 'complete'
    CANCELLED = 'cancelled'
    FAILED = 'failed'

    FINISHED = (COMPLETE, CANCELLED, FAILED)


class Action:
    CREATE = 'create'
    UPDATE = 'update'


class MigrationError(Exception):
    """Whole-job failure: the run cannot continue"""


class SourceError:
    """Structured failure returned by a Magento source instead of raising"""

    def __init__(self, message, code='source_error'):
        self.message = message
        self.code = code

    def __repr__(self):
        return f"SourceError({self.code!r}, {self.message!r})"

    def __str__(self):
        return self.message


class DestinationError:
    """Structured failure returned by the destination store on a rejected write"""

    def __init__(self, message, status_code=None):
        self.message = message
        self.status_code = status_code

    def __repr__(self):
        return f"DestinationError({self.status_code!r}, {self.message!r})"

    def __str__(self):
        return self.message


class MigrationResult:
    """Outcome of migrating a single source record"""

    def __init__(self, success, dest_id=None, action=None, reason=None):
        self.success = success
        self.dest_id = dest_id
        self.action = action
        self.reason = reason

    @classmethod
    def succeeded(cls, dest_id, action):
        return cls(True, dest_id=dest_id, action=action)

    @classmethod
    def failed(cls, reason):
        return cls(False, reason=reason)

    def __repr__(self):
        if self.success:
            return f"MigrationResult(SUCCESS, dest_id={self.dest_id!r}, action={self.action!r})"
        return f"MigrationResult(FAILURE, reason={self.reason!r})"


class Resolution:
    """Existence resolution for one natural key"""

    NEW = 'new'
    DUPLICATE_IN_RUN = 'duplicate_in_run'
    EXISTS_IN_DESTINATION = 'exists_in_destination'

    def __init__(self, kind, ref=None):
        self.kind = kind
        self.ref = ref

    @property
    def is_duplicate(self):
        return self.kind == self.DUPLICATE_IN_RUN

    def __repr__(self):
        return f"Resolution({self.kind!r}, ref={self.ref!r})"


@dataclass
class MigrationJob:
    """Persisted progress record, one slot per entity type"""
    entity_type: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = JobStatus.PENDING
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    created: int = 0
    updated: int = 0
    current_item: str = ''
    percentage: float = 0.0
    time_remaining: str = 'Calculating...'
    current_page: int = 1
    specific_page: int = None
    started_at: float = None
    finished_at: float = None
    errors: list = field(default_factory=list)
    skip_reasons: dict = field(default_factory=lambda: {'empty_key': 0, 'duplicate_in_run': 0})
    seen_keys: list = field(default_factory=list)
    checkpoint: dict = field(default_factory=dict)

    COUNTERS = ('processed', 'successful', 'failed', 'skipped', 'created', 'updated')

    def to_dict(self):
        return asdict(self)

    def mark_checkpoint(self):
        """Record the counters that match the current seen_keys snapshot"""
        self.checkpoint = {name: getattr(self, name) for name in self.COUNTERS}
        self.checkpoint['skip_reasons'] = dict(self.skip_reasons)
        self.checkpoint['errors'] = len(self.errors)

    def restore_checkpoint(self):
        """Roll counters back to the last checkpoint

        Records handled after the checkpoint are not in seen_keys and are
        migrated again when the job resumes.
        """
        if not self.checkpoint:
            return
        for name in self.COUNTERS:
            setattr(self, name, self.checkpoint.get(name, 0))
        self.skip_reasons = dict(self.checkpoint.get('skip_reasons') or self.skip_reasons)
        del self.errors[self.checkpoint.get('errors', len(self.errors)):]

    @classmethod
    def from_dict(cls, data):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def add_error(self, item, message, time):
        self.errors.append({'item': str(item), 'message': str(message), 'time': time})

    def final_stats(self):
        return FinalStats(
            total=self.total,
            processed=self.processed,
            successful=self.successful,
            failed=self.failed,
            skipped=self.skipped,
            status=self.status,
        )


@dataclass
class FinalStats:
    total: int
    processed: int
    successful: int
    failed: int
    skipped: int
    status: str = JobStatus.COMPLETE
