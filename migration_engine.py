"""
Paginated, resumable, idempotent batch migration engine

One generic engine drives every entity type. Entity differences live in the
strategies of migrators.py; the engine owns paging, de-duplication, counters,
cancellation and the persisted job.
"""
import json
import os
import time
from datetime import datetime
from config import Config
from models import (ENTITY_TYPES, Action, DestinationError, JobStatus, MigrationError,
                    MigrationJob, MigrationResult, Resolution, SourceError)
from migrators import create_strategy
from progress import MemoryProgressStore, ProgressReporter
from logger import setup_logger

logger = setup_logger(__name__)

SINGULAR = {
    'products': 'product',
    'categories': 'category',
    'customers': 'customer',
    'orders': 'order',
}


class NaturalKeyIndex:
    """Natural keys already handled in this run

    A resumed run restores the keys of the interrupted one. Those carried
    keys let records of the re-fetched page pass once without being counted
    again; after that they behave like any other seen key.
    """

    def __init__(self, keys=None):
        self._keys = set(keys or [])
        self._carried = set(keys or [])

    def __contains__(self, key):
        return key in self._keys

    def __len__(self):
        return len(self._keys)

    def add(self, key):
        self._keys.add(key)

    def consume_carried(self, key):
        """True (once) if key was handled before the run was resumed"""
        if key in self._carried:
            self._carried.discard(key)
            return True
        return False

    def snapshot(self):
        return sorted(self._keys)


class ExistenceResolver:
    """Decides whether a record is new, a repeat within the run, or already in the destination"""

    def __init__(self, destination, strategy, index=None):
        self.destination = destination
        self.strategy = strategy
        self.index = index if index is not None else NaturalKeyIndex()

    def lookup(self, record):
        """Destination id of an entity linked to this record, or None

        Links are tried in the strategy's priority order; the first hit wins.
        """
        for link_field, value in self.strategy.lookups(record):
            if value is None or str(value).strip() == '':
                continue
            ref = self.destination.find(self.strategy.entity_type, link_field, value)
            if ref:
                return ref
        return None

    def resolve(self, key, record):
        """Resolve a natural key: DUPLICATE_IN_RUN, EXISTS_IN_DESTINATION(ref) or NEW

        A repeat within the run never reaches the destination.
        """
        if not key:
            raise ValueError("Cannot resolve an empty natural key")
        if key in self.index:
            return Resolution(Resolution.DUPLICATE_IN_RUN)

        self.index.add(key)
        ref = self.lookup(record)
        if ref:
            return Resolution(Resolution.EXISTS_IN_DESTINATION, ref)
        return Resolution(Resolution.NEW)


class EntityMigrator:
    """Create-or-update of a single Magento record in the destination"""

    def __init__(self, strategy, destination, source=None, dry_run=False, resolver=None):
        self.strategy = strategy
        self.destination = destination
        self.source = source
        self.dry_run = dry_run
        self.resolver = resolver or ExistenceResolver(destination, strategy)

    def migrate(self, record, resolution=None):
        """Migrate one record

        Args:
            record: Magento record
            resolution: Resolution already made by the batch loop; when None the
                destination is queried directly, so repeated calls update
                the entity created by the first one

        Returns:
            MigrationResult
        """
        entity_type = self.strategy.entity_type
        label = self.strategy.label(record)

        if not self.strategy.natural_key(record):
            return MigrationResult.failed("missing key")

        try:
            if resolution is not None:
                ref = resolution.ref
            else:
                ref = self.resolver.lookup(record)
            action = Action.UPDATE if ref else Action.CREATE

            fields = self.strategy.map(record, self.destination, self.source)
            if fields is None:
                return MigrationResult.failed(f"Failed to map {label}")
            if action == Action.UPDATE:
                fields = self.strategy.update_fields(fields)

            if self.dry_run:
                logger.info(f"[DRY RUN] Would {action} {label}" + (f" (WC ID: {ref})" if ref else ""))
                return MigrationResult.succeeded(ref, action)

            dest_id = self.destination.upsert(entity_type, ref, fields)
        except Exception as e:
            logger.error(f"Error migrating {label}: {e}")
            return MigrationResult.failed(str(e))

        if isinstance(dest_id, DestinationError):
            return MigrationResult.failed(dest_id.message)

        try:
            self.strategy.secondary(dest_id, record, action, self.destination, self.source)
        except Exception as e:
            logger.warning(f"Post-write step for {label} failed: {e}")

        logger.debug(f"{'Created' if action == Action.CREATE else 'Updated'} {label} (WC ID: {dest_id})")
        return MigrationResult.succeeded(dest_id, action)


class BatchMigrationEngine:
    def __init__(self, source, destination, store=None, strategies=None,
                 batch_size=None, max_empty_batches=None, max_pages=None, page_delay=None,
                 clock=time.time, sleep=time.sleep, dry_run=False,
                 progress_callback=None, log_callback=None, report_dir=None):
        self.logger = setup_logger("migration_engine")
        self.source = source
        self.destination = destination
        self.store = store if store is not None else MemoryProgressStore()
        self.strategies = strategies or {}
        self.batch_size = batch_size or Config.BATCH_SIZE
        self.max_empty_batches = max_empty_batches or Config.MAX_EMPTY_BATCHES
        self.max_pages = max_pages or Config.MAX_PAGES
        self.page_delay = Config.PAGE_DELAY if page_delay is None else page_delay
        self.clock = clock
        self.sleep = sleep
        self.dry_run = dry_run
        self.progress_callback = progress_callback
        self.log_callback = log_callback
        self.report_dir = report_dir if report_dir is not None else Config.LOG_DIR

    def log(self, message, level='INFO'):
        """Log message and send to callback if available"""
        if level == 'INFO':
            self.logger.info(message)
        elif level == 'ERROR':
            self.logger.error(message)
        elif level == 'WARNING':
            self.logger.warning(message)
        elif level == 'DEBUG':
            self.logger.debug(message)

        if self.log_callback:
            self.log_callback(f"[{level}] {message}")

    def stop_migration(self, entity_type):
        """Request a running migration of entity_type to stop at its next check"""
        if self.store.request_cancel(entity_type):
            self.log(f"STOP REQUESTED - {entity_type} migration will halt before the next record", 'WARNING')
            return True
        return False

    def _strategy(self, entity_type):
        if entity_type not in self.strategies:
            self.strategies[entity_type] = create_strategy(entity_type)
        return self.strategies[entity_type]

    def run(self, entity_type, batch_size=None, specific_page=None, resume=False):
        """Run a migration of one entity type

        Args:
            entity_type: products, categories, customers or orders
            batch_size: Page size (defaults to the engine's batch size)
            specific_page: Process only this page
            resume: Continue the stored job from its current page

        Returns:
            FinalStats

        Raises:
            MigrationError: the count query failed or the run could not continue
        """
        if entity_type not in ENTITY_TYPES:
            raise MigrationError(f"Unknown entity type: {entity_type}")
        page_size = batch_size or self.batch_size
        if specific_page is not None and specific_page < 1:
            raise MigrationError(f"Invalid page number: {specific_page}")
        if resume and specific_page is not None:
            raise MigrationError("A single page run cannot be resumed; run the page again without resume")

        job = self._start_job(entity_type, specific_page, resume)
        reporter = ProgressReporter(self.store, clock=self.clock, progress_callback=self.progress_callback)
        strategy = self._strategy(entity_type)
        index = NaturalKeyIndex(job.seen_keys)
        resolver = ExistenceResolver(self.destination, strategy, index)
        migrator = EntityMigrator(strategy, self.destination, source=self.source,
                                  dry_run=self.dry_run, resolver=resolver)

        mode = "DRY RUN" if self.dry_run else "MIGRATION"
        self.log(f"=== {entity_type.upper()} {mode} {'RESUMED' if resume else 'STARTED'} ===")

        try:
            count = self.source.fetch_total_count(entity_type)
            if isinstance(count, SourceError):
                raise MigrationError(f"Failed to get {entity_type} count: {count}")

            if job.specific_page:
                job.total = min(page_size, max(0, count - (job.specific_page - 1) * page_size))
                self.log(f"Processing page {job.specific_page} only ({job.total} {entity_type} expected)")
            else:
                job.total = max(1, count)
                self.log(f"Found {count} {entity_type} to migrate")

            reporter.report(job, 'Starting...')
            self._run_pages(job, page_size, reporter, strategy, resolver, migrator)
        except MigrationError as e:
            self._fail(job, str(e), index)
            raise
        except Exception as e:
            self._fail(job, str(e), index)
            raise MigrationError(f"{entity_type} migration failed: {e}") from e

        return self._finish(job, reporter, index)

    def _start_job(self, entity_type, specific_page, resume):
        stored = self.store.load(entity_type) if resume else None

        if resume and (stored is None or stored.status == JobStatus.COMPLETE):
            self.log(f"No interrupted {entity_type} migration to resume, starting from the beginning", 'WARNING')
            stored = None

        if stored is not None:
            job = stored
            job.id = MigrationJob(entity_type).id
            job.finished_at = None
            job.restore_checkpoint()
            self.log(f"Resuming {entity_type} from page {job.current_page} "
                     f"({job.processed} processed, {len(job.seen_keys)} keys seen)")
        else:
            job = MigrationJob(entity_type, specific_page=specific_page)
            job.current_page = specific_page or 1
            job.mark_checkpoint()

        job.status = JobStatus.RUNNING
        job.started_at = self.clock()
        # A fresh id and status replace whatever the previous run left in the slot
        self.store.save(job, keys=True)
        return job

    def _run_pages(self, job, page_size, reporter, strategy, resolver, migrator):
        entity_type = job.entity_type
        page = job.current_page
        empty_batches = 0

        while True:
            if reporter.sync_status(job):
                self.log(f"{entity_type} migration cancelled before page {page}", 'WARNING')
                return

            if page > self.max_pages:
                self.log(f"Reached safety limit of {self.max_pages} pages, stopping {entity_type} migration",
                         'WARNING')
                return

            job.current_page = page
            self.log(f"Fetching {entity_type} page {page} (batch size {page_size})", 'DEBUG')
            records = self.source.fetch_page(entity_type, page_size, page)

            if isinstance(records, SourceError):
                empty_batches += 1
                job.add_error(f"Page {page}", records.message, self._now())
                self.log(f"Failed to fetch {entity_type} page {page}: {records} "
                         f"({empty_batches}/{self.max_empty_batches})", 'ERROR')
            elif not records:
                empty_batches += 1
                self.log(f"No {entity_type} on page {page} ({empty_batches}/{self.max_empty_batches})", 'DEBUG')
            else:
                empty_batches = 0
                for record in records:
                    if job.status == JobStatus.CANCELLED:
                        self.log(f"{entity_type} migration cancelled on page {page}", 'WARNING')
                        return
                    self._process_record(job, record, reporter, strategy, resolver, migrator)

            if job.specific_page:
                self._checkpoint(job, resolver.index)
                reporter.report(job, f"Page {page} done", checkpoint=True)
                return

            job.current_page = page + 1
            self._checkpoint(job, resolver.index)
            reporter.report(job, f"Page {page} done", checkpoint=True)

            if empty_batches >= self.max_empty_batches:
                self.log(f"{empty_batches} consecutive empty or failed pages, {entity_type} migration finished")
                return

            page += 1
            if self.page_delay:
                self.sleep(self.page_delay)

    def _process_record(self, job, record, reporter, strategy, resolver, migrator):
        key = strategy.natural_key(record)
        label = strategy.label(record)

        if not key:
            job.skipped += 1
            job.skip_reasons['empty_key'] = job.skip_reasons.get('empty_key', 0) + 1
            self.log(f"Skipping {SINGULAR[job.entity_type]} without a natural key: {label}", 'WARNING')
            reporter.report(job, label)
            return

        if resolver.index.consume_carried(key):
            self.log(f"{label} was handled before the resume", 'DEBUG')
            return

        try:
            resolution = resolver.resolve(key, record)
        except Exception as e:
            self.log(f"Existence check for {label} failed: {e}", 'ERROR')
            result = MigrationResult.failed(str(e))
        else:
            if resolution.is_duplicate:
                job.skipped += 1
                job.skip_reasons['duplicate_in_run'] = job.skip_reasons.get('duplicate_in_run', 0) + 1
                self.log(f"Skipping duplicate {label} (already handled in this run)", 'DEBUG')
                reporter.report(job, label)
                return
            result = migrator.migrate(record, resolution)

        job.processed += 1
        if result.success:
            job.successful += 1
            if result.action == Action.UPDATE:
                job.updated += 1
            else:
                job.created += 1
        else:
            job.failed += 1
            job.add_error(label, result.reason, self._now())
            self.log(f"Failed to migrate {label}: {result.reason}", 'ERROR')

        reporter.report(job, label)

    def _checkpoint(self, job, index):
        job.seen_keys = index.snapshot()
        job.mark_checkpoint()

    def _fail(self, job, message, index):
        job.status = JobStatus.FAILED
        job.finished_at = self.clock()
        job.add_error('migration', message, self._now())
        self._checkpoint(job, index)
        self.store.save(job, keys=True)
        self.log(f"{job.entity_type} migration failed: {message}", 'ERROR')
        self._generate_migration_report(job)

    def _finish(self, job, reporter, index):
        if not reporter.sync_status(job):
            job.status = JobStatus.COMPLETE
        job.finished_at = self.clock()
        self._checkpoint(job, index)
        reporter.report(job, 'Migration cancelled' if job.status == JobStatus.CANCELLED else 'Complete',
                        checkpoint=True)
        self._generate_migration_report(job)
        return job.final_stats()

    def _generate_migration_report(self, job):
        """Log the run summary and save the job as a JSON report"""
        mode = "DRY RUN" if self.dry_run else "MIGRATION"
        duration = (job.finished_at or self.clock()) - (job.started_at or self.clock())

        self.log(f"=== {job.entity_type.upper()} {mode} REPORT ({job.status}) ===")
        self.log(f"Duration: {duration:.2f} seconds")
        self.log(f"Processed: {job.processed}/{job.total} "
                 f"({job.successful} successful, {job.failed} failed)")
        self.log(f"Created: {job.created}, already existed and updated: {job.updated}")
        self.log(f"Skipped: {job.skipped} (no natural key: {job.skip_reasons.get('empty_key', 0)}, "
                 f"duplicate in run: {job.skip_reasons.get('duplicate_in_run', 0)})")
        if job.errors:
            self.log(f"Errors: {len(job.errors)}", 'WARNING')

        if not self.report_dir:
            return None

        report = job.to_dict()
        report.pop('seen_keys', None)
        report['dry_run'] = self.dry_run
        report['duration_seconds'] = round(duration, 2)

        report_file = os.path.join(
            self.report_dir,
            f"migration_report_{job.entity_type}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
        )
        try:
            os.makedirs(self.report_dir, exist_ok=True)
            with open(report_file, 'w', encoding='utf-8') as f:
                json.dump(report, f, indent=2, default=str)
            self.log(f"Report saved to: {report_file}")
        except OSError as e:
            self.log(f"Failed to save report: {e}", 'ERROR')
            return None
        return report_file

    def _now(self):
        return datetime.fromtimestamp(self.clock()).strftime('%Y-%m-%d %H:%M:%S')

