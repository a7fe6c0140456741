import json

import pytest

from models import JobStatus, MigrationJob
from progress import (JsonProgressStore, MemoryProgressStore, ProgressReporter,
                      calculate_percentage, format_time_remaining)


@pytest.mark.parametrize('processed, total, expected', [
    (0, 0, 0),
    (5, 0, 0),
    (0, 10, 0),
    (5, 10, 50.0),
    (1, 3, 33.3),
    (10, 10, 100),
    (12, 10, 100),
])
def test_calculate_percentage(processed, total, expected):
    assert calculate_percentage(processed, total) == expected


@pytest.mark.parametrize('elapsed, processed, total, expected', [
    (10, 0, 10, 'Calculating...'),
    (0, 5, 10, 'Calculating...'),
    (10, 10, 10, 'Complete'),
    (10, 12, 10, 'Complete'),
    (10, 5, 10, '10 seconds'),
    (1, 1, 2, '1 second'),
    (0.5, 1, 2, '1 second'),
    (59.2, 1, 2, '60 seconds'),
    (60, 1, 2, '1 minute'),
    (90, 1, 2, '2 minutes'),
    (5400, 1, 2, '1.5 hours'),
])
def test_format_time_remaining(elapsed, processed, total, expected):
    assert format_time_remaining(elapsed, processed, total) == expected


def test_report_derives_fields_without_touching_counters():
    store = MemoryProgressStore()
    clock = iter([110.0]).__next__
    job = MigrationJob('products', total=20, processed=5, successful=4, failed=1, started_at=100.0)

    ProgressReporter(store, clock=clock).report(job, 'Product SKU-5')

    assert (job.processed, job.successful, job.failed) == (5, 4, 1)
    assert job.percentage == 25.0
    assert job.time_remaining == '30 seconds'
    stored = store.load('products')
    assert stored.current_item == 'Product SKU-5'
    assert stored.percentage == 25.0


def test_report_keeps_external_cancellation():
    store = MemoryProgressStore()
    job = MigrationJob('orders', status=JobStatus.RUNNING, total=10, started_at=1.0)
    store.save(job)

    assert store.request_cancel('orders')
    job.processed = 3
    ProgressReporter(store, clock=lambda: 2.0).report(job, 'Order #3')

    assert job.status == JobStatus.CANCELLED
    stored = store.load('orders')
    assert stored.status == JobStatus.CANCELLED
    assert stored.processed == 3


def test_cancellation_of_another_job_is_ignored():
    store = MemoryProgressStore()
    store.save(MigrationJob('orders', status=JobStatus.CANCELLED))
    job = MigrationJob('orders', status=JobStatus.RUNNING)

    assert not ProgressReporter(store).sync_status(job)
    assert job.status == JobStatus.RUNNING


def test_request_cancel_ignores_missing_and_finished_jobs():
    store = MemoryProgressStore()
    assert not store.request_cancel('products')

    store.save(MigrationJob('products', status=JobStatus.COMPLETE))
    assert not store.request_cancel('products')
    assert store.load('products').status == JobStatus.COMPLETE


def test_progress_callback_receives_job():
    seen = []
    job = MigrationJob('customers', total=4, processed=1)

    ProgressReporter(MemoryProgressStore(), progress_callback=seen.append).report(job)

    assert seen == [job]


def test_json_store_round_trip_and_reset(tmp_path):
    path = tmp_path / 'progress.json'
    store = JsonProgressStore(str(path))
    job = MigrationJob('categories', total=3, processed=2, seen_keys=['3', '4'])
    store.save(job, keys=True)
    store.save(MigrationJob('products'))

    loaded = JsonProgressStore(str(path)).load('categories')
    assert loaded.id == job.id
    assert loaded.seen_keys == ['3', '4']
    assert set(json.loads(path.read_text(encoding='utf-8'))) == {'categories', 'products'}

    store.reset('categories')
    assert store.load('categories') is None
    assert store.load('products') is not None


def test_json_store_treats_corrupt_file_as_empty(tmp_path):
    path = tmp_path / 'progress.json'
    path.write_text('{not json', encoding='utf-8')

    assert JsonProgressStore(str(path)).load('products') is None


def test_job_from_dict_ignores_unknown_fields():
    data = MigrationJob('products', processed=4).to_dict()
    data['legacy_field'] = 'x'

    assert MigrationJob.from_dict(data).processed == 4


class CountingStore(MemoryProgressStore):
    def __init__(self):
        super().__init__()
        self.reads = 0
        self.key_writes = 0

    def _read(self):
        self.reads += 1
        return super()._read()

    def _write_keys(self, keys):
        self.key_writes += 1
        super()._write_keys(keys)


def test_report_reads_the_slot_once_and_leaves_keys_alone():
    store = CountingStore()
    job = MigrationJob('products', total=10, processed=1, seen_keys=['SKU-1'], started_at=1.0)
    reporter = ProgressReporter(store, clock=lambda: 2.0)

    reporter.report(job, 'Product SKU-1')

    assert store.reads == 1
    assert store.key_writes == 0
    assert 'seen_keys' not in store._slots['products']

    reporter.report(job, 'Page 1 done', checkpoint=True)

    assert store.key_writes == 1
    assert store.load('products').seen_keys == ['SKU-1']


def test_cancel_between_polls_survives_the_next_report():
    store = MemoryProgressStore()
    job = MigrationJob('customers', status=JobStatus.RUNNING, total=10, started_at=1.0)
    store.save(job)
    reporter = ProgressReporter(store, clock=lambda: 2.0)

    assert not reporter.sync_status(job)
    store.request_cancel('customers')
    job.processed = 1
    reporter.report(job, 'Customer a@example.com', checkpoint=True)

    assert job.status == JobStatus.CANCELLED
    assert store.load('customers').status == JobStatus.CANCELLED


def test_json_store_keeps_keys_in_a_separate_file(tmp_path):
    path = tmp_path / 'progress.json'
    store = JsonProgressStore(str(path))
    job = MigrationJob('products', seen_keys=['SKU-1', 'SKU-2'])
    store.save(job, keys=True)
    job.seen_keys = ['SKU-1', 'SKU-2', 'SKU-3']
    store.save(job)

    assert 'seen_keys' not in json.loads(path.read_text(encoding='utf-8'))['products']
    assert (tmp_path / 'progress.keys.json').exists()
    assert store.load('products').seen_keys == ['SKU-1', 'SKU-2']


def test_keys_of_an_older_job_are_not_loaded():
    store = MemoryProgressStore()
    store.save(MigrationJob('orders', seen_keys=['1:1']), keys=True)
    store.save(MigrationJob('orders'))

    assert store.load('orders').seen_keys == []


def test_restore_checkpoint_rolls_back_counters_and_errors():
    job = MigrationJob('products', processed=10, successful=9, failed=1, created=9)
    job.add_error('Product A', 'rejected', 'now')
    job.mark_checkpoint()

    job.processed, job.successful, job.created, job.skipped = 14, 13, 13, 2
    job.skip_reasons['empty_key'] = 2
    job.add_error('Product B', 'rejected', 'later')
    job.restore_checkpoint()

    assert (job.processed, job.successful, job.failed, job.created, job.skipped) == (10, 9, 1, 9, 0)
    assert job.skip_reasons['empty_key'] == 0
    assert [error['item'] for error in job.errors] == ['Product A']
