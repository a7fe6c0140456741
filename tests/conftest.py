import json
import os
import sys
import tempfile

import pytest
import requests

# Keep test logs out of the working tree
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="migration-test-logs-"))

# Ensure project root is on sys.path for imports when running tests directly
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from models import ENTITY_TYPES, DestinationError, SourceError  # noqa: E402
from progress import MemoryProgressStore  # noqa: E402
from migration_engine import BatchMigrationEngine  # noqa: E402


class FakeSource:
    """Magento source serving records from a list, page by page"""

    def __init__(self, records=None, total=None, page_errors=None, count_error=None, media_url=None):
        self.records = list(records or [])
        self.total = len(self.records) if total is None else total
        self.page_errors = page_errors or {}
        self.count_error = count_error
        self.media_url = media_url
        self.fetched_pages = []

    def fetch_total_count(self, entity_type):
        if self.count_error:
            return SourceError(self.count_error)
        return self.total

    def fetch_page(self, entity_type, page_size, page):
        self.fetched_pages.append(page)
        if page in self.page_errors:
            return SourceError(self.page_errors[page])
        start = (page - 1) * page_size
        return [dict(record) for record in self.records[start:start + page_size]]


class EndlessSource(FakeSource):
    """Every page holds one new product"""

    def fetch_page(self, entity_type, page_size, page):
        self.fetched_pages.append(page)
        return [{'entity_id': page, 'sku': f"SKU-{page}", 'name': f"Product {page}"}]


class MemoryDestination:
    """WooCommerce stand-in keeping entities in dicts"""

    def __init__(self, fail_on=None):
        self.entities = {entity_type: {} for entity_type in ENTITY_TYPES}
        self.next_id = 100
        self.writes = []
        self.find_calls = []
        self.fail_on = fail_on
        self.on_upsert = None
        self.notes = []
        self.images = {}
        self.product_categories = {}

    def add(self, entity_type, fields):
        dest_id = self.next_id
        self.next_id += 1
        self.entities[entity_type][dest_id] = dict(fields)
        return dest_id

    def find(self, entity_type, link_field, value):
        self.find_calls.append((entity_type, link_field, str(value)))
        for dest_id, fields in self.entities[entity_type].items():
            if link_field.startswith('_'):
                for meta in fields.get('meta_data', []):
                    if meta['key'] == link_field and str(meta['value']) == str(value):
                        return dest_id
            elif str(fields.get(link_field, '')).lower() == str(value).lower():
                return dest_id
        return None

    def upsert(self, entity_type, dest_id, fields):
        if self.on_upsert:
            self.on_upsert(entity_type, dest_id, fields)
        if self.fail_on:
            message = self.fail_on(entity_type, fields)
            if message:
                return DestinationError(message, status_code=400)

        if dest_id is None:
            dest_id = self.add(entity_type, fields)
        else:
            self.entities[entity_type][dest_id].update(fields)
        self.writes.append((entity_type, dest_id))
        return dest_id

    def set_product_categories(self, product_id, category_ids):
        self.product_categories[product_id] = list(category_ids)
        return {'id': product_id}

    def update_product_images(self, product_id, images):
        self.images[product_id] = list(images)
        return {'id': product_id}

    def add_order_note(self, order_id, note_text, customer_note=False):
        self.notes.append((order_id, note_text))
        return {'id': len(self.notes)}

    def count(self, entity_type):
        return len(self.entities[entity_type])


class FakeClock:
    def __init__(self, start=1_700_000_000.0, step=1.0):
        self.now = start
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


def make_products(count, start=1):
    return [
        {
            'entity_id': i,
            'sku': f"SKU-{i}",
            'name': f"Product {i}",
            'price': '10.00',
            'status': 1,
            'visibility': 4,
        }
        for i in range(start, start + count)
    ]


def make_response(status_code=200, json_data=None, text=None, headers=None):
    """Real requests.Response with a canned body"""
    response = requests.Response()
    response.status_code = status_code
    if json_data is not None:
        response._content = json.dumps(json_data).encode('utf-8')
    else:
        response._content = (text or '').encode('utf-8')
    response.headers.update(headers or {})
    response.encoding = 'utf-8'
    response.url = 'https://example.test/'
    return response


@pytest.fixture
def store():
    return MemoryProgressStore()


@pytest.fixture
def destination():
    return MemoryDestination()


@pytest.fixture
def make_engine(store, destination):
    def _make(source, **kwargs):
        kwargs.setdefault('store', store)
        kwargs.setdefault('batch_size', 20)
        kwargs.setdefault('page_delay', 0)
        kwargs.setdefault('clock', FakeClock())
        kwargs.setdefault('report_dir', '')
        target = kwargs.pop('destination', destination)
        return BatchMigrationEngine(source, target, **kwargs)
    return _make
