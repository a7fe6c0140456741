import requests
import time
from requests.auth import HTTPBasicAuth
from models import DestinationError
from logger import setup_logger

logger = setup_logger(__name__)


class WooCommerceClient:
    """Destination store backed by the WooCommerce REST API (wc/v3)

    Existence lookups use the API's native filters where one exists (sku,
    email, slug). Links stored as meta (keys starting with '_') are resolved
    by scanning a cached listing of the collection, which is kept current
    as records are written.
    """

    ENDPOINTS = {
        'products': 'products',
        'categories': 'products/categories',
        'customers': 'customers',
        'orders': 'orders',
    }

    NATIVE_FILTERS = {
        ('products', 'sku'): 'sku',
        ('customers', 'email'): 'email',
        ('categories', 'slug'): 'slug',
    }

    META_PREFIX = '_magento_'

    SINGULAR = {
        'products': 'product',
        'categories': 'category',
        'customers': 'customer',
        'orders': 'order',
    }

    def __init__(self, url, consumer_key, consumer_secret, max_retries=3, delay=1.0, timeout=30):
        self.url = url.rstrip('/')
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.max_retries = max_retries
        self.delay = delay
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = HTTPBasicAuth(consumer_key, consumer_secret)
        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'Magento-WooCommerce-Migrator/1.0'
        })
        self._meta_index = {}

    def _make_request(self, method, endpoint, **kwargs):
        """Make API request with retry logic"""
        url = f"{self.url}/wp-json/wc/v3/{endpoint}"
        kwargs.setdefault('timeout', self.timeout)

        for attempt in range(self.max_retries):
            try:
                response = self.session.request(method, url, **kwargs)

                # Handle rate limiting
                if response.status_code == 429:
                    retry_after = int(response.headers.get('Retry-After', 60))
                    logger.warning(f"Rate limited. Waiting {retry_after} seconds...")
                    time.sleep(retry_after)
                    continue

                response.raise_for_status()
                return response.json() if response.content else None

            except requests.exceptions.HTTPError:
                # Rejected requests are not retried
                raise
            except requests.exceptions.RequestException as e:
                logger.warning(f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(self.delay * (2 ** attempt))  # Exponential backoff
                else:
                    raise

        raise requests.exceptions.RetryError(f"Rate limited {self.max_retries} times on {endpoint}")

    def _endpoint(self, entity_type):
        if entity_type not in self.ENDPOINTS:
            raise ValueError(f"Unknown entity type: {entity_type}")
        return self.ENDPOINTS[entity_type]

    def _write(self, method, endpoint, payload, label):
        """POST/PUT a payload, turning request failures into DestinationError values"""
        try:
            return self._make_request(method, endpoint, json=payload)
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            error_text = "No error details"
            if e.response is not None and e.response.text:
                error_text = e.response.text[:500]
            logger.error(f"HTTP error writing {label}: {status_code} - {error_text}")
            return DestinationError(f"HTTP {status_code}: {error_text}", status_code=status_code)
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to write {label}: {e}")
            return DestinationError(str(e))

    def find(self, entity_type, link_field, value):
        """Find a destination entity by one of its existence links

        Args:
            entity_type: products, categories, customers or orders
            link_field: 'sku', 'email', 'slug', 'name', or a meta key such as '_magento_order_id'
            value: Link value taken from the source record

        Returns:
            WooCommerce id of the first match, or None
        """
        endpoint = self._endpoint(entity_type)
        if value is None or str(value).strip() == '':
            return None
        value = str(value).strip()

        if link_field.startswith('_'):
            return self._scan_meta(entity_type, link_field, value)

        if link_field == 'name':
            # search is a substring match; keep exact (case-insensitive) hits only
            matches = self._make_request('GET', endpoint, params={'search': value, 'per_page': 100}) or []
            for match in matches:
                if str(match.get('name', '')).strip().lower() == value.lower():
                    return match.get('id')
            return None

        param = self.NATIVE_FILTERS.get((entity_type, link_field))
        if param is None:
            raise ValueError(f"Unsupported link field '{link_field}' for {entity_type}")

        params = {param: value}
        if entity_type == 'customers':
            params['role'] = 'all'
        matches = self._make_request('GET', endpoint, params=params) or []
        return matches[0].get('id') if matches else None

    def _scan_meta(self, entity_type, meta_key, value):
        index = self._meta_index.get(entity_type)
        if index is None:
            index = {}
            for item in self._get_all(entity_type):
                self._index_meta(index, item)
            self._meta_index[entity_type] = index
            logger.info(f"Indexed {len(index)} Magento links from existing WooCommerce {entity_type}")
        return index.get((meta_key, value))

    def _index_meta(self, index, item):
        for meta in item.get('meta_data') or []:
            key = meta.get('key') or ''
            if key.startswith(self.META_PREFIX) and meta.get('value') not in (None, ''):
                index[(key, str(meta.get('value')))] = item.get('id')

    def _get_all(self, entity_type):
        """Get every entity of a collection, page by page"""
        endpoint = self._endpoint(entity_type)
        items = []
        page = 1
        per_page = 100

        while True:
            params = {'page': page, 'per_page': per_page}
            if entity_type == 'customers':
                params['role'] = 'all'
            response = self._make_request('GET', endpoint, params=params)

            if not response:
                break

            items.extend(response)

            if len(response) < per_page:
                break

            page += 1

        logger.debug(f"Fetched {len(items)} existing {entity_type} from WooCommerce")
        return items

    def upsert(self, entity_type, dest_id, fields):
        """Create (dest_id is None) or update a destination entity

        Returns:
            The WooCommerce id, or DestinationError when the write was rejected
        """
        endpoint = self._endpoint(entity_type)
        if dest_id is None:
            response = self._write('POST', endpoint, fields, f"new {self.SINGULAR[entity_type]}")
        else:
            response = self._write('PUT', f"{endpoint}/{dest_id}", fields, f"{self.SINGULAR[entity_type]} {dest_id}")

        if isinstance(response, DestinationError):
            return response
        if not response or not response.get('id'):
            return DestinationError(f"WooCommerce returned no id for {self.SINGULAR[entity_type]}")

        if entity_type in self._meta_index:
            self._index_meta(self._meta_index[entity_type], response)
        logger.debug(f"{'Created' if dest_id is None else 'Updated'} {self.SINGULAR[entity_type]} {response['id']}")
        return response['id']

    def set_product_categories(self, product_id, category_ids):
        categories = [{'id': category_id} for category_id in category_ids]
        return self._write('PUT', f"products/{product_id}", {'categories': categories},
                           f"categories of product {product_id}")

    def update_product_images(self, product_id, images):
        """Update product images separately (WooCommerce sideloads each src)

        Args:
            product_id: WooCommerce product ID
            images: List of image dicts with 'src', 'name', 'alt'
        """
        return self._write('PUT', f"products/{product_id}", {'images': images},
                           f"images of product {product_id}")

    def add_order_note(self, order_id, note_text, customer_note=False):
        """Add a note to an order

        Args:
            order_id: WooCommerce order ID
            note_text: Text of the note
            customer_note: If True, note is visible to customer (default: False for private notes)
        """
        note_data = {
            'note': note_text,
            'customer_note': customer_note
        }
        return self._write('POST', f"orders/{order_id}/notes", note_data, f"note of order {order_id}")

    def test_connection(self):
        """Test the connection to WooCommerce"""
        try:
            response = self._make_request('GET', 'system_status')
            if response:
                logger.info("Successfully connected to WooCommerce")
                return True
            else:
                logger.error("Failed to connect to WooCommerce")
                return False
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to WooCommerce: {e}")
            return False
