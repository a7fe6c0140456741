"""
Magento data sources: the magento-connector.php script and the Magento 2 REST API.

Both clients expose the same capability used by the migration engine:

    fetch_total_count(entity_type) -> int | SourceError
    fetch_page(entity_type, page_size, page) -> list | SourceError

Transport and protocol failures are returned as SourceError values, never raised.
"""
import requests
from requests.auth import AuthBase
import time
from models import SourceError, ENTITY_TYPES
from logger import setup_logger

logger = setup_logger(__name__)


class BearerAuth(AuthBase):
    """Magento integration access token sent as a bearer token"""

    def __init__(self, token):
        self.token = token

    def __call__(self, request):
        request.headers['Authorization'] = f"Bearer {self.token}"
        return request


def sort_categories_by_level(categories):
    """Order categories so parents are migrated before their children"""
    return sorted(categories, key=lambda c: int(c.get('level') or 0))


class _MagentoSource:
    """Shared session handling and retry logic"""

    user_agent = 'Magento-WooCommerce-Migrator/1.0'

    def __init__(self, max_retries=3, delay=1.0, timeout=30):
        self.max_retries = max_retries
        self.delay = delay
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': self.user_agent
        })
        self._categories = None

    def _get_json(self, url, params=None):
        """GET a JSON document with retry logic

        Returns:
            Decoded JSON, or SourceError after the final failed attempt
        """
        for attempt in range(self.max_retries):
            try:
                response = self.session.request('GET', url, params=params, timeout=self.timeout)

                # Handle rate limiting
                if response.status_code == 429:
                    retry_after = int(response.headers.get('Retry-After', 60))
                    logger.warning(f"Rate limited. Waiting {retry_after} seconds...")
                    time.sleep(retry_after)
                    continue

                response.raise_for_status()

                try:
                    return response.json()
                except ValueError as e:
                    body = response.text[:200] if response.text else ''
                    logger.error(f"Invalid JSON response from {url}: {e}")
                    return SourceError(
                        f"Invalid JSON response. JSON Error: {e}. Raw response (first 200 chars): {body}",
                        code='invalid_json'
                    )

            except requests.exceptions.RequestException as e:
                logger.warning(f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(self.delay * (2 ** attempt))  # Exponential backoff
                else:
                    return SourceError(f"Request failed: {e}", code='http_request_failed')

        return SourceError(f"Request to {url} was rate limited {self.max_retries} times", code='rate_limited')

    def _check_entity_type(self, entity_type):
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")

    def _all_categories(self):
        raise NotImplementedError

    def _category_page(self, page_size, page):
        """Categories are not paginated remotely; fetch once and slice locally"""
        if self._categories is None:
            categories = self._all_categories()
            if isinstance(categories, SourceError):
                return categories
            self._categories = sort_categories_by_level(categories)
            logger.info(f"Fetched {len(self._categories)} categories")

        start = (page - 1) * page_size
        return self._categories[start:start + page_size]

    def get_category(self, entity_id):
        """Look up a category in the fetched list (None until categories are fetched)"""
        for category in self._categories or []:
            if str(category.get('entity_id')) == str(entity_id):
                return category
        return None


class MagentoConnectorClient(_MagentoSource):
    """Client for the magento-connector.php script installed on the Magento host"""

    def __init__(self, connector_url, api_key, max_retries=3, delay=1.0, timeout=30):
        super().__init__(max_retries=max_retries, delay=delay, timeout=timeout)
        self.connector_url = connector_url.rstrip('/')
        self.api_key = api_key
        self.media_url = self._default_media_url()
        self.session.headers.update({'X-Magento-Connector-Key': api_key})

    def _default_media_url(self):
        # https://shop.example/magento-connector.php -> https://shop.example/media/catalog/product
        base = self.connector_url
        if base.endswith('.php'):
            base = base.rsplit('/', 1)[0]
        return f"{base}/media/catalog/product"

    def _make_request(self, endpoint, **params):
        """Call a connector endpoint

        Returns:
            dict payload when the connector reports success, SourceError otherwise
        """
        logger.debug(f"Connector request: endpoint={endpoint} params={params}")
        data = self._get_json(self.connector_url, params={'endpoint': endpoint, **params})

        if isinstance(data, SourceError):
            return data
        if not isinstance(data, dict):
            return SourceError('Invalid response format from connector', code='invalid_response')
        if data.get('success'):
            return data
        return SourceError(data.get('message') or 'Unknown error', code='connector_error')

    def test_connection(self):
        """Test the connection to the connector"""
        result = self._make_request('test')
        if isinstance(result, SourceError):
            logger.error(f"Failed to connect to Magento connector: {result}")
            return False
        logger.info(f"Successfully connected to Magento connector "
                    f"(Magento {result.get('magento_version', 'Unknown')})")
        return True

    def fetch_total_count(self, entity_type):
        self._check_entity_type(entity_type)
        result = self._make_request(f"{entity_type}_count")
        if isinstance(result, SourceError):
            return result
        try:
            return int(result.get('count', 0))
        except (TypeError, ValueError):
            return SourceError(f"Invalid count in connector response: {result.get('count')!r}",
                               code='invalid_response')

    def fetch_page(self, entity_type, page_size, page):
        self._check_entity_type(entity_type)
        if entity_type == 'categories':
            return self._category_page(page_size, page)

        result = self._make_request(entity_type, limit=page_size, page=page)
        if isinstance(result, SourceError):
            return result

        if entity_type == 'products' and result.get('media_url'):
            self.media_url = result['media_url'].rstrip('/')
            logger.debug(f"Updated media URL from connector: {self.media_url}")

        # Magento clamps the page number and repeats the last page past the end
        try:
            total = int(result.get('total'))
        except (TypeError, ValueError):
            total = None
        if total is not None and (page - 1) * page_size >= total:
            return []

        items = result.get(entity_type)
        if items is None:
            return []
        if not isinstance(items, list):
            return SourceError(f"Invalid '{entity_type}' collection in connector response",
                               code='invalid_response')
        return items

    def _all_categories(self):
        result = self._make_request('categories')
        if isinstance(result, SourceError):
            return result

        categories = []
        for category in result.get('categories') or []:
            # Connector returns 'id' where the REST API uses 'entity_id'
            if 'entity_id' not in category and 'id' in category:
                category = dict(category, entity_id=category['id'])
            categories.append(category)
        return categories


class MagentoRestClient(_MagentoSource):
    """Client for the Magento 2 REST API (/rest/V1)

    Requests are authenticated by a requests auth object. The default is the
    integration access token as a bearer token; an OAuth 1.0a signer can be
    passed as `auth` instead.
    """

    ENDPOINTS = {
        'products': 'products',
        'customers': 'customers/search',
        'orders': 'orders',
    }

    def __init__(self, store_url, access_token=None, auth=None, max_retries=3, delay=1.0, timeout=30):
        super().__init__(max_retries=max_retries, delay=delay, timeout=timeout)
        self.store_url = store_url.rstrip('/')
        self.media_url = f"{self.store_url}/media/catalog/product"
        self.session.auth = auth or BearerAuth(access_token)

    def _url(self, endpoint):
        return f"{self.store_url}/rest/V1/{endpoint}"

    def _search(self, endpoint, page_size, page):
        params = {
            'searchCriteria[currentPage]': page,
            'searchCriteria[pageSize]': page_size,
        }
        data = self._get_json(self._url(endpoint), params=params)
        if isinstance(data, SourceError):
            return data
        if not isinstance(data, dict):
            return SourceError(f"Invalid response format from {endpoint}", code='invalid_response')
        if 'message' in data and 'items' not in data:
            return SourceError(data['message'], code='magento_error')
        return data

    def test_connection(self):
        """Test the connection to the REST API"""
        data = self._get_json(self._url('store/storeConfigs'))
        if isinstance(data, SourceError):
            logger.error(f"Failed to connect to Magento REST API: {data}")
            return False
        logger.info("Successfully connected to Magento REST API")
        return True

    def fetch_total_count(self, entity_type):
        self._check_entity_type(entity_type)
        if entity_type == 'categories':
            categories = self._category_page(1, 1)
            if isinstance(categories, SourceError):
                return categories
            return len(self._categories)

        data = self._search(self.ENDPOINTS[entity_type], 1, 1)
        if isinstance(data, SourceError):
            return data
        return int(data.get('total_count') or 0)

    def fetch_page(self, entity_type, page_size, page):
        self._check_entity_type(entity_type)
        if entity_type == 'categories':
            return self._category_page(page_size, page)

        data = self._search(self.ENDPOINTS[entity_type], page_size, page)
        if isinstance(data, SourceError):
            return data

        # Magento repeats the last page when currentPage runs past the end
        total_count = data.get('total_count')
        if total_count is not None and (page - 1) * page_size >= int(total_count):
            return []
        return data.get('items') or []

    def _all_categories(self):
        data = self._get_json(self._url('categories'))
        if isinstance(data, SourceError):
            return data
        if not isinstance(data, dict):
            return SourceError('Invalid category tree response', code='invalid_response')
        return self.flatten_category_tree(data)

    @staticmethod
    def flatten_category_tree(node, parent_id=None, parent_path='', depth=0):
        """Flatten the nested category tree returned by GET /categories

        The tree carries no url_path; categories below the two root levels get
        one built from their ancestors' names ('Men/Tops').
        """
        categories = []
        children = node.get('children_data') or []
        category = {k: v for k, v in node.items() if k != 'children_data'}
        if 'id' in category:
            category['entity_id'] = category['id']
        if parent_id is not None and not category.get('parent_id'):
            category['parent_id'] = parent_id

        level = category.get('level')
        level = depth if level is None else int(level)
        if level >= 2 and not category.get('url_path'):
            name = str(category.get('name') or category.get('id'))
            category['url_path'] = f"{parent_path}/{name}" if parent_path else name
        path = category['url_path'] if level >= 2 else ''

        categories.append(category)
        for child in children:
            categories.extend(MagentoRestClient.flatten_category_tree(child, category.get('id'), path, depth + 1))
        return categories


def create_source(config):
    """Build the Magento source selected by MAGENTO_SOURCE"""
    if config.MAGENTO_SOURCE == 'rest':
        return MagentoRestClient(
            config.MAGENTO_STORE_URL,
            config.MAGENTO_ACCESS_TOKEN,
            max_retries=config.MAX_RETRIES,
            delay=config.DELAY_BETWEEN_REQUESTS,
            timeout=config.REQUEST_TIMEOUT
        )
    return MagentoConnectorClient(
        config.MAGENTO_CONNECTOR_URL,
        config.MAGENTO_CONNECTOR_KEY,
        max_retries=config.MAX_RETRIES,
        delay=config.DELAY_BETWEEN_REQUESTS,
        timeout=config.REQUEST_TIMEOUT
    )
