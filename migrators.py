"""
Entity strategies: what differs between products, categories, customers and orders

A strategy tells the generic migrator how to extract the natural key of a
Magento record, which destination links identify an already-migrated entity,
how to map the record, and which best-effort effects follow a write.
"""
from data_mapper import DataMapper, safe_str
from models import Action, DestinationError
from logger import setup_logger

logger = setup_logger(__name__)


class EntityStrategy:
    entity_type = None

    def natural_key(self, record):
        raise NotImplementedError

    def lookups(self, record):
        """Existence links in priority order: list of (link_field, value)"""
        raise NotImplementedError

    def label(self, record):
        return f"{self.entity_type} {self.natural_key(record)}"

    def map(self, record, destination, source):
        """Map the record to destination fields; None when mapping fails"""
        raise NotImplementedError

    def update_fields(self, fields):
        """Fields sent when the entity already exists in the destination"""
        return fields

    def secondary(self, dest_id, record, action, destination, source):
        """Best-effort effects after a successful write"""


def _warn_if_failed(result, message):
    if isinstance(result, DestinationError):
        logger.warning(f"{message}: {result}")
        return True
    return False


class ProductStrategy(EntityStrategy):
    entity_type = 'products'

    def natural_key(self, record):
        return safe_str(record.get('sku')).strip()

    def lookups(self, record):
        return [
            ('sku', self.natural_key(record)),
            ('_magento_product_id', record.get('entity_id') or record.get('id')),
        ]

    def label(self, record):
        name = record.get('name')
        sku = self.natural_key(record)
        if name and sku:
            return f"Product {name} ({sku})"
        return f"Product {name or sku}"

    def map(self, record, destination, source):
        return DataMapper.map_product(record)

    def secondary(self, dest_id, record, action, destination, source):
        self._assign_categories(dest_id, record, destination)

        media_url = getattr(source, 'media_url', None)
        images = DataMapper.map_product_images(record, media_url) if media_url else []
        if images:
            result = destination.update_product_images(dest_id, images)
            if not _warn_if_failed(result, f"Could not set images of product {dest_id}"):
                logger.debug(f"Set {len(images)} images on product {dest_id}")

    def _assign_categories(self, dest_id, record, destination):
        # Connector products carry category names as a comma-separated string
        names = [name.strip() for name in safe_str(record.get('categories')).split(',') if name.strip()]
        if not names:
            return

        category_ids = []
        for name in names:
            category_id = destination.find('categories', 'name', name)
            if category_id:
                if category_id not in category_ids:
                    category_ids.append(category_id)
            else:
                logger.warning(f"Category '{name}' of product {dest_id} not found in WooCommerce")

        if category_ids:
            result = destination.set_product_categories(dest_id, category_ids)
            _warn_if_failed(result, f"Could not assign categories to product {dest_id}")


class CategoryStrategy(EntityStrategy):
    entity_type = 'categories'

    # Magento ids 1 and 2 are the root catalog and the default store root
    ROOT_IDS_MAX = 2

    def __init__(self):
        self.category_map = {}
        self.slug_owners = {}

    def natural_key(self, record):
        return safe_str(record.get('entity_id') or record.get('id')).strip()

    def lookups(self, record):
        return [('slug', self.slug(record))]

    def label(self, record):
        return f"Category {record.get('name') or self.natural_key(record)}"

    def map(self, record, destination, source):
        return DataMapper.map_category(record, parent_id=self._parent_id(record, destination, source),
                                       slug=self.slug(record))

    def slug(self, record):
        """Slug of a category, suffixed with its Magento id when another category of the run holds it"""
        key = self.natural_key(record)
        slug = DataMapper.category_slug(record)
        if self.slug_owners.setdefault(slug, key) != key:
            slug = f"{slug}-{key}"
            self.slug_owners.setdefault(slug, key)
        return slug

    def _parent_id(self, record, destination, source):
        try:
            magento_parent = int(record.get('parent_id') or 0)
        except (TypeError, ValueError):
            return 0
        if magento_parent <= self.ROOT_IDS_MAX:
            return 0

        if str(magento_parent) in self.category_map:
            return self.category_map[str(magento_parent)]

        # Parent migrated in an earlier run: find it by its slug
        parent = source.get_category(magento_parent) if hasattr(source, 'get_category') else None
        if parent:
            parent_id = destination.find('categories', 'slug', self.slug(parent))
            if parent_id:
                self.category_map[str(magento_parent)] = parent_id
                return parent_id

        logger.warning(f"Parent category {magento_parent} of {record.get('name')} not found, using top level")
        return 0

    def secondary(self, dest_id, record, action, destination, source):
        self.category_map[self.natural_key(record)] = dest_id


class CustomerStrategy(EntityStrategy):
    entity_type = 'customers'

    def natural_key(self, record):
        return safe_str(record.get('email')).strip().lower()

    def lookups(self, record):
        return [
            ('email', self.natural_key(record)),
            ('_magento_customer_id', record.get('entity_id') or record.get('id')),
        ]

    def label(self, record):
        return f"Customer {self.natural_key(record)}"

    def map(self, record, destination, source):
        return DataMapper.map_customer(record)

    def update_fields(self, fields):
        # WooCommerce usernames are immutable; keep the existing password
        fields = dict(fields)
        fields.pop('username', None)
        fields.pop('password', None)
        return fields


class OrderStrategy(EntityStrategy):
    entity_type = 'orders'

    def natural_key(self, record):
        entity_id = safe_str(record.get('entity_id')).strip()
        if not entity_id:
            return ''
        increment_id = safe_str(record.get('increment_id')).strip() or entity_id
        return f"{entity_id}:{increment_id}"

    def lookups(self, record):
        return [
            ('_magento_order_id', record.get('entity_id')),
            ('_magento_increment_id', record.get('increment_id')),
        ]

    def label(self, record):
        return f"Order #{record.get('increment_id') or record.get('entity_id')}"

    def map(self, record, destination, source):
        customer_id = self._customer_id(record, destination)

        product_ids = {}
        for item in record.get('items') or []:
            sku = safe_str(item.get('sku')).strip()
            if sku and sku not in product_ids:
                product_ids[sku] = destination.find('products', 'sku', sku) or 0

        return DataMapper.map_order(record, customer_id=customer_id, product_ids=product_ids)

    def _customer_id(self, record, destination):
        """WooCommerce customer of the order: by email, then by Magento customer id; 0 for guests"""
        email = safe_str(record.get('customer_email')).strip().lower()
        if email:
            customer_id = destination.find('customers', 'email', email)
            if customer_id:
                return customer_id

        if record.get('customer_id'):
            customer_id = destination.find('customers', '_magento_customer_id', record.get('customer_id'))
            if customer_id:
                return customer_id

        logger.debug(f"No WooCommerce customer for order #{record.get('increment_id')}, treating as guest")
        return 0

    def update_fields(self, fields):
        # Re-sending line items would add them a second time
        fields = dict(fields)
        fields.pop('line_items', None)
        fields.pop('shipping_lines', None)
        return fields

    def secondary(self, dest_id, record, action, destination, source):
        if action != Action.CREATE:
            return
        result = destination.add_order_note(dest_id, DataMapper.order_migration_note(record))
        _warn_if_failed(result, f"Could not add migration note to order {dest_id}")


STRATEGIES = {
    'products': ProductStrategy,
    'categories': CategoryStrategy,
    'customers': CustomerStrategy,
    'orders': OrderStrategy,
}


def create_strategy(entity_type):
    if entity_type not in STRATEGIES:
        raise ValueError(f"Unknown entity type: {entity_type}")
    return STRATEGIES[entity_type]()
