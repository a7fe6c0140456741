"""
Data mapping functions to convert Magento data structures to WooCommerce format

Mapping is pure: no API calls. Values that need a destination lookup (parent
category, customer, product ids of order lines) are resolved by the caller
and passed in.
"""
import re
import secrets
import string
import time
from datetime import datetime
from logger import setup_logger

logger = setup_logger(__name__)

MAGENTO_DATE_FORMATS = (
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%dT%H:%M:%S',
    '%Y-%m-%dT%H:%M:%S%z',
    '%Y-%m-%dT%H:%M:%S.%f%z',
    '%Y-%m-%d',
)

ORDER_STATUS_MAP = {
    'new': 'pending',
    'pending': 'pending',
    'pending_payment': 'pending',
    'processing': 'processing',
    'complete': 'completed',
    'closed': 'completed',
    'canceled': 'cancelled',
    'holded': 'on-hold',
    'payment_review': 'on-hold',
}

# Magento order aggregates copied to customer meta, keyed by source field
CUSTOMER_STATS_META = {
    'total_orders_count': ['_order_count', '_magento_total_orders_count'],
    'total_spend': ['_money_spent', '_magento_total_spend'],
    'base_total_spend': ['_magento_base_total_spend'],
    'net_spend': ['_magento_net_spend'],
    'completed_orders': ['_magento_completed_orders'],
    'processing_orders': ['_magento_processing_orders'],
    'cancelled_orders': ['_magento_cancelled_orders'],
    'closed_orders': ['_magento_closed_orders'],
    'valid_orders': ['_magento_valid_orders'],
    'total_refunded': ['_magento_total_refunded'],
    'average_order_value': ['_magento_average_order_value'],
    'max_order_value': ['_magento_max_order_value'],
    'min_order_value': ['_magento_min_order_value'],
    'first_order_date': ['_magento_first_order_date'],
    'last_order_date': ['_magento_last_order_date'],
    'days_since_last_order': ['_magento_days_since_last_order'],
}


def generate_secure_password(length=16):
    """Generate a secure random password for customer accounts"""
    alphabet = string.ascii_letters + string.digits + "!@#$%^&*"
    password = ''.join(secrets.choice(alphabet) for _ in range(length))
    return password


def safe_str(value, default=''):
    """Convert value to string, handling None and other types safely"""
    if value is None:
        return default
    return str(value)


def slugify(value):
    """Lowercase, hyphen-separated slug (url_key style)"""
    slug = re.sub(r'[^a-z0-9]+', '-', safe_str(value).lower())
    return slug.strip('-')


def parse_magento_date(value):
    """Parse a Magento date string

    Magento emits 'YYYY-MM-DD HH:MM:SS' from the database and ISO 8601 from
    the REST API.

    Returns:
        datetime, or None when the value is empty or unparseable
    """
    if not value:
        return None
    value = str(value).strip()
    for fmt in MAGENTO_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    logger.warning(f"Could not parse Magento date: {value}")
    return None


def format_street_line(street, line):
    """Pick one line from a Magento street value (list of lines or a single string)"""
    if isinstance(street, (list, tuple)):
        return safe_str(street[line]) if len(street) > line else ''
    if line == 0 and isinstance(street, str):
        return street
    return ''


def generate_sku_for_unmapped_item(item_name, magento_item_id):
    """Generate a placeholder SKU for order lines without one

    WooCommerce requires either a valid product_id or a non-empty SKU.

    Args:
        item_name: Name of the line item
        magento_item_id: Magento order item id (for uniqueness)

    Returns:
        str: Generated SKU
    """
    # Clean item name - keep only alphanumeric and spaces
    clean_name = re.sub(r'[^a-zA-Z0-9\s]', '', item_name or '')
    # Take first few words
    words = clean_name.split()[:3]
    name_part = '-'.join(words).upper()[:20]

    if magento_item_id:
        return f"UNMAPPED-{name_part}-{magento_item_id}"
    return f"UNMAPPED-{name_part}-{int(time.time())}"


def get_attribute(record, code, default=None):
    """Read a Magento attribute from the record or its custom_attributes list

    The connector flattens attributes onto the record; the REST API keeps
    non-system attributes in custom_attributes.
    """
    value = record.get(code)
    if value not in (None, ''):
        return value
    for attribute in record.get('custom_attributes') or []:
        if attribute.get('attribute_code') == code:
            return attribute.get('value')
    return default


def _meta(key, value):
    return {'key': key, 'value': safe_str(value)}


class DataMapper:

    @staticmethod
    def _map_product_status(magento_status):
        """Magento status 1 (enabled) publishes; anything else stays draft"""
        try:
            return 'publish' if int(magento_status) == 1 else 'draft'
        except (TypeError, ValueError):
            return 'draft'

    @staticmethod
    def _map_catalog_visibility(magento_visibility):
        """Map Magento visibility to WooCommerce catalog visibility

        Magento visibility:
        - 1: Not Visible Individually
        - 2: Catalog
        - 3: Search
        - 4: Catalog, Search
        """
        try:
            return 'visible' if int(magento_visibility) in (2, 4) else 'hidden'
        except (TypeError, ValueError):
            return 'hidden'

    @staticmethod
    def _stock(magento_product):
        stock = magento_product.get('stock_data')
        if not stock:
            stock = (magento_product.get('extension_attributes') or {}).get('stock_item') or {}
        return stock

    @staticmethod
    def map_product(magento_product):
        """Map Magento product to WooCommerce format"""
        try:
            name = magento_product.get('name', '')
            description = safe_str(get_attribute(magento_product, 'description'))
            type_id = magento_product.get('type_id', 'simple')

            wc_product = {
                'name': name,
                'type': 'grouped' if type_id == 'grouped' else 'simple',
                'sku': safe_str(magento_product.get('sku')).strip(),
                'regular_price': safe_str(magento_product.get('price'), '0'),
                'description': description,
                'short_description': safe_str(get_attribute(magento_product, 'short_description')),
                'status': DataMapper._map_product_status(magento_product.get('status', 1)),
                'catalog_visibility': DataMapper._map_catalog_visibility(magento_product.get('visibility', 4)),
                'virtual': type_id == 'virtual',
                'downloadable': type_id == 'downloadable',
                'featured': False,
                'meta_data': [
                    _meta('_magento_product_id', magento_product.get('entity_id') or magento_product.get('id')),
                    _meta('_magento_type_id', type_id),
                ]
            }

            url_key = get_attribute(magento_product, 'url_key')
            if url_key:
                wc_product['slug'] = slugify(url_key)

            # Sale price only when it is a real discount
            special_price = get_attribute(magento_product, 'special_price')
            try:
                has_special_price = special_price is not None and float(special_price) > 0
            except (TypeError, ValueError):
                has_special_price = False
            if has_special_price:
                wc_product['sale_price'] = safe_str(special_price)
                special_from = parse_magento_date(get_attribute(magento_product, 'special_from_date'))
                special_to = parse_magento_date(get_attribute(magento_product, 'special_to_date'))
                if special_from:
                    wc_product['date_on_sale_from'] = special_from.strftime('%Y-%m-%dT%H:%M:%S')
                if special_to:
                    wc_product['date_on_sale_to'] = special_to.strftime('%Y-%m-%dT%H:%M:%S')
            else:
                wc_product['sale_price'] = ''

            stock = DataMapper._stock(magento_product)
            is_in_stock = bool(stock.get('is_in_stock', True))
            wc_product['stock_status'] = 'instock' if is_in_stock else 'outofstock'
            if stock.get('manage_stock'):
                wc_product['manage_stock'] = True
                wc_product['stock_quantity'] = int(float(stock.get('qty') or 0))
            else:
                wc_product['manage_stock'] = False

            try:
                weight = float(magento_product.get('weight') or 0)
            except (TypeError, ValueError):
                weight = 0
            if weight > 0:
                wc_product['weight'] = safe_str(magento_product.get('weight'))

            # SEO data
            meta_title = get_attribute(magento_product, 'meta_title') or name
            meta_description = (get_attribute(magento_product, 'meta_description')
                                or DataMapper._extract_meta_description(description))
            wc_product['meta_data'].extend([
                _meta('_yoast_wpseo_title', meta_title),
                _meta('_yoast_wpseo_metadesc', meta_description),
            ])
            meta_keyword = get_attribute(magento_product, 'meta_keyword')
            if meta_keyword:
                wc_product['meta_data'].append(_meta('_meta_keywords', meta_keyword))

            return wc_product

        except Exception as e:
            logger.error(f"Error mapping product {magento_product.get('sku', 'unknown')}: {e}")
            return None

    @staticmethod
    def map_product_images(magento_product, media_url):
        """Build WooCommerce image references from the Magento media gallery

        Enabled gallery entries come first in position order, then the base,
        small and thumbnail images when they are not already in the gallery.

        Args:
            magento_product: Magento product data
            media_url: Base URL of /media/catalog/product

        Returns:
            list: Image dicts with 'src', 'name', 'alt'
        """
        media_url = safe_str(media_url).rstrip('/')
        gallery = magento_product.get('media') or magento_product.get('media_gallery_entries') or []
        name = magento_product.get('name') or 'Image'

        enabled = [item for item in gallery if not item.get('disabled')]
        enabled.sort(key=lambda item: int(item.get('position') or 999))

        entries = []
        for item in enabled:
            entries.append((item.get('file') or item.get('value'), item.get('label') or name))
        entries.extend([
            (magento_product.get('image') or get_attribute(magento_product, 'image'), name),
            (magento_product.get('small_image') or get_attribute(magento_product, 'small_image'), f"{name} - Small"),
            (magento_product.get('thumbnail') or get_attribute(magento_product, 'thumbnail'), f"{name} - Thumbnail"),
        ])

        images = []
        seen = set()
        for path, label in entries:
            if not path or path == 'no_selection' or path in seen:
                continue
            seen.add(path)
            images.append({
                'src': f"{media_url}/{path.lstrip('/')}",
                'name': str(label),
                'alt': str(label)
            })
        return images

    @staticmethod
    def category_slug(magento_category):
        """WooCommerce slug for a Magento category: url_path, then url_key, then name

        url_path ('men/tops') is unique in the store; url_key is only unique
        among siblings.
        """
        url_path = safe_str(get_attribute(magento_category, 'url_path'))
        if url_path.endswith('.html'):
            url_path = url_path[:-len('.html')]
        slug_source = (url_path
                       or get_attribute(magento_category, 'url_key')
                       or magento_category.get('name'))
        return slugify(slug_source) or 'category'

    @staticmethod
    def map_category(magento_category, parent_id=0, slug=None):
        """Map Magento category to WooCommerce product category

        Args:
            magento_category: Magento category data
            parent_id: WooCommerce id of the parent category (0 for top level)
            slug: Slug to use instead of the one derived from the category
        """
        try:
            name = magento_category.get('name') or 'Category'

            wc_category = {
                'name': name,
                'slug': slug or DataMapper.category_slug(magento_category),
                'description': safe_str(get_attribute(magento_category, 'description')),
                'parent': parent_id or 0,
            }

            position = magento_category.get('position')
            if position is not None:
                try:
                    wc_category['menu_order'] = int(position)
                except (TypeError, ValueError):
                    pass

            return wc_category

        except Exception as e:
            logger.error(f"Error mapping category {magento_category.get('entity_id', 'unknown')}: {e}")
            return None

    @staticmethod
    def map_address(magento_address, email=''):
        """Map a Magento address to a WooCommerce billing/shipping block"""
        magento_address = magento_address or {}
        region = magento_address.get('region')
        if isinstance(region, dict):
            region = region.get('region_code') or region.get('region')

        address = {
            'first_name': safe_str(magento_address.get('firstname')),
            'last_name': safe_str(magento_address.get('lastname')),
            'company': safe_str(magento_address.get('company')),
            'address_1': format_street_line(magento_address.get('street', ''), 0),
            'address_2': format_street_line(magento_address.get('street', ''), 1),
            'city': safe_str(magento_address.get('city')),
            'state': safe_str(region),
            'postcode': safe_str(magento_address.get('postcode')),
            'country': safe_str(magento_address.get('country_id')).upper(),
            'phone': safe_str(magento_address.get('telephone')),
        }
        if email:
            address['email'] = email
        return address

    @staticmethod
    def select_customer_addresses(addresses):
        """Choose the billing and shipping addresses of a customer

        Default billing/shipping flags win; otherwise the first non-default
        addresses fill the gaps, then the first address becomes billing and
        shipping falls back to billing.

        Returns:
            tuple: (billing, shipping) Magento address dicts, either may be None
        """
        billing = shipping = None

        for address in addresses:
            if address.get('default_billing') and billing is None:
                billing = address
            if address.get('default_shipping') and shipping is None:
                shipping = address

        for address in addresses:
            if address.get('default_billing') or address.get('default_shipping'):
                continue
            if billing is None:
                billing = address
            elif shipping is None:
                shipping = address

        if billing is None and addresses:
            billing = addresses[0]
        if shipping is None:
            shipping = billing
        return billing, shipping

    @staticmethod
    def map_customer(magento_customer):
        """Map Magento customer to WooCommerce format

        Returns:
            dict: WooCommerce customer data or None if mapping fails
        """
        try:
            email = safe_str(magento_customer.get('email')).strip()
            first_name = safe_str(magento_customer.get('firstname'))
            last_name = safe_str(magento_customer.get('lastname'))

            billing, shipping = DataMapper.select_customer_addresses(magento_customer.get('addresses') or [])

            wc_billing = DataMapper.map_address(billing, email=email)
            wc_billing['first_name'] = wc_billing['first_name'] or first_name
            wc_billing['last_name'] = wc_billing['last_name'] or last_name
            wc_shipping = DataMapper.map_address(shipping)
            wc_shipping.pop('phone')

            wc_customer = {
                'email': email,
                'password': generate_secure_password(),  # Required by WooCommerce API
                'first_name': first_name,
                'last_name': last_name,
                'username': email.split('@')[0] if '@' in email else email[:50],
                'billing': wc_billing,
                'shipping': wc_shipping,
                'meta_data': [
                    _meta('_magento_customer_id', magento_customer.get('entity_id') or magento_customer.get('id')),
                ]
            }

            for field in ('website_id', 'store_id', 'group_id', 'created_at'):
                if magento_customer.get(field) not in (None, ''):
                    wc_customer['meta_data'].append(_meta(f"_magento_{field}", magento_customer[field]))

            for field, keys in CUSTOMER_STATS_META.items():
                if magento_customer.get(field) is None:
                    continue
                for key in keys:
                    wc_customer['meta_data'].append(_meta(key, magento_customer[field]))

            for flag in ('has_refunds', 'is_returning_customer'):
                if flag in magento_customer:
                    wc_customer['meta_data'].append(
                        _meta(f"_magento_{flag}", 'yes' if magento_customer[flag] else 'no'))

            return wc_customer

        except Exception as e:
            logger.error(f"Error mapping customer {magento_customer.get('email', 'unknown')}: {e}")
            return None

    @staticmethod
    def map_order_status(state, status=None):
        """Map Magento order state (falling back to status) to a WooCommerce status"""
        return ORDER_STATUS_MAP.get(state) or ORDER_STATUS_MAP.get(status) or 'pending'

    @staticmethod
    def _order_shipping_address(magento_order):
        if magento_order.get('shipping_address'):
            return magento_order['shipping_address']
        # REST: extension_attributes.shipping_assignments[].shipping.address
        assignments = (magento_order.get('extension_attributes') or {}).get('shipping_assignments') or []
        for assignment in assignments:
            address = (assignment.get('shipping') or {}).get('address')
            if address:
                return address
        return None

    @staticmethod
    def map_order(magento_order, customer_id=0, product_ids=None):
        """Map Magento order to WooCommerce format

        Args:
            magento_order: Magento order data
            customer_id: WooCommerce customer id (0 for guest orders)
            product_ids: Optional mapping of SKU -> WooCommerce product id
        """
        try:
            product_ids = product_ids or {}
            increment_id = safe_str(magento_order.get('increment_id') or magento_order.get('entity_id'))

            billing_address = magento_order.get('billing_address') or {}
            shipping_address = DataMapper._order_shipping_address(magento_order) or billing_address

            billing_email = safe_str(magento_order.get('customer_email') or billing_address.get('email')).strip()
            wc_billing = DataMapper.map_address(billing_address, email=billing_email)
            if not wc_billing['first_name']:
                wc_billing['first_name'] = safe_str(magento_order.get('customer_firstname'))
            if not wc_billing['last_name']:
                wc_billing['last_name'] = safe_str(magento_order.get('customer_lastname'))
            wc_shipping = DataMapper.map_address(shipping_address)
            wc_shipping.pop('phone')

            line_items = []
            for item in magento_order.get('items') or []:
                # Children of configurable/bundle items repeat their parent line
                if item.get('parent_item_id'):
                    continue
                sku = safe_str(item.get('sku')).strip()
                if not sku:
                    sku = generate_sku_for_unmapped_item(item.get('name'), item.get('item_id'))
                    logger.debug(f"Generated SKU for unmapped item '{item.get('name')}': {sku}")

                quantity = int(float(item.get('qty_ordered') or 1))
                line_total = item.get('row_total')
                if line_total is None:
                    line_total = float(item.get('price') or 0) * quantity

                line_items.append({
                    'product_id': product_ids.get(sku, 0),
                    'name': safe_str(item.get('name'), 'Product'),
                    'sku': sku,
                    'quantity': quantity,
                    'subtotal': safe_str(line_total),
                    'total': safe_str(line_total),
                    'meta_data': [
                        _meta('_magento_item_id', item.get('item_id')),
                    ]
                })

            payment = magento_order.get('payment') or {}
            payment_title = payment.get('method_title')
            if not payment_title:
                additional = payment.get('additional_information') or []
                payment_title = additional[0] if additional else 'Magento Payment'

            wc_order = {
                'status': DataMapper.map_order_status(magento_order.get('state'), magento_order.get('status')),
                'currency': safe_str(magento_order.get('order_currency_code'), 'USD'),
                'customer_id': customer_id or 0,
                'customer_note': safe_str(magento_order.get('customer_note')),
                'billing': wc_billing,
                'shipping': wc_shipping,
                'line_items': line_items,
                'shipping_lines': [],
                'payment_method': safe_str(payment.get('method'), 'magento'),
                'payment_method_title': safe_str(payment_title),
                'created_via': 'magento_migrator',
                # Payment was captured in Magento
                'set_paid': False,
                'meta_data': [
                    _meta('_magento_order_id', magento_order.get('entity_id')),
                    _meta('_magento_increment_id', increment_id),
                    _meta('_magento_grand_total', magento_order.get('grand_total') or 0),
                    _meta('_magento_subtotal', magento_order.get('subtotal') or 0),
                    _meta('_magento_discount', magento_order.get('discount_amount') or 0),
                    _meta('_magento_tax', magento_order.get('tax_amount') or 0),
                    _meta('_magento_shipping', magento_order.get('shipping_amount') or 0),
                ]
            }

            for field in ('created_at', 'updated_at'):
                parsed = parse_magento_date(magento_order.get(field))
                if parsed:
                    wc_order['meta_data'].append(_meta(f"_magento_{field}", parsed.strftime('%Y-%m-%d %H:%M:%S')))

            shipping_amount = float(magento_order.get('shipping_amount') or 0)
            if shipping_amount > 0:
                wc_order['shipping_lines'].append({
                    'method_id': 'flat_rate',
                    'method_title': safe_str(magento_order.get('shipping_description')) or 'Magento Shipping',
                    'total': safe_str(magento_order.get('shipping_amount'))
                })

            return wc_order

        except Exception as e:
            logger.error(f"Error mapping order {magento_order.get('increment_id', 'unknown')}: {e}")
            return None

    @staticmethod
    def order_migration_note(magento_order):
        """Private order note recording the Magento origin"""
        increment_id = safe_str(magento_order.get('increment_id') or magento_order.get('entity_id'))
        note = f"Migrated from Magento Order #{increment_id}"
        created_at = parse_magento_date(magento_order.get('created_at'))
        if created_at:
            note += f" (Originally created: {created_at.strftime('%B %d, %Y %H:%M')})"
        return note

    @staticmethod
    def _extract_meta_description(html_content, max_length=160):
        """Extract meta description from HTML content"""
        if not html_content:
            return ''

        # Remove HTML tags
        clean_text = re.sub('<[^<]+?>', '', html_content)
        # Remove extra whitespace
        clean_text = ' '.join(clean_text.split())

        # Truncate to appropriate length
        if len(clean_text) > max_length:
            clean_text = clean_text[:max_length].rsplit(' ', 1)[0] + '...'

        return clean_text
