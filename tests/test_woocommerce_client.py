from unittest import mock

import pytest
import requests

from conftest import make_response
from models import DestinationError
from woocommerce_client import WooCommerceClient


@pytest.fixture(autouse=True)
def no_sleep():
    with mock.patch('woocommerce_client.time.sleep'):
        yield


def client_with(*responses):
    client = WooCommerceClient('https://store.example/', 'ck_test', 'cs_test')
    client.session.request = mock.Mock(side_effect=list(responses))
    return client


def test_find_by_sku_uses_native_filter():
    client = client_with(make_response(json_data=[{'id': 15, 'sku': 'MUG-1'}]))

    assert client.find('products', 'sku', ' MUG-1 ') == 15
    args, kwargs = client.session.request.call_args
    assert args == ('GET', 'https://store.example/wp-json/wc/v3/products')
    assert kwargs['params'] == {'sku': 'MUG-1'}
    assert kwargs['timeout'] == 30


def test_find_customer_by_email_includes_every_role():
    client = client_with(make_response(json_data=[]))

    assert client.find('customers', 'email', 'jane@example.com') is None
    assert client.session.request.call_args[1]['params'] == {'email': 'jane@example.com', 'role': 'all'}


def test_find_blank_value_makes_no_request():
    client = client_with()

    assert client.find('products', 'sku', '  ') is None
    assert client.session.request.call_count == 0


def test_find_by_name_keeps_exact_matches_only():
    client = client_with(make_response(json_data=[
        {'id': 3, 'name': 'Shirts and Tops'},
        {'id': 4, 'name': 'shirts'},
    ]))

    assert client.find('categories', 'name', 'Shirts') == 4


def test_unsupported_link_field_raises():
    with pytest.raises(ValueError):
        client_with().find('orders', 'email', 'jane@example.com')


def test_meta_lookup_scans_once_and_learns_from_writes():
    client = client_with(
        make_response(json_data=[
            {'id': 1, 'meta_data': [{'key': '_magento_order_id', 'value': '500'}]},
            {'id': 2, 'meta_data': [{'key': '_billing_note', 'value': 'x'}]},
        ]),
        make_response(status_code=201, json_data={
            'id': 9, 'meta_data': [{'key': '_magento_order_id', 'value': 501}]}),
    )

    assert client.find('orders', '_magento_order_id', '500') == 1
    assert client.find('orders', '_magento_order_id', '501') is None
    assert client.upsert('orders', None, {'status': 'completed'}) == 9
    assert client.find('orders', '_magento_order_id', '501') == 9
    assert client.session.request.call_count == 2


def test_upsert_posts_new_and_puts_existing():
    client = client_with(
        make_response(status_code=201, json_data={'id': 21}),
        make_response(json_data={'id': 21}),
    )

    assert client.upsert('categories', None, {'name': 'Shirts'}) == 21
    assert client.upsert('categories', 21, {'name': 'Shirts'}) == 21

    first, second = client.session.request.call_args_list
    assert first[0] == ('POST', 'https://store.example/wp-json/wc/v3/products/categories')
    assert first[1]['json'] == {'name': 'Shirts'}
    assert second[0] == ('PUT', 'https://store.example/wp-json/wc/v3/products/categories/21')


def test_rejected_write_is_not_retried():
    client = client_with(make_response(status_code=400, json_data={
        'code': 'product_invalid_sku', 'message': 'Invalid or duplicated SKU.'}))

    result = client.upsert('products', None, {'sku': 'DUP'})

    assert isinstance(result, DestinationError)
    assert result.status_code == 400
    assert 'Invalid or duplicated SKU.' in result.message
    assert client.session.request.call_count == 1


def test_transport_failure_is_retried_then_returned():
    client = client_with(*[requests.exceptions.ConnectionError('reset')] * 3)

    result = client.upsert('customers', None, {'email': 'jane@example.com'})

    assert isinstance(result, DestinationError)
    assert result.status_code is None
    assert client.session.request.call_count == 3


def test_rate_limit_waits_then_retries():
    client = client_with(
        make_response(status_code=429, headers={'Retry-After': '2'}),
        make_response(json_data=[{'id': 8}]),
    )

    assert client.find('categories', 'slug', 'shirts') == 8


def test_response_without_id_is_a_destination_error():
    client = client_with(make_response(json_data={}))

    assert isinstance(client.upsert('products', None, {'sku': 'A'}), DestinationError)


def test_add_order_note():
    client = client_with(make_response(status_code=201, json_data={'id': 3}))

    client.add_order_note(40, 'Migrated from Magento Order #100000040')

    args, kwargs = client.session.request.call_args
    assert args == ('POST', 'https://store.example/wp-json/wc/v3/orders/40/notes')
    assert kwargs['json'] == {'note': 'Migrated from Magento Order #100000040', 'customer_note': False}


def test_connection_failure_returns_false():
    client = client_with(*[requests.exceptions.ConnectionError('down')] * 3)

    assert client.test_connection() is False
