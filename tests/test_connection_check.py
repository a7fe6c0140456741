from unittest import mock

import test_connections
from config import Config


def configure(monkeypatch):
    for name, value in {
        'MAGENTO_SOURCE': 'connector',
        'MAGENTO_CONNECTOR_URL': 'https://shop.example/magento-connector.php',
        'MAGENTO_CONNECTOR_KEY': 'key',
        'WOOCOMMERCE_URL': 'https://store.example',
        'WOOCOMMERCE_CONSUMER_KEY': 'ck',
        'WOOCOMMERCE_CONSUMER_SECRET': 'cs',
    }.items():
        monkeypatch.setattr(Config, name, value)


def test_both_connections_succeed(monkeypatch):
    configure(monkeypatch)
    source = mock.Mock(**{'test_connection.return_value': True})
    monkeypatch.setattr(test_connections, 'create_source', lambda config: source)
    with mock.patch.object(test_connections.WooCommerceClient, 'test_connection', return_value=True):
        assert test_connections.main() is True


def test_failed_destination_is_reported(monkeypatch):
    configure(monkeypatch)
    source = mock.Mock(**{'test_connection.return_value': True})
    monkeypatch.setattr(test_connections, 'create_source', lambda config: source)
    with mock.patch.object(test_connections.WooCommerceClient, 'test_connection', return_value=False):
        assert test_connections.main() is False


def test_missing_configuration_fails(monkeypatch):
    configure(monkeypatch)
    monkeypatch.setattr(Config, 'MAGENTO_CONNECTOR_KEY', None)

    assert test_connections.main() is False
