import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

class Config:
    # Magento source: 'connector' (magento-connector.php) or 'rest' (REST API)
    MAGENTO_SOURCE = os.getenv('MAGENTO_SOURCE', 'connector').lower()

    # Magento Connector Configuration
    MAGENTO_CONNECTOR_URL = os.getenv('MAGENTO_CONNECTOR_URL')
    MAGENTO_CONNECTOR_KEY = os.getenv('MAGENTO_CONNECTOR_KEY')

    # Magento REST Configuration
    MAGENTO_STORE_URL = os.getenv('MAGENTO_STORE_URL')
    MAGENTO_ACCESS_TOKEN = os.getenv('MAGENTO_ACCESS_TOKEN')

    # WooCommerce Configuration
    WOOCOMMERCE_URL = os.getenv('WOOCOMMERCE_URL')
    WOOCOMMERCE_CONSUMER_KEY = os.getenv('WOOCOMMERCE_CONSUMER_KEY')
    WOOCOMMERCE_CONSUMER_SECRET = os.getenv('WOOCOMMERCE_CONSUMER_SECRET')

    # Migration Settings
    BATCH_SIZE = int(os.getenv('BATCH_SIZE', 20))
    MAX_EMPTY_BATCHES = int(os.getenv('MAX_EMPTY_BATCHES', 3))
    MAX_PAGES = int(os.getenv('MAX_PAGES', 1000))
    PAGE_DELAY = float(os.getenv('PAGE_DELAY', 0.1))
    PROGRESS_FILE = os.getenv('PROGRESS_FILE', 'migration_progress.json')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    DRY_RUN = os.getenv('DRY_RUN', 'false').lower() == 'true'
    MAX_RETRIES = int(os.getenv('MAX_RETRIES', 3))
    DELAY_BETWEEN_REQUESTS = float(os.getenv('DELAY_BETWEEN_REQUESTS', 1))
    REQUEST_TIMEOUT = float(os.getenv('REQUEST_TIMEOUT', 30))

    SOURCE_FIELDS = {
        'connector': ['MAGENTO_CONNECTOR_URL', 'MAGENTO_CONNECTOR_KEY'],
        'rest': ['MAGENTO_STORE_URL', 'MAGENTO_ACCESS_TOKEN'],
    }

    # Validation
    @classmethod
    def validate(cls, source=None):
        """Validate that all required configuration is present

        Args:
            source: 'connector' or 'rest'; defaults to MAGENTO_SOURCE
        """
        source = (source or cls.MAGENTO_SOURCE).lower()
        if source not in cls.SOURCE_FIELDS:
            raise ValueError(f"Unknown MAGENTO_SOURCE '{source}' (expected 'connector' or 'rest')")

        required_fields = cls.SOURCE_FIELDS[source] + [
            'WOOCOMMERCE_URL',
            'WOOCOMMERCE_CONSUMER_KEY',
            'WOOCOMMERCE_CONSUMER_SECRET'
        ]

        missing_fields = []
        for field in required_fields:
            if not getattr(cls, field):
                missing_fields.append(field)

        if missing_fields:
            raise ValueError(f"Missing required configuration: {', '.join(missing_fields)}")

        return True
