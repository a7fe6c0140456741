import argparse
import sys
from tqdm import tqdm
from config import Config
from magento_client import create_source
from woocommerce_client import WooCommerceClient
from migration_engine import BatchMigrationEngine
from models import ENTITY_TYPES, JobStatus, MigrationError
from progress import JsonProgressStore
from logger import setup_logger

logger = setup_logger("migration")


def build_parser():
    parser = argparse.ArgumentParser(description="Migrate Magento data to WooCommerce")
    parser.add_argument("entity_type", choices=ENTITY_TYPES)
    parser.add_argument("--page", type=int, help="Process only this page")
    parser.add_argument("--resume", action="store_true", help="Continue an interrupted migration")
    parser.add_argument("--dry-run", action="store_true", default=Config.DRY_RUN)
    parser.add_argument("--batch-size", type=int, default=Config.BATCH_SIZE)
    parser.add_argument("--status", action="store_true", help="Show the stored progress and exit")
    parser.add_argument("--cancel", action="store_true", help="Ask a running migration to stop")
    parser.add_argument("--reset", action="store_true", help="Clear the stored progress")
    return parser


class ProgressBar:
    """tqdm bar fed by the engine's progress callback"""

    def __init__(self, entity_type):
        self.bar = tqdm(total=0, desc=entity_type, unit='item')

    def __call__(self, job):
        if self.bar.total != job.total:
            self.bar.total = job.total
        self.bar.n = min(job.processed, job.total)
        self.bar.set_postfix(ok=job.successful, failed=job.failed, skipped=job.skipped,
                             eta=job.time_remaining, refresh=False)
        self.bar.refresh()

    def close(self):
        self.bar.close()


def show_status(store, entity_type):
    job = store.load(entity_type)
    if job is None:
        logger.info(f"No {entity_type} migration recorded")
        return True

    logger.info(f"=== {entity_type.upper()} MIGRATION STATUS ===")
    logger.info(f"Status: {job.status}")
    logger.info(f"Progress: {job.percentage}% ({job.processed}/{job.total})")
    logger.info(f"Successful: {job.successful} (created {job.created}, updated {job.updated})")
    logger.info(f"Failed: {job.failed}, skipped: {job.skipped}")
    logger.info(f"Current page: {job.current_page}, time remaining: {job.time_remaining}")
    for error in job.errors[-10:]:
        logger.warning(f"{error['time']} {error['item']}: {error['message']}")
    return True


def run_migration(args, store):
    source = create_source(Config)
    woocommerce = WooCommerceClient(
        Config.WOOCOMMERCE_URL,
        Config.WOOCOMMERCE_CONSUMER_KEY,
        Config.WOOCOMMERCE_CONSUMER_SECRET,
        max_retries=Config.MAX_RETRIES,
        delay=Config.DELAY_BETWEEN_REQUESTS,
        timeout=Config.REQUEST_TIMEOUT
    )

    progress_bar = ProgressBar(args.entity_type)
    engine = BatchMigrationEngine(
        source,
        woocommerce,
        store=store,
        batch_size=args.batch_size,
        dry_run=args.dry_run,
        progress_callback=progress_bar
    )

    try:
        stats = engine.run(args.entity_type, specific_page=args.page, resume=args.resume)
    except MigrationError as e:
        logger.error(f"Migration failed: {e}")
        return False
    finally:
        progress_bar.close()

    logger.info(f"Migration finished with status {stats.status} (dry_run={args.dry_run}): "
                f"{stats.successful} successful, {stats.failed} failed, {stats.skipped} skipped")
    return stats.status == JobStatus.COMPLETE


def main(argv=None):
    args = build_parser().parse_args(argv)
    store = JsonProgressStore(Config.PROGRESS_FILE)

    if args.status:
        return show_status(store, args.entity_type)
    if args.cancel:
        if store.request_cancel(args.entity_type):
            logger.info(f"Cancellation requested for {args.entity_type}")
            return True
        logger.warning(f"No running {args.entity_type} migration to cancel")
        return False
    if args.reset:
        store.reset(args.entity_type)
        logger.info(f"Cleared stored {args.entity_type} progress")
        return True

    if args.resume and args.page is not None:
        logger.error("--page cannot be combined with --resume; run the page again without --resume")
        return False

    try:
        Config.validate()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return False

    return run_migration(args, store)


def console_main():
    sys.exit(0 if main() else 1)


if __name__ == "__main__":
    console_main()
