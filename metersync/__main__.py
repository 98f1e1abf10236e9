"""MeterSync CLI entry point.

Usage:
    python -m metersync             # Collection, sync and status API
    python -m metersync --no-api    # Collection and sync only
    python -m metersync --init-db   # Create missing tables and exit
"""

import argparse
import asyncio
import logging
import sys

from .config import Settings
from .errors import ConfigurationError, DatabaseConnectionError


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='[%(asctime)s] %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


async def run_service(settings: Settings, with_api: bool):
    """Run the service (and optionally the status API) until signalled."""
    from .service import MeterSyncService

    service = MeterSyncService(settings)

    if not with_api:
        await service.run_forever()
        return

    from .api import build_server, create_app

    server = build_server(create_app(service), settings.status_api_host, settings.status_api_port)
    api_task = asyncio.create_task(server.serve())
    logging.getLogger(__name__).info(
        f"Status API listening on http://{settings.status_api_host}:{settings.status_api_port}"
    )
    try:
        await service.run_forever()
    finally:
        server.should_exit = True
        await api_task


def init_db(settings: Settings):
    """Create the MeterSync tables in the local database."""
    from .database import connect_with_retry, create_db_engine, create_tables

    engine = create_db_engine(settings.local_db.url, name="local")
    connect_with_retry(engine, "local")
    create_tables(engine)
    engine.dispose()


def main():
    """Main entry point for MeterSync."""
    parser = argparse.ArgumentParser(
        description="MeterSync - BACnet meter collection and database sync agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m metersync              Run collection, sync and status API
    python -m metersync --no-api     Run without the status API
    python -m metersync --init-db    Create local tables and exit
    python -m metersync --version    Show version
        """
    )

    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Run without the HTTP status API",
    )

    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables in the local database and exit",
    )

    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    args = parser.parse_args()

    if args.version:
        from . import __version__
        print(f"MeterSync version {__version__}")
        sys.exit(0)

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        configure_logging("INFO")
        logging.getLogger(__name__).critical(str(e))
        sys.exit(2)

    configure_logging(settings.log_level)

    try:
        if args.init_db:
            init_db(settings)
        else:
            asyncio.run(run_service(settings, with_api=not args.no_api))
    except (ConfigurationError, DatabaseConnectionError) as e:
        logging.getLogger(__name__).critical(f"Startup failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nShutdown requested")
        sys.exit(0)


if __name__ == "__main__":
    main()
