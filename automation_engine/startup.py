"""Application startup script and CLI interface."""

import sys
import argparse
import json

from .config import (
    AppConfig,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.exceptions import WorkflowEngineError
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="automation-engine",
        description="Automation Engine - durable execution of contact automation workflows"
    )

    # Server configuration
    parser.add_argument(
        "--host",
        help="Host to bind the server to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--port",
        type=int,
        help="Port to bind the server to (default: 8000)"
    )

    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development"
    )

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )

    parser.add_argument(
        "--config",
        help="Path to a .env configuration file"
    )

    # Database configuration
    parser.add_argument(
        "--database-url",
        help="Database connection URL"
    )

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )

    parser.add_argument(
        "--log-file",
        help="Path to log file"
    )

    # Debug mode
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )

    # Scheduler configuration
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Serve the API without running the background sweep loop"
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        help="Maximum enrollments claimed per sweep"
    )

    parser.add_argument(
        "--max-dispatch-workers",
        type=int,
        help="Concurrent enrollment dispatches per sweep"
    )

    # Commands
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run server command
    run_parser = subparsers.add_parser("run", help="Run the API server and scheduler")
    run_parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)"
    )

    # Sweep command
    subparsers.add_parser("sweep", help="Run a single scheduler sweep and exit")

    # Database commands
    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")

    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("migrate", help="Run database migrations")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    # Health check command
    subparsers.add_parser("health", help="Check database connectivity")

    # Configuration commands
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")

    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""

    # Load environment-specific configuration
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        # Load from config file or environment
        config = load_config(args.config)

    # Override with command line arguments
    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.reload:
        overrides["reload"] = True
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_file:
        overrides["log_file"] = args.log_file
    if args.debug:
        overrides["debug"] = True
    if args.no_scheduler:
        overrides["scheduler_enabled"] = False
    if args.batch_size:
        overrides["scheduler_batch_size"] = args.batch_size
    if args.max_dispatch_workers:
        overrides["max_dispatch_workers"] = args.max_dispatch_workers

    if overrides:
        config = AppConfig(**{**config.model_dump(), **overrides})

    return config


def run_server(config: AppConfig, workers: int = 1):
    """Run the API server; the scheduler runs inside each worker process."""
    import uvicorn

    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server with {workers} worker(s)")

    # Get uvicorn configuration
    uvicorn_config = config.get_uvicorn_config()

    if workers > 1:
        # Multi-worker mode; each process loads its configuration from the environment
        uvicorn.run(
            "automation_engine.main:app",
            workers=workers,
            **uvicorn_config
        )
    else:
        # Single worker mode
        app = create_app(config)
        uvicorn.run(app, **uvicorn_config)


def run_sweep_command(config: AppConfig):
    """Run one sweep against the configured database and print its counters."""
    from .factory import initialize_core_components, initialize_database

    logger = setup_logging(level=config.log_level.value, log_format=config.log_format)
    initialize_database(config, logger)
    state = initialize_core_components(config)
    try:
        result = state.scheduler.run_sweep()
        print(json.dumps(result.to_dict(), indent=2))
        if result.aborted:
            sys.exit(1)
    finally:
        state.scheduler.shutdown()
        state.execution_engine.shutdown()


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import create_tables, drop_tables, init_database
    from .storage.migrations import run_migrations

    logger = get_logger(__name__)
    init_database(config.database_url, echo=config.database_echo)

    if command == "init":
        logger.info("Initializing database tables...")
        create_tables()
        run_migrations()
        print("Database tables created successfully")

    elif command == "migrate":
        logger.info("Running database migrations...")
        run_migrations()
        print("Database migrations completed successfully")

    elif command == "reset":
        logger.info("Resetting database...")
        drop_tables()
        create_tables()
        run_migrations()
        print("Database reset completed successfully")


def run_health_check(config: AppConfig):
    """Check that the configured database is reachable."""
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    from .storage.database import init_database

    print(f"Service: {config.app_name}")
    print(f"Version: {config.app_version}")
    try:
        with init_database(config.database_url).connect() as connection:
            connection.execute(text("SELECT 1"))
        print("Database: healthy")
    except SQLAlchemyError as e:
        print(f"Database: unhealthy - {e}")
        sys.exit(1)


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Scheduler Enabled: {config.scheduler_enabled}")
    print(f"  Sweep Interval: {config.scheduler_interval_seconds}s")
    print(f"  Batch Size: {config.scheduler_batch_size}")
    print(f"  Lease Duration: {config.lease_seconds}s")
    print(f"  Dispatch Workers: {config.max_dispatch_workers}")
    print(f"  Retry Policy: base {config.retry_base_seconds}s, {config.max_retry_attempts} attempts")
    print(f"  External Call Timeout: {config.external_call_timeout}s")
    print(f"  Stop Keywords: {', '.join(config.stop_keywords)}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
        print("All configuration settings are valid.")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main():
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        # Load configuration
        config = load_configuration(args)

        if args.command == "config" and args.config_command == "validate":
            validate_configuration_command(config)
            return

        # Validate configuration
        validate_config(config)

        # Handle commands
        if args.command == "run" or args.command is None:
            # Default to running the server
            workers = getattr(args, 'workers', 1)
            run_server(config, workers)

        elif args.command == "sweep":
            run_sweep_command(config)

        elif args.command == "db":
            if args.db_command:
                run_database_command(args.db_command, config)
            else:
                print("Database command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "health":
            run_health_check(config)

        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
        else:
            parser.print_help()

    except (ValueError, OSError, WorkflowEngineError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
