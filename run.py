#!/usr/bin/env python3
"""
Wedged Risk Engine Startup Script

Usage:
    python run.py [--port PORT] [--host HOST] [--env ENV]

Environment Variables:
    RISK_ENGINE_PORT: Port to run the service on (default: 8001)
    RPC_URL: JSON-RPC endpoint for the chain reader
    ENV: Environment (development/production)
    LOG_LEVEL: Logging level (DEBUG/INFO/WARNING/ERROR)
"""

import argparse
import os
import sys

import structlog
import uvicorn

from wedged_risk.config import Settings
from wedged_risk.main import configure_logging

logger = structlog.get_logger()


def parse_arguments(settings: Settings):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Wedged Risk Engine - pool risk analytics service"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.RISK_ENGINE_PORT,
        help=f"Port to run the service on (default: {settings.RISK_ENGINE_PORT})"
    )

    parser.add_argument(
        "--host", "-H",
        type=str,
        default="0.0.0.0",
        help="Host to bind the service to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--env", "-e",
        type=str,
        choices=["development", "production"],
        default=settings.ENV,
        help=f"Environment mode (default: {settings.ENV})"
    )

    parser.add_argument(
        "--reload", "-r",
        action="store_true",
        help="Enable auto-reload for development"
    )

    parser.add_argument(
        "--log-level", "-l",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL,
        help=f"Log level (default: {settings.LOG_LEVEL})"
    )

    return parser.parse_args()


def export_overrides(args):
    """Expose CLI choices to the app factory, which builds its Settings from the environment"""
    os.environ["ENV"] = args.env
    os.environ["LOG_LEVEL"] = args.log_level


def validate_environment(settings: Settings) -> bool:
    """Warn about contracts the chain reader cannot reach"""
    if not settings.WEDGED_POOL_ADDRESS:
        print("❌ WEDGED_POOL_ADDRESS is not set; pool reads will fail.")
        print("Please check your .env file.")
        return False

    for name in ("RISK_CALCULATOR_ADDRESS", "HEDGING_MANAGER_ADDRESS", "EULER_SWAP_INTEGRATION_ADDRESS"):
        if not getattr(settings, name):
            print(f"⚠️ {name} is not set; local fallbacks will be used")

    return True


def main():
    """Main entry point"""
    settings = Settings()
    args = parse_arguments(settings)
    export_overrides(args)
    configure_logging(args.log_level)

    if not validate_environment(settings):
        sys.exit(1)

    try:
        logger.info("Starting Wedged Risk Engine",
                    host=args.host,
                    port=args.port,
                    env=args.env)

        uvicorn.run(
            "wedged_risk.main:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            access_log=True,
            reload=args.reload or args.env == "development",
        )

    except KeyboardInterrupt:
        logger.info("Received shutdown signal")


if __name__ == "__main__":
    main()
