#!/usr/bin/env python3
"""
Main entry point for the receptionist orchestrator.
Handles command line arguments and starts the FastAPI server.
"""

import argparse
import logging
import uvicorn
from dotenv import load_dotenv

# Load environment variables before settings are read
load_dotenv()

from receptionist.config.settings import settings
from receptionist.core.logging import setup_logging

# Set up logging
setup_logging()
logger = logging.getLogger(__name__)


def main():
    """Main application entry point."""

    # Parse command line arguments
    parser = argparse.ArgumentParser(
        description="Receptionist orchestrator"
    )
    parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Host to bind the server to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help=f"Port to bind the server to (default: {settings.port})"
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development"
    )

    args = parser.parse_args()

    # Display legal compliance notice
    print(
        'Our recommendation is to always disclose the use of AI for outbound or inbound calls.\n'
        'Check with your counsel for legal and compliance advice.\n'
    )

    # Start the server
    logger.info(f"Starting receptionist orchestrator on {args.host}:{args.port}")
    uvicorn.run(
        "receptionist.core.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
