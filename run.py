#!/usr/bin/env python3
"""
Loan Core Entry Point

Configures logging and starts the FastAPI server with the loan core.
"""

import sys

from loan_core.api import run_server
from loan_core.config import get_config
from loan_core.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("Starting Loan Core...")
    print(f"Storage: {config.database_url}")
    print(f"Overpayment allowed: {config.allow_overpayment}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Core...")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
