#!/usr/bin/env python3
"""
Branch Ledger Entry Point

Starts the FastAPI server with the ledger, the audit recorder and the daily
aggregation scheduler. Settings come from LEDGER_* environment variables.
"""

import sys

import uvicorn

from branch_ledger.api import create_app
from branch_ledger.config import get_config
from branch_ledger.logging_config import setup_logging
from branch_ledger.system import LedgerSystem


def main() -> int:
    config = get_config()
    logger = setup_logging(config.log_level, fmt=config.log_format, log_file=config.log_file)

    system = LedgerSystem(config)
    system.start()
    logger.info(f"API available at http://{config.api_host}:{config.api_port}")

    try:
        uvicorn.run(
            create_app(system),
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        logger.info("Shutting down branch ledger")
    except Exception as e:
        logger.error(f"Error starting server: {e}", exc_info=True)
        return 1
    finally:
        system.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
