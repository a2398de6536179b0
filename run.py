#!/usr/bin/env python3
"""
Core Lending System Entry Point

Starts the FastAPI server with the host and port from configuration.
"""

import sys

from core_lending.api import run_server
from core_lending.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Core Lending System...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=config.api_reload
        )
    except KeyboardInterrupt:
        print("\nShutting down Core Lending System...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
