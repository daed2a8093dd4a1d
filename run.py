#!/usr/bin/env python3
"""
Loan Servicing Entry Point

Starts the FastAPI server for the repayment allocation and classification engine.
"""

import sys

from loan_servicing.api import run_server
from loan_servicing.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Loan Servicing Engine...")
    print(f"Storage: {config.database_url}")
    print(f"Default currency: {config.default_currency}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Servicing Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
