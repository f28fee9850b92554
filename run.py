#!/usr/bin/env python3
"""
Loan Servicing Backend Entry Point

Starts the FastAPI server with the payment ledger, reconciliation webhook
and reminder scheduler.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from loan_servicing.api import run_server
from loan_servicing.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Loan Servicing Backend...")
    print(f"Storage: {config.database_url}")
    print(f"Business timezone: {config.timezone}")
    print(f"Reminder scheduler: {'enabled' if config.scheduler_enabled else 'disabled'}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Servicing Backend...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
