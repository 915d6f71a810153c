#!/usr/bin/env python3
"""
Microloan Engine Entry Point

Starts the FastAPI server with the route-collection engine. Host, port and
storage come from MICROLOAN_* environment variables.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from microloan.api import run_server
from microloan.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting microloan route-collection engine...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down microloan engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
