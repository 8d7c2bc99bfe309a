#!/usr/bin/env python3
"""
EMI Ledger Entry Point

Starts the FastAPI server with the EMI ledger engine.
"""

import sys

from emi_ledger.api import run_server
from emi_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("📒 Starting EMI Ledger...")
    print(f"💾 Local store: {config.database_path}")
    print(f"🔄 Syncing with {config.remote_base_url} every {config.sync_interval_seconds:g}s")
    print(f"⏰ Late penalty: INR {config.penalty_per_day} per day")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\n👋 Shutting down EMI Ledger...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
