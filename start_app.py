#!/usr/bin/env python
"""Start the FastAPI application with proper port configuration for Railway."""
import os
import uvicorn

if __name__ == "__main__":
    # Get port from environment, default to 8000
    port = int(os.environ.get("PORT", 8000))

    print(f"Starting reconciliation service on port {port}")

    # Single process: the job queue and scheduler live inside the app
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=port,
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
        workers=1,
    )
