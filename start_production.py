#!/usr/bin/env python3
"""
Aqua Forum production startup script.
Runs the API under uvicorn; tagging workers are started separately with start_worker.py
when JOBS_BACKEND=rq.
"""

import uvicorn

from aquaforum.config import settings


def start_production_server():
    """Start the production server"""
    print("Starting Aqua Forum API server...")
    print("API documentation: http://localhost:8999/docs")
    print(f"Jobs backend: {settings.JOBS_BACKEND}, media provider: {settings.MEDIA_SERVICE_PROVIDER}")
    print("=" * 60)

    # The inline queue lives inside the API process, so more than one
    # uvicorn worker would mean more than one independent queue.
    workers = 2 if settings.JOBS_BACKEND == "rq" else 1
    uvicorn.run(
        "aquaforum.main:app",
        host="0.0.0.0",
        port=8999,
        reload=False,
        workers=workers,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    start_production_server()
