#!/usr/bin/env python3
"""
Start rq workers for the vision tagging queue (JOBS_BACKEND=rq).

    python start_worker.py           # run until stopped
    python start_worker.py --burst   # drain the queue and exit
"""

import argparse
import logging

from aquaforum.workers.rq_tasks import start_worker

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Aqua Forum tagging worker")
    parser.add_argument("--burst", action="store_true", help="exit once the queue is empty")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    start_worker(burst=args.burst)
