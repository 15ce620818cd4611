#!/usr/bin/env python3
"""
Start the checkout service's Celery worker.

The worker delivers notification emails and, with ``--beat``, also runs the
periodic jobs from ``core.celery``: the unpaid-order expiry sweep and the
guest-cart purge. Run a single beat-enabled worker per deployment; extra
workers should be started without it (``CELERY_EMBED_BEAT=false``).
"""
import os

from dotenv import load_dotenv

load_dotenv()

if __name__ == "__main__":
    from core.celery import celery_app
    from core.config import settings

    argv = [
        "worker",
        f"--loglevel={settings.LOG_LEVEL.lower()}",
        f"--concurrency={os.getenv('CELERY_CONCURRENCY', '4')}",
        "--without-gossip",
        "--without-mingle",
    ]
    if os.getenv("CELERY_EMBED_BEAT", "true").lower() == "true":
        argv.append("--beat")
    celery_app.start(argv)
