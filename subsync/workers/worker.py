"""
Celery entry point:

    celery -A subsync.workers.worker worker -l info
    celery -A subsync.workers.worker beat -l info
"""

import os

from dotenv import load_dotenv

load_dotenv()

from subsync import create_app  # noqa: E402
from subsync.workers.celery_app import init_celery  # noqa: E402

flask_app = create_app(os.getenv("FLASK_CONFIG", "production"))
celery = init_celery(flask_app)
