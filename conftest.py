# Project root on sys.path and a hermetic environment, set before
# aquaforum.config builds its Settings instance.
import os
import sys
import tempfile

ROOT = os.path.dirname(os.path.abspath(__file__))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JOBS_BACKEND", "inline")
os.environ.setdefault("MEDIA_SERVICE_PROVIDER", "local")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="aquaforum-uploads-"))
