# tests/conftest.py
import os
import sys
import tempfile

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Must be set before any service module creates its engine.
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "vehicle_rental_test.db"),
)
os.environ["TESTING"] = "1"
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)
