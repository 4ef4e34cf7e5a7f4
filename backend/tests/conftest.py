import os
import sys


# Tests import `backend.*`; make that work from the repo root or from `backend/`.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

# Read by backend.app.config at import time; keep tests off any real ledger.
os.environ.setdefault("LEDGER_TIMEZONE", "America/Los_Angeles")
os.environ.setdefault("LEDGER_SYNC_DELAY_MS", "0")
os.environ.pop("LEDGER_SYNC_API_KEY", None)
