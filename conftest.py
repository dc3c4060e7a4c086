import os
import tempfile

def pytest_configure(config):
    # main.py opens DATABASE_PATH at import; keep it out of the working tree
    scratch = tempfile.mkdtemp(prefix="event-checkin-")
    os.environ["DATABASE_PATH"] = os.path.join(scratch, "events.db")
