import os
import tempfile

# Keep the module-level engine away from the working tree during tests.
os.environ.setdefault("FINANCE_DATA_DIR", tempfile.mkdtemp(prefix="finance-tests-"))
os.environ.setdefault("FINANCE_REVIEW_JOB_ENABLED", "0")
os.environ["FINANCE_TIMEZONE"] = "Europe/Istanbul"
