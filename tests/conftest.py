import os
import tempfile

# Point the service module at a throwaway SQLite file before anything imports settings
_tmp = tempfile.mkdtemp(prefix="coin-ledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmp, 'service.db')}"
os.environ.setdefault("JWT_SECRET", "test-secret")
