import sys
from pathlib import Path


# Ensure the service root is on sys.path for tests that import modules directly.
SERVICE_DIR = Path(__file__).resolve().parents[1]
if str(SERVICE_DIR) not in sys.path:
    sys.path.insert(0, str(SERVICE_DIR))
