import os
import sys
from pathlib import Path

# Make the `cobot` package importable when tests run from a fresh checkout
# without `pip install -e .`.
root = Path(__file__).resolve().parents[1]
if str(root) not in sys.path:
    sys.path.insert(0, str(root))
# Also set PYTHONPATH for any subprocesses that might be spawned during tests
os.environ.setdefault("PYTHONPATH", str(root))
