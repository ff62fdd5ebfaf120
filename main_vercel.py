import os
import sys

# Ensure repo root is on sys.path
_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, _ROOT)

# Serverless entry point: re-export the FastAPI app
from forge_api.main import app  # noqa: E402,F401
