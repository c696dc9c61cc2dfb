import os
import sys
from pathlib import Path

# Default env for app settings in tests.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("ENROLLMENT_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Ensure "apps/api" is on sys.path so imports like "from enrollment.main import app" work in CI.
API_ROOT = Path(__file__).resolve().parent
if str(API_ROOT) not in sys.path:
    sys.path.insert(0, str(API_ROOT))
