#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[navtrail] data={os.environ.get('NAVTRAIL_DATA_DIR', 'data/navtrail')} | "
    f"host={os.environ.get('NAVTRAIL_HOST', '127.0.0.1')} | "
    f"port={os.environ.get('NAVTRAIL_PORT', '8766')} | "
    f"dedup={os.environ.get('NAVTRAIL_DEDUP_SCOPE', 'global')}",
    file=sys.stderr,
)

from navtrail.main import main  # noqa: E402

if __name__ == "__main__":
    main()
