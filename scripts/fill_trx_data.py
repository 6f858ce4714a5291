"""
scripts/fill_trx_data.py
Fill in the missing trx_id rows of hive_trxid_block_num.

Usage:
  python scripts/fill_trx_data.py --env-file .env
  python scripts/fill_trx_data.py --process-step 50 --search-step 5000 --max-retry-waves 0
  python scripts/fill_trx_data.py --dry-run
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from trxid_backfill.cli import main


if __name__ == "__main__":
    sys.exit(main())
